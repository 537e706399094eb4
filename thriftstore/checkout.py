"""
Checkout / order placement.

Every rule that can be checked up front is checked before the
transaction opens: cart not empty, each line's quantity against the
variant's stock as of now, shipping form complete, continent priced in
the active shipping-rate table. The writes then run in one transaction:

    order header -> line items (+ stock decrement each) -> clear cart
    -> pending payment transaction

and either all of them commit or none do. The activity-log entry is
written after the commit and can't undo it.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from .activity import log_activity
from .cart import load_cart
from .db import money, now
from .errors import (
    EmptyCartError,
    OrderNumberExhaustedError,
    OutOfStockError,
    StoreError,
    ValidationError,
)
from .security import clean_text, validate_phone_number

logger = logging.getLogger(__name__)

GENERIC_ERROR = 'An error occurred while processing your order. Please try again.'

FORM_FIELDS = (
    'receiver_name', 'phone_number', 'continent', 'country', 'city',
    'address', 'postal_code', 'landmark_notes', 'payment_method',
)


@dataclass
class ShippingDetails:
    receiver_name: str
    phone_number: str
    continent: str
    country: str
    city: str
    address: str
    payment_method: str
    postal_code: str = ''
    landmark_notes: str = ''


@dataclass
class Totals:
    subtotal: Decimal
    shipping_fee: Decimal
    total: Decimal


@dataclass
class PlacedOrder:
    order_id: int
    order_number: str
    transaction_code: str
    totals: Totals


# ============== LOOKUPS ==============

def active_shipping_rates(db):
    """continent -> rate row, for the form and for validation"""
    rows = db.fetch_all(
        'SELECT rate_id, continent, country, base_rate FROM shipping_rates WHERE is_active ORDER BY continent'
    )
    rates = {}
    for row in rows:
        row['base_rate'] = money(row['base_rate'])
        rates[row['continent']] = row
    return rates


def shipping_rate_for(db, continent):
    row = db.fetch_one(
        'SELECT rate_id, continent, base_rate FROM shipping_rates WHERE continent = :continent AND is_active',
        {'continent': continent},
    )
    if row:
        row['base_rate'] = money(row['base_rate'])
    return row


# ============== VALIDATION ==============

def parse_checkout_form(form, rates, payment_methods):
    """clean the posted form; raises ValidationError listing every problem"""
    data = {name: clean_text(form.get(name, '')) for name in FORM_FIELDS}
    errors = []

    if not data['receiver_name']:
        errors.append('Receiver name is required.')
    if not data['phone_number']:
        errors.append('Phone number is required.')
    elif not validate_phone_number(data['phone_number']):
        errors.append('Please enter a valid phone number.')
    if not data['continent'] or data['continent'] not in rates:
        errors.append('Please select a valid continent.')
    if not data['country']:
        errors.append('Country is required.')
    if not data['city']:
        errors.append('City is required.')
    if not data['address']:
        errors.append('Address is required.')
    if not data['payment_method'] or data['payment_method'] not in payment_methods:
        errors.append('Please select a payment method.')

    if errors:
        raise ValidationError(errors)
    return ShippingDetails(**data)


def check_stock(lines):
    """one short line blocks the whole checkout"""
    short = [line for line in lines if not line['in_stock']]
    if short:
        raise OutOfStockError(short)


# ============== PRICING ==============

def compute_totals(lines, shipping_rate):
    subtotal = sum((line['final_price'] * line['quantity'] for line in lines), money(0))
    shipping_fee = money(shipping_rate['base_rate'])
    return Totals(subtotal=money(subtotal), shipping_fee=shipping_fee, total=money(subtotal + shipping_fee))


# ============== IDENTIFIERS ==============

def generate_order_number(today=None):
    # format: ORD-YYYYMMDD-XXXXXX
    today = today or date.today()
    return f"ORD-{today.strftime('%Y%m%d')}-{secrets.token_hex(3).upper()}"


def generate_transaction_code():
    return f'TXN-{secrets.token_hex(8).upper()}'


def unused_order_number(db, attempts=5, generator=None):
    generator = generator or generate_order_number
    for _ in range(attempts):
        candidate = generator()
        taken = db.fetch_one('SELECT order_id FROM orders WHERE order_number = :n', {'n': candidate})
        if not taken:
            return candidate
        logger.warning('Order number collision on %s, regenerating', candidate)
    raise OrderNumberExhaustedError(attempts)


# ============== PLACEMENT ==============

def place_order(db, scope, details, number_attempts=5):
    """
    Turn the user's cart into an order.

    Raises EmptyCartError, OutOfStockError or ValidationError without
    touching the database when a precondition fails. Any failure inside
    the transaction rolls everything back and is re-raised; an
    OutOfStockError there means another checkout took the stock between
    our check and our decrement.
    """
    if not scope.is_authenticated:
        raise StoreError('Checkout requires an authenticated user')
    user_id = scope.user_id

    lines = load_cart(db, user_id)
    if not lines:
        raise EmptyCartError(user_id)
    check_stock(lines)

    rate = shipping_rate_for(db, details.continent)
    if rate is None:
        raise ValidationError(['Please select a valid continent.'])
    totals = compute_totals(lines, rate)

    db.begin_transaction()
    try:
        order_number = unused_order_number(db, number_attempts)
        order_id = _insert_order(db, user_id, order_number, details, totals)

        for line in lines:
            _insert_order_item(db, order_id, line)
            _decrement_stock(db, line)

        db.execute('DELETE FROM cart WHERE user_id = :user_id', {'user_id': user_id})

        transaction_code = generate_transaction_code()
        db.execute(
            """INSERT INTO transactions (order_id, transaction_code, amount, payment_method, status, created_at)
               VALUES (:order_id, :code, :amount, :method, 'pending', :ts)""",
            {
                'order_id': order_id,
                'code': transaction_code,
                'amount': totals.total,
                'method': details.payment_method,
                'ts': now(),
            },
        )
        db.commit()
    except OutOfStockError:
        db.rollback()
        logger.warning('Stock changed during checkout for user %s, order rolled back', user_id)
        raise
    except Exception:
        db.rollback()
        logger.exception('Order creation failed for user %s', user_id)
        raise

    log_activity(
        db, scope, 'order_created', 'order', order_id,
        new_values={'order_number': order_number, 'total_amount': totals.total},
    )
    logger.info('Order %s placed by user %s for %s', order_number, user_id, totals.total)
    return PlacedOrder(order_id=order_id, order_number=order_number,
                       transaction_code=transaction_code, totals=totals)


def _insert_order(db, user_id, order_number, details, totals):
    ts = now()
    result = db.execute(
        """INSERT INTO orders (
               order_number, user_id, receiver_name, phone_number,
               continent, country, city, address, postal_code, landmark_notes,
               subtotal, shipping_fee, total_amount, payment_method, status,
               created_at, updated_at
           ) VALUES (
               :order_number, :user_id, :receiver_name, :phone_number,
               :continent, :country, :city, :address, :postal_code, :landmark_notes,
               :subtotal, :shipping_fee, :total_amount, :payment_method, 'pending',
               :ts, :ts
           )""",
        {
            'order_number': order_number,
            'user_id': user_id,
            'receiver_name': details.receiver_name,
            'phone_number': details.phone_number,
            'continent': details.continent,
            'country': details.country,
            'city': details.city,
            'address': details.address,
            'postal_code': details.postal_code or None,
            'landmark_notes': details.landmark_notes or None,
            'subtotal': totals.subtotal,
            'shipping_fee': totals.shipping_fee,
            'total_amount': totals.total,
            'payment_method': details.payment_method,
            'ts': ts,
        },
    )
    if result.lastrowid:
        return result.lastrowid
    # drivers without lastrowid
    return db.fetch_value('SELECT order_id FROM orders WHERE order_number = :n', {'n': order_number})


def _insert_order_item(db, order_id, line):
    # name/size/color/price are copied so later catalog edits don't rewrite history
    db.execute(
        """INSERT INTO order_items (
               order_id, variant_id, product_name, size, color, quantity, unit_price, total_price
           ) VALUES (
               :order_id, :variant_id, :product_name, :size, :color, :quantity, :unit_price, :total_price
           )""",
        {
            'order_id': order_id,
            'variant_id': line['variant_id'],
            'product_name': line['product_name'],
            'size': line['size'],
            'color': line['color'],
            'quantity': line['quantity'],
            'unit_price': line['final_price'],
            'total_price': money(line['final_price'] * line['quantity']),
        },
    )


def _decrement_stock(db, line):
    result = db.execute(
        """UPDATE product_variants
           SET stock_quantity = stock_quantity - :quantity
           WHERE variant_id = :variant_id AND stock_quantity >= :quantity""",
        {'quantity': line['quantity'], 'variant_id': line['variant_id']},
    )
    if result.rowcount != 1:
        raise OutOfStockError([line])

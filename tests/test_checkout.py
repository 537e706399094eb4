"""Tests for checkout / order placement."""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from thriftstore import checkout
from thriftstore.cart import add_to_cart, load_cart
from thriftstore.checkout import (
    GENERIC_ERROR,
    compute_totals,
    parse_checkout_form,
    place_order,
    unused_order_number,
)
from thriftstore.errors import (
    EmptyCartError,
    OrderNumberExhaustedError,
    OutOfStockError,
    StoreError,
    ValidationError,
)

from conftest import (
    Browser,
    FailingGateway,
    count,
    make_scope,
    make_user,
    set_stock,
    shipping,
    snapshot,
    stock_of,
)

RATES = {'Asia': {'continent': 'Asia', 'base_rate': Decimal('150.00')}}
PAYMENT_METHODS = ('gcash', 'maya', 'bank_transfer', 'cod')

VALID_FORM = {
    'receiver_name': 'Maria Santos',
    'phone_number': '+63 917 123 4567',
    'continent': 'Asia',
    'country': 'Philippines',
    'city': 'Quezon City',
    'address': '12 Kalayaan Ave',
    'postal_code': '1101',
    'landmark_notes': 'Blue gate',
    'payment_method': 'cod',
}


class TestParseCheckoutForm:
    def test_valid_form(self):
        details = parse_checkout_form(VALID_FORM, RATES, PAYMENT_METHODS)
        assert details.receiver_name == 'Maria Santos'
        assert details.continent == 'Asia'
        assert details.postal_code == '1101'
        assert details.payment_method == 'cod'

    def test_every_problem_is_reported(self):
        with pytest.raises(ValidationError) as exc:
            parse_checkout_form({}, RATES, PAYMENT_METHODS)
        assert exc.value.errors == [
            'Receiver name is required.',
            'Phone number is required.',
            'Please select a valid continent.',
            'Country is required.',
            'City is required.',
            'Address is required.',
            'Please select a payment method.',
        ]

    def test_bad_phone(self):
        with pytest.raises(ValidationError) as exc:
            parse_checkout_form({**VALID_FORM, 'phone_number': '12345'}, RATES, PAYMENT_METHODS)
        assert exc.value.errors == ['Please enter a valid phone number.']

    def test_continent_must_have_active_rate(self):
        with pytest.raises(ValidationError) as exc:
            parse_checkout_form({**VALID_FORM, 'continent': 'Antarctica'}, RATES, PAYMENT_METHODS)
        assert exc.value.errors == ['Please select a valid continent.']

    def test_unknown_payment_method(self):
        with pytest.raises(ValidationError):
            parse_checkout_form({**VALID_FORM, 'payment_method': 'bitcoin'}, RATES, PAYMENT_METHODS)

    def test_markup_is_stripped(self):
        details = parse_checkout_form(
            {**VALID_FORM, 'receiver_name': '<b>Maria</b> Santos'}, RATES, PAYMENT_METHODS
        )
        assert details.receiver_name == 'Maria Santos'


class TestComputeTotals:
    def test_base_price_plus_adjustment_times_quantity(self):
        lines = [
            {'final_price': Decimal('500.00'), 'quantity': 2},
            {'final_price': Decimal('550.00'), 'quantity': 1},
        ]
        totals = compute_totals(lines, {'base_rate': Decimal('150.00')})
        assert totals.subtotal == Decimal('1550.00')
        assert totals.shipping_fee == Decimal('150.00')
        assert totals.total == Decimal('1700.00')


class TestOrderNumbers:
    def test_format(self):
        number = checkout.generate_order_number(date(2026, 3, 9))
        assert number.startswith('ORD-20260309-')
        assert len(number) == len('ORD-20260309-') + 6

    def test_regenerates_on_collision(self, db, placed_order):
        candidates = iter([placed_order.order_number, 'ORD-20260101-FRESH1'])
        assert unused_order_number(db, 5, lambda: next(candidates)) == 'ORD-20260101-FRESH1'

    def test_gives_up_after_attempts(self, db, placed_order):
        with pytest.raises(OrderNumberExhaustedError):
            unused_order_number(db, 3, lambda: placed_order.order_number)


class TestPlaceOrder:
    def test_single_line_order(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)

        placed = place_order(db, scope, shipping())

        assert placed.totals.subtotal == Decimal('1000.00')
        assert placed.totals.shipping_fee == Decimal('150.00')
        assert placed.totals.total == Decimal('1150.00')
        order = db.fetch_one('SELECT * FROM orders WHERE order_id = :id', {'id': placed.order_id})
        assert order['order_number'] == placed.order_number
        assert order['status'] == 'pending'
        assert Decimal(str(order['total_amount'])) == Decimal('1150')
        assert stock_of(db, jacket['blue']) == 3
        assert load_cart(db, scope.user_id) == []
        txn = db.fetch_all('SELECT * FROM transactions WHERE order_id = :id', {'id': placed.order_id})
        assert len(txn) == 1
        assert txn[0]['status'] == 'pending'
        assert txn[0]['transaction_code'] == placed.transaction_code
        assert Decimal(str(txn[0]['amount'])) == Decimal('1150')

    def test_totals_add_up(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)
        add_to_cart(db, scope.user_id, jacket['black'], 1)

        placed = place_order(db, scope, shipping(continent='Europe'))

        order = db.fetch_one('SELECT * FROM orders WHERE order_id = :id', {'id': placed.order_id})
        items = db.fetch_all('SELECT * FROM order_items WHERE order_id = :id', {'id': placed.order_id})
        subtotal = sum(Decimal(str(i['unit_price'])) * i['quantity'] for i in items)
        assert Decimal(str(order['subtotal'])) == subtotal == Decimal('1550')
        assert Decimal(str(order['total_amount'])) == Decimal(str(order['subtotal'])) + Decimal(str(order['shipping_fee']))
        assert Decimal(str(order['shipping_fee'])) == Decimal('850')

    def test_line_items_keep_what_was_sold(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['black'], 1)
        placed = place_order(db, scope, shipping())

        db.execute("UPDATE products SET name = 'Renamed', base_price = 999 WHERE product_id = :id",
                   {'id': jacket['product_id']})
        db.execute("UPDATE product_variants SET color = 'Red', price_adjustment = 10 WHERE variant_id = :id",
                   {'id': jacket['black']})

        item = db.fetch_one('SELECT * FROM order_items WHERE order_id = :id', {'id': placed.order_id})
        assert item['product_name'] == 'Denim Jacket'
        assert item['size'] == 'L'
        assert item['color'] == 'Black'
        assert Decimal(str(item['unit_price'])) == Decimal('550')

    def test_clears_whole_cart(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 1)
        add_to_cart(db, scope.user_id, jacket['black'], 1)
        place_order(db, scope, shipping())
        assert count(db, 'cart') == 0

    def test_logs_order_created(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 1)
        placed = place_order(db, scope, shipping())
        log = db.fetch_one("SELECT * FROM activity_logs WHERE action = 'order_created'")
        assert log['entity_id'] == placed.order_id
        assert log['user_id'] == scope.user_id
        assert log['ip_address'] == '203.0.113.7'
        assert placed.order_number in log['new_values']

    def test_requires_user(self, db, jacket):
        with pytest.raises(StoreError):
            place_order(db, make_scope(), shipping())

    def test_empty_cart(self, db, scope):
        with pytest.raises(EmptyCartError):
            place_order(db, scope, shipping())
        assert count(db, 'orders') == 0

    def test_unpriced_continent(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 1)
        db.execute("UPDATE shipping_rates SET is_active = :off WHERE continent = 'Asia'", {'off': False})
        with pytest.raises(ValidationError):
            place_order(db, scope, shipping())
        assert count(db, 'orders') == 0


class TestStockGuard:
    def test_stock_dropped_before_submit(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)
        set_stock(db, jacket['blue'], 1)
        before = snapshot(db)

        with pytest.raises(OutOfStockError) as exc:
            place_order(db, scope, shipping())

        assert [line['variant_id'] for line in exc.value.lines] == [jacket['blue']]
        assert snapshot(db) == before
        assert stock_of(db, jacket['blue']) == 1

    def test_one_short_line_blocks_everything(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)
        add_to_cart(db, scope.user_id, jacket['black'], 1)
        set_stock(db, jacket['black'], 0)
        before = snapshot(db)

        with pytest.raises(OutOfStockError):
            place_order(db, scope, shipping())

        assert snapshot(db) == before
        assert stock_of(db, jacket['blue']) == 5

    def test_deactivated_product_blocks_checkout(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)
        db.execute('UPDATE products SET is_active = :off WHERE product_id = :id',
                   {'off': False, 'id': jacket['product_id']})
        before = snapshot(db)

        with pytest.raises(OutOfStockError) as exc:
            place_order(db, scope, shipping())

        assert [line['variant_id'] for line in exc.value.lines] == [jacket['blue']]
        assert snapshot(db) == before
        assert stock_of(db, jacket['blue']) == 5

    def test_concurrent_checkout_of_last_unit(self, db, database, scope, jacket):
        rival_scope = make_scope(user_id=make_user(db, 'rival', 'rival@example.com'))
        add_to_cart(db, scope.user_id, jacket['black'], 1)
        add_to_cart(db, rival_scope.user_id, jacket['black'], 1)

        with database.session() as rival_db:
            class RacingGateway(FailingGateway):
                # the rival commits between our stock check and our transaction
                def begin_transaction(self):
                    place_order(rival_db, rival_scope, shipping())
                    self._gateway.begin_transaction()

            with pytest.raises(OutOfStockError):
                place_order(RacingGateway(db, fail_on='never-matches'), scope, shipping())

        assert stock_of(db, jacket['black']) == 0
        assert count(db, 'orders') == 1
        assert db.fetch_value('SELECT user_id FROM orders') == rival_scope.user_id
        assert len(load_cart(db, scope.user_id)) == 1


class TestAtomicity:
    @pytest.mark.parametrize('fail_on', [
        'INSERT INTO orders',
        'INSERT INTO order_items',
        'UPDATE product_variants',
        'DELETE FROM cart',
        'INSERT INTO transactions',
    ])
    def test_failure_inside_transaction_changes_nothing(self, db, scope, jacket, fail_on):
        add_to_cart(db, scope.user_id, jacket['blue'], 2)
        add_to_cart(db, scope.user_id, jacket['black'], 1)
        before = snapshot(db)
        failing = FailingGateway(db, fail_on)

        with pytest.raises(OperationalError):
            place_order(failing, scope, shipping())

        assert failing.failed
        assert not db.in_transaction
        assert snapshot(db) == before
        assert count(db, 'activity_logs') == 0

    def test_order_number_exhaustion_changes_nothing(self, db, scope, jacket, placed_order, monkeypatch):
        add_to_cart(db, scope.user_id, jacket['blue'], 1)
        before = snapshot(db)
        monkeypatch.setattr(checkout, 'generate_order_number', lambda: placed_order.order_number)

        with pytest.raises(OrderNumberExhaustedError):
            place_order(db, scope, shipping())

        assert snapshot(db) == before

    def test_activity_log_failure_keeps_order(self, db, scope, jacket):
        add_to_cart(db, scope.user_id, jacket['blue'], 1)

        placed = place_order(FailingGateway(db, 'INSERT INTO activity_logs'), scope, shipping())

        assert count(db, 'orders') == 1
        assert count(db, 'activity_logs') == 0
        assert placed.totals.total == Decimal('650.00')


class TestCheckoutRoute:
    FORM = dict(VALID_FORM)

    def test_places_order_and_redirects(self, db, shopper, user_id, jacket):
        add_to_cart(db, user_id, jacket['blue'], 2)

        response = shopper.post('/checkout', {**self.FORM, 'continent': 'Asia'})

        assert response.status_code == 302
        assert '/order-confirmation?order=ORD-' in response.headers['Location']
        page = shopper.get(response.headers['Location'])
        assert page.status_code == 200
        assert '₱1,150.00' in page.get_data(as_text=True)

    def test_out_of_stock_redirects_to_cart(self, db, shopper, user_id, jacket):
        add_to_cart(db, user_id, jacket['blue'], 2)
        set_stock(db, jacket['blue'], 1)

        response = shopper.post('/checkout', self.FORM)

        assert response.status_code == 302
        assert response.headers['Location'].endswith('/cart')
        page = shopper.get('/cart')
        assert 'Some items in your cart are out of stock' in page.get_data(as_text=True)
        assert count(db, 'orders') == 0
        assert stock_of(db, jacket['blue']) == 1

    def test_validation_errors_rerender(self, db, shopper, user_id, jacket):
        add_to_cart(db, user_id, jacket['blue'], 1)

        response = shopper.post('/checkout', {**self.FORM, 'city': '', 'payment_method': ''})

        body = response.get_data(as_text=True)
        assert response.status_code == 200
        assert 'City is required.' in body
        assert 'Please select a payment method.' in body
        assert count(db, 'orders') == 0

    def test_driver_failure_shows_generic_message(self, db, shopper, user_id, jacket, monkeypatch):
        add_to_cart(db, user_id, jacket['blue'], 1)

        def broken(*args, **kwargs):
            raise OperationalError('INSERT INTO orders', {}, Exception('disk I/O error'))

        monkeypatch.setattr(checkout, 'place_order', broken)
        response = shopper.post('/checkout', self.FORM)

        body = response.get_data(as_text=True)
        assert response.status_code == 200
        assert GENERIC_ERROR in body
        assert 'disk I/O error' not in body

    def test_rejects_missing_csrf_token(self, db, shopper, user_id, jacket):
        add_to_cart(db, user_id, jacket['blue'], 1)

        response = shopper.client.post('/checkout', data=self.FORM)

        assert response.status_code == 302
        assert count(db, 'orders') == 0

    def test_empty_cart_redirects(self, shopper):
        response = shopper.get('/checkout')
        assert response.status_code == 302
        assert response.headers['Location'].endswith('/cart')

    def test_anonymous_is_sent_to_login(self, client):
        response = client.get('/checkout')
        assert response.status_code == 302
        assert '/login?next=/checkout' in response.headers['Location'] or \
            '/login?next=%2Fcheckout' in response.headers['Location']

    def test_confirmation_is_owner_only(self, db, placed_order, app):
        make_user(db, 'stranger', 'stranger@example.com')
        browser = Browser(app.test_client())
        browser.login('stranger@example.com')

        response = browser.client.get(f'/order-confirmation?order={placed_order.order_number}')

        assert response.status_code == 302
        assert placed_order.order_number not in response.get_data(as_text=True)

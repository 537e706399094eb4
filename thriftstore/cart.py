"""
cart store - one row per (user, variant), quantity always >= 1
"""

from .db import money, now

CART_LINES_SQL = """
    SELECT c.cart_id,
           c.quantity,
           pv.variant_id,
           pv.size,
           pv.color,
           pv.stock_quantity,
           p.product_id,
           p.name AS product_name,
           p.slug,
           p.base_price,
           pv.price_adjustment,
           pv.is_active AND p.is_active AS available
    FROM cart c
    JOIN product_variants pv ON c.variant_id = pv.variant_id
    JOIN products p ON pv.product_id = p.product_id
    WHERE c.user_id = :user_id
    ORDER BY c.cart_id
"""


def load_cart(db, user_id):
    """cart lines with live stock and the price they'd sell at right now"""
    lines = db.fetch_all(CART_LINES_SQL, {'user_id': user_id})
    for line in lines:
        line['base_price'] = money(line['base_price'])
        line['price_adjustment'] = money(line['price_adjustment'])
        line['final_price'] = line['base_price'] + line['price_adjustment']
        line['line_total'] = line['final_price'] * line['quantity']
        line['available'] = bool(line['available'])
        line['in_stock'] = line['available'] and line['stock_quantity'] >= line['quantity']
    return lines


def summarize(lines):
    return {
        'subtotal': sum((line['line_total'] for line in lines), money(0)),
        'total_items': sum(line['quantity'] for line in lines),
        'has_out_of_stock': any(not line['in_stock'] for line in lines),
    }


def cart_count(db, user_id):
    return db.fetch_value(
        'SELECT SUM(quantity) AS count FROM cart WHERE user_id = :user_id', {'user_id': user_id}, default=0
    )


def add_to_cart(db, user_id, variant_id, quantity):
    """returns (success, message)"""
    quantity = max(1, quantity)
    variant = db.fetch_one(
        """SELECT pv.variant_id, pv.stock_quantity
           FROM product_variants pv
           JOIN products p ON pv.product_id = p.product_id
           WHERE pv.variant_id = :variant_id
             AND pv.stock_quantity >= :quantity
             AND pv.is_active AND p.is_active""",
        {'variant_id': variant_id, 'quantity': quantity},
    )
    if not variant:
        return False, 'Selected variant is out of stock'

    existing = db.fetch_one(
        'SELECT cart_id, quantity FROM cart WHERE user_id = :user_id AND variant_id = :variant_id',
        {'user_id': user_id, 'variant_id': variant_id},
    )
    if existing:
        new_quantity = existing['quantity'] + quantity
        if new_quantity > variant['stock_quantity']:
            return False, 'Cannot add more items than available in stock'
        db.execute(
            'UPDATE cart SET quantity = :quantity WHERE cart_id = :cart_id',
            {'quantity': new_quantity, 'cart_id': existing['cart_id']},
        )
    else:
        db.execute(
            """INSERT INTO cart (user_id, variant_id, quantity, added_at)
               VALUES (:user_id, :variant_id, :quantity, :ts)""",
            {'user_id': user_id, 'variant_id': variant_id, 'quantity': quantity, 'ts': now()},
        )
    return True, 'Item added to cart'


def update_quantity(db, user_id, cart_id, quantity):
    """quantity below 1 removes the line; returns (success, message)"""
    if quantity < 1:
        remove_item(db, user_id, cart_id)
        return True, 'Cart updated'

    stock = db.fetch_value(
        """SELECT pv.stock_quantity FROM cart c
           JOIN product_variants pv ON c.variant_id = pv.variant_id
           WHERE c.cart_id = :cart_id AND c.user_id = :user_id""",
        {'cart_id': cart_id, 'user_id': user_id},
    )
    if stock is None or quantity > stock:
        return False, 'Quantity exceeds available stock'
    db.execute(
        'UPDATE cart SET quantity = :quantity WHERE cart_id = :cart_id AND user_id = :user_id',
        {'quantity': quantity, 'cart_id': cart_id, 'user_id': user_id},
    )
    return True, 'Cart updated'


def remove_item(db, user_id, cart_id):
    return db.execute(
        'DELETE FROM cart WHERE cart_id = :cart_id AND user_id = :user_id',
        {'cart_id': cart_id, 'user_id': user_id},
    ).rowcount > 0

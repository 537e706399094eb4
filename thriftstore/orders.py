"""order read model - confirmation page, history, admin list"""

from .db import money

MONEY_FIELDS = ('subtotal', 'shipping_fee', 'total_amount')


def _with_money(row, fields=MONEY_FIELDS):
    if row is not None:
        for field in fields:
            if field in row:
                row[field] = money(row[field])
    return row


def get_order(db, order_id):
    return _with_money(db.fetch_one('SELECT * FROM orders WHERE order_id = :id', {'id': order_id}))


def get_order_by_number(db, order_number):
    return _with_money(db.fetch_one('SELECT * FROM orders WHERE order_number = :n', {'n': order_number}))


def order_items(db, order_id):
    rows = db.fetch_all(
        'SELECT * FROM order_items WHERE order_id = :id ORDER BY order_item_id', {'id': order_id}
    )
    return [_with_money(r, ('unit_price', 'total_price')) for r in rows]


def order_transaction(db, order_id):
    return _with_money(
        db.fetch_one('SELECT * FROM transactions WHERE order_id = :id', {'id': order_id}), ('amount',)
    )


def list_user_orders(db, user_id, page=1, per_page=10):
    """returns (orders, total) newest first"""
    total = db.fetch_value(
        'SELECT COUNT(*) AS total FROM orders WHERE user_id = :user_id', {'user_id': user_id}, default=0
    )
    rows = db.fetch_all(
        """SELECT o.*,
                  (SELECT COUNT(*) FROM order_items WHERE order_id = o.order_id) AS item_count
           FROM orders o
           WHERE o.user_id = :user_id
           ORDER BY o.created_at DESC, o.order_id DESC
           LIMIT :limit OFFSET :offset""",
        {'user_id': user_id, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    return [_with_money(r) for r in rows], total


def search_orders(db, status=None, search=None, date_from=None, date_to=None, page=1, per_page=20):
    """admin order list; returns (orders, total)"""
    where = ['1=1']
    params = {}
    if status:
        where.append('o.status = :status')
        params['status'] = status
    if search:
        where.append('(o.order_number LIKE :term OR u.username LIKE :term OR u.email LIKE :term)')
        params['term'] = f'%{search}%'
    if date_from:
        where.append('substr(o.created_at, 1, 10) >= :date_from')
        params['date_from'] = date_from
    if date_to:
        where.append('substr(o.created_at, 1, 10) <= :date_to')
        params['date_to'] = date_to
    clause = ' AND '.join(where)

    total = db.fetch_value(
        f'SELECT COUNT(*) AS total FROM orders o LEFT JOIN users u ON o.user_id = u.user_id WHERE {clause}',
        params,
        default=0,
    )
    rows = db.fetch_all(
        f"""SELECT o.*, u.username, u.email, u.full_name AS user_full_name,
                   (SELECT COUNT(*) FROM order_items WHERE order_id = o.order_id) AS item_count
            FROM orders o
            LEFT JOIN users u ON o.user_id = u.user_id
            WHERE {clause}
            ORDER BY o.created_at DESC, o.order_id DESC
            LIMIT :limit OFFSET :offset""",
        {**params, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    return [_with_money(r) for r in rows], total


def pending_count(db):
    return db.fetch_value("SELECT COUNT(*) AS count FROM orders WHERE status = 'pending'", default=0)

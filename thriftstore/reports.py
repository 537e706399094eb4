"""
dashboard and statistics aggregates

cancelled/refunded orders never count towards revenue
"""

from datetime import date, timedelta

from .db import money

PERIOD_DAYS = {'today': 0, 'week': 7, 'month': 30, 'year': 365}
EXCLUDED = "status NOT IN ('cancelled', 'refunded')"


def period_range(period, today=None):
    """(start, end, period) as ISO dates; unknown periods fall back to default"""
    today = today or date.today()
    if period not in PERIOD_DAYS:
        period = 'month'
    start = today - timedelta(days=PERIOD_DAYS[period])
    return start.isoformat(), today.isoformat(), period


def _range(start, end):
    return {'start': start, 'end': end}


def sales_stats(db, start, end):
    row = db.fetch_one(
        f"""SELECT COUNT(DISTINCT order_id) AS total_orders,
                   SUM(total_amount) AS total_revenue,
                   AVG(total_amount) AS avg_order_value,
                   SUM(shipping_fee) AS total_shipping,
                   COUNT(DISTINCT user_id) AS unique_customers
            FROM orders
            WHERE substr(created_at, 1, 10) BETWEEN :start AND :end
              AND {EXCLUDED}""",
        _range(start, end),
    )
    return {
        'total_orders': row['total_orders'] or 0,
        'total_revenue': money(row['total_revenue']),
        'avg_order_value': money(row['avg_order_value']),
        'total_shipping': money(row['total_shipping']),
        'unique_customers': row['unique_customers'] or 0,
    }


def daily_sales(db, start, end):
    rows = db.fetch_all(
        f"""SELECT substr(created_at, 1, 10) AS day,
                   COUNT(*) AS orders,
                   SUM(total_amount) AS revenue
            FROM orders
            WHERE substr(created_at, 1, 10) BETWEEN :start AND :end
              AND {EXCLUDED}
            GROUP BY substr(created_at, 1, 10)
            ORDER BY day""",
        _range(start, end),
    )
    for row in rows:
        row['revenue'] = money(row['revenue'])
    return rows


def top_products(db, start, end, limit=10):
    rows = db.fetch_all(
        f"""SELECT p.product_id, p.name, p.slug,
                   SUM(oi.quantity) AS total_sold,
                   SUM(oi.total_price) AS total_revenue
            FROM order_items oi
            JOIN product_variants pv ON oi.variant_id = pv.variant_id
            JOIN products p ON pv.product_id = p.product_id
            JOIN orders o ON oi.order_id = o.order_id
            WHERE substr(o.created_at, 1, 10) BETWEEN :start AND :end
              AND o.{EXCLUDED}
            GROUP BY p.product_id, p.name, p.slug
            ORDER BY total_sold DESC
            LIMIT :limit""",
        {**_range(start, end), 'limit': limit},
    )
    for row in rows:
        row['total_revenue'] = money(row['total_revenue'])
    return rows


def status_breakdown(db, start, end):
    rows = db.fetch_all(
        """SELECT status, COUNT(*) AS count, SUM(total_amount) AS revenue
           FROM orders
           WHERE substr(created_at, 1, 10) BETWEEN :start AND :end
           GROUP BY status
           ORDER BY status""",
        _range(start, end),
    )
    for row in rows:
        row['revenue'] = money(row['revenue'])
    return rows


def payment_breakdown(db, start, end):
    rows = db.fetch_all(
        f"""SELECT payment_method, COUNT(*) AS count, SUM(total_amount) AS total
            FROM orders
            WHERE substr(created_at, 1, 10) BETWEEN :start AND :end
              AND {EXCLUDED}
            GROUP BY payment_method
            ORDER BY payment_method""",
        _range(start, end),
    )
    for row in rows:
        row['total'] = money(row['total'])
    return rows


def low_stock_products(db, threshold=5, limit=10):
    return db.fetch_all(
        """SELECT p.product_id, p.name, p.slug, c.name AS category_name,
                  COALESCE(SUM(pv.stock_quantity), 0) AS total_stock
           FROM products p
           LEFT JOIN categories c ON p.category_id = c.category_id
           LEFT JOIN product_variants pv ON p.product_id = pv.product_id
           WHERE p.is_active
           GROUP BY p.product_id, p.name, p.slug, c.name
           HAVING COALESCE(SUM(pv.stock_quantity), 0) <= :threshold
           ORDER BY total_stock ASC
           LIMIT :limit""",
        {'threshold': threshold, 'limit': limit},
    )


def dashboard(db, period='today', today=None, low_stock_threshold=5):
    start, end, period = period_range(period, today)
    today_iso = (today or date.today()).isoformat()
    status_rows = db.fetch_all('SELECT status, COUNT(*) AS count FROM orders GROUP BY status')
    todays = db.fetch_all(
        """SELECT o.*, u.username, u.email
           FROM orders o
           LEFT JOIN users u ON o.user_id = u.user_id
           WHERE substr(o.created_at, 1, 10) = :today
           ORDER BY o.created_at DESC
           LIMIT 10""",
        {'today': today_iso},
    )
    for row in todays:
        row['total_amount'] = money(row['total_amount'])
    return {
        'period': period,
        'start': start,
        'end': end,
        'sales': sales_stats(db, start, end),
        'today_orders': todays,
        'low_stock': low_stock_products(db, low_stock_threshold),
        'recent_users': db.fetch_all(
            """SELECT user_id, username, email, created_at, is_active, is_banned
               FROM users ORDER BY created_at DESC LIMIT 10"""
        ),
        'status_counts': {r['status']: r['count'] for r in status_rows},
        'total_products': db.fetch_value('SELECT COUNT(*) AS count FROM products WHERE is_active', default=0),
        'total_users': db.fetch_value(
            'SELECT COUNT(*) AS count FROM users WHERE is_active AND NOT is_banned', default=0
        ),
        'total_orders': db.fetch_value('SELECT COUNT(*) AS count FROM orders', default=0),
    }


def statistics(db, period='month', start=None, end=None, today=None):
    if not start or not end:
        start, end, period = period_range(period, today)
    return {
        'period': period,
        'start': start,
        'end': end,
        'sales': sales_stats(db, start, end),
        'daily': daily_sales(db, start, end),
        'top_products': top_products(db, start, end),
        'status_breakdown': status_breakdown(db, start, end),
        'payment_methods': payment_breakdown(db, start, end),
    }

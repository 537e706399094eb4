"""Table definitions. Queries elsewhere are plain SQL against these names."""

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

PRICE = Numeric(10, 2)
TIMESTAMP = String(32)  # iso-8601 text


users = Table(
    'users', metadata,
    Column('user_id', Integer, primary_key=True),
    Column('username', String(50), nullable=False, unique=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('password_hash', String(255), nullable=False),
    Column('full_name', String(100)),
    Column('phone_number', String(20)),
    Column('birthdate', String(10)),
    Column('is_active', Boolean, nullable=False, default=True, server_default='1'),
    Column('is_banned', Boolean, nullable=False, default=False, server_default='0'),
    Column('ban_reason', String(255)),
    Column('last_login', TIMESTAMP),
    Column('created_at', TIMESTAMP, nullable=False),
)

admins = Table(
    'admins', metadata,
    Column('admin_id', Integer, primary_key=True),
    Column('username', String(50), nullable=False, unique=True),
    Column('email', String(255), nullable=False, unique=True),
    Column('password_hash', String(255), nullable=False),
    Column('full_name', String(100)),
    Column('role', String(20), nullable=False, server_default='admin'),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('last_login', TIMESTAMP),
    Column('created_at', TIMESTAMP, nullable=False),
)

categories = Table(
    'categories', metadata,
    Column('category_id', Integer, primary_key=True),
    Column('name', String(100), nullable=False),
    Column('slug', String(120), nullable=False, unique=True),
    Column('display_order', Integer, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default='1'),
)

products = Table(
    'products', metadata,
    Column('product_id', Integer, primary_key=True),
    Column('category_id', Integer, ForeignKey('categories.category_id', ondelete='SET NULL')),
    Column('name', String(200), nullable=False),
    Column('slug', String(220), nullable=False, unique=True),
    Column('description', Text),
    Column('base_price', PRICE, nullable=False),
    Column('sku', String(50)),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    Column('view_count', Integer, nullable=False, server_default='0'),
    Column('created_at', TIMESTAMP, nullable=False),
    Column('updated_at', TIMESTAMP),
    CheckConstraint('base_price > 0', name='ck_products_base_price'),
)

product_variants = Table(
    'product_variants', metadata,
    Column('variant_id', Integer, primary_key=True),
    Column('product_id', Integer, ForeignKey('products.product_id', ondelete='CASCADE'), nullable=False),
    Column('size', String(10), nullable=False),
    Column('color', String(50), nullable=False),
    Column('color_hex', String(7)),
    Column('sku', String(80)),
    Column('stock_quantity', Integer, nullable=False, server_default='0'),
    Column('price_adjustment', PRICE, nullable=False, server_default='0'),
    Column('is_active', Boolean, nullable=False, server_default='1'),
    CheckConstraint('stock_quantity >= 0', name='ck_variants_stock_non_negative'),
)

cart = Table(
    'cart', metadata,
    Column('cart_id', Integer, primary_key=True),
    Column('user_id', Integer, ForeignKey('users.user_id', ondelete='CASCADE'), nullable=False),
    Column('variant_id', Integer, ForeignKey('product_variants.variant_id', ondelete='CASCADE'), nullable=False),
    Column('quantity', Integer, nullable=False),
    Column('added_at', TIMESTAMP, nullable=False),
    UniqueConstraint('user_id', 'variant_id', name='uq_cart_user_variant'),
    CheckConstraint('quantity >= 1', name='ck_cart_quantity_positive'),
)

wishlist = Table(
    'wishlist', metadata,
    Column('wishlist_id', Integer, primary_key=True),
    Column('user_id', Integer, ForeignKey('users.user_id', ondelete='CASCADE'), nullable=False),
    Column('product_id', Integer, ForeignKey('products.product_id', ondelete='CASCADE'), nullable=False),
    Column('created_at', TIMESTAMP, nullable=False),
    UniqueConstraint('user_id', 'product_id', name='uq_wishlist_user_product'),
)

shipping_rates = Table(
    'shipping_rates', metadata,
    Column('rate_id', Integer, primary_key=True),
    Column('continent', String(50), nullable=False, unique=True),
    Column('country', String(100)),
    Column('base_rate', PRICE, nullable=False),
    Column('is_active', Boolean, nullable=False, server_default='1'),
)

orders = Table(
    'orders', metadata,
    Column('order_id', Integer, primary_key=True),
    Column('order_number', String(32), nullable=False, unique=True),
    Column('user_id', Integer, ForeignKey('users.user_id'), nullable=False),
    Column('receiver_name', String(100), nullable=False),
    Column('phone_number', String(20), nullable=False),
    Column('continent', String(50), nullable=False),
    Column('country', String(100), nullable=False),
    Column('city', String(100), nullable=False),
    Column('address', Text, nullable=False),
    Column('postal_code', String(20)),
    Column('landmark_notes', Text),
    Column('subtotal', PRICE, nullable=False),
    Column('shipping_fee', PRICE, nullable=False),
    Column('total_amount', PRICE, nullable=False),
    Column('payment_method', String(30), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('tracking_number', String(100)),
    Column('created_at', TIMESTAMP, nullable=False),
    Column('updated_at', TIMESTAMP),
    Column('shipped_at', TIMESTAMP),
    Column('delivered_at', TIMESTAMP),
)

order_items = Table(
    'order_items', metadata,
    Column('order_item_id', Integer, primary_key=True),
    Column('order_id', Integer, ForeignKey('orders.order_id', ondelete='CASCADE'), nullable=False),
    # nullable so historical lines survive variant deletion
    Column('variant_id', Integer, ForeignKey('product_variants.variant_id', ondelete='SET NULL')),
    Column('product_name', String(200), nullable=False),
    Column('size', String(10), nullable=False),
    Column('color', String(50), nullable=False),
    Column('quantity', Integer, nullable=False),
    Column('unit_price', PRICE, nullable=False),
    Column('total_price', PRICE, nullable=False),
)

transactions = Table(
    'transactions', metadata,
    Column('transaction_id', Integer, primary_key=True),
    Column('order_id', Integer, ForeignKey('orders.order_id', ondelete='CASCADE'), nullable=False),
    Column('transaction_code', String(40), nullable=False, unique=True),
    Column('amount', PRICE, nullable=False),
    Column('payment_method', String(30), nullable=False),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('created_at', TIMESTAMP, nullable=False),
)

activity_logs = Table(
    'activity_logs', metadata,
    Column('log_id', Integer, primary_key=True),
    Column('admin_id', Integer),
    Column('user_id', Integer),
    Column('action', String(50), nullable=False),
    Column('entity_type', String(50), nullable=False),
    Column('entity_id', Integer),
    Column('old_values', Text),
    Column('new_values', Text),
    Column('ip_address', String(45), nullable=False),
    Column('user_agent', String(500)),
    Column('created_at', TIMESTAMP, nullable=False),
)

login_attempts = Table(
    'login_attempts', metadata,
    Column('attempt_id', Integer, primary_key=True),
    Column('username_or_email', String(255), nullable=False),
    Column('ip_address', String(45), nullable=False),
    Column('is_successful', Boolean, nullable=False),
    Column('attempted_at', TIMESTAMP, nullable=False),
)

sessions = Table(
    'sessions', metadata,
    Column('session_id', String(64), primary_key=True),
    Column('data', Text, nullable=False),
    Column('created_at', TIMESTAMP, nullable=False),
    Column('last_activity', TIMESTAMP, nullable=False),
)

"""Pytest fixtures for thriftstore tests."""

import re

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app
from thriftstore.accounts import insert_admin
from thriftstore.cart import add_to_cart
from thriftstore.checkout import ShippingDetails, place_order
from thriftstore.db import EXTENSION_KEY, now
from thriftstore.security import hash_password
from thriftstore.sessions import DatabaseSession, RequestScope

PASSWORD = 'Thrift#2024'
ADMIN_PASSWORD = 'Admin#2024pw'

STATE_TABLES = ('cart', 'product_variants', 'orders', 'order_items', 'transactions')


# ---------- data helpers ----------

def make_user(db, username='buyer', email='buyer@example.com', password=PASSWORD, **extra):
    values = {'is_active': True, 'is_banned': False, 'ban_reason': None}
    values.update(extra)
    return db.execute(
        """INSERT INTO users (username, email, password_hash, full_name, is_active, is_banned, ban_reason, created_at)
           VALUES (:username, :email, :hash, :full_name, :is_active, :is_banned, :ban_reason, :ts)""",
        {
            'username': username,
            'email': email,
            'hash': hash_password(password),
            'full_name': username.title(),
            'ts': now(),
            **values,
        },
    ).lastrowid


def make_product(db, name, base_price, variants, category_slug='tops', active=True):
    """variants: list of (size, color, stock, price_adjustment); returns (product_id, [variant_ids])"""
    category_id = db.fetch_value('SELECT category_id FROM categories WHERE slug = :slug', {'slug': category_slug})
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    product_id = db.execute(
        """INSERT INTO products (category_id, name, slug, description, base_price, sku, is_active, created_at)
           VALUES (:category_id, :name, :slug, :description, :price, :sku, :active, :ts)""",
        {
            'category_id': category_id,
            'name': name,
            'slug': slug,
            'description': f'{name} in good condition',
            'price': base_price,
            'sku': slug.upper()[:10],
            'active': active,
            'ts': now(),
        },
    ).lastrowid
    variant_ids = []
    for size, color, stock, adjustment in variants:
        variant_ids.append(db.execute(
            """INSERT INTO product_variants (product_id, size, color, stock_quantity, price_adjustment, is_active)
               VALUES (:product_id, :size, :color, :stock, :adjustment, :active)""",
            {'product_id': product_id, 'size': size, 'color': color, 'stock': stock,
             'adjustment': adjustment, 'active': True},
        ).lastrowid)
    return product_id, variant_ids


def set_stock(db, variant_id, quantity):
    db.execute('UPDATE product_variants SET stock_quantity = :q WHERE variant_id = :id', {'q': quantity, 'id': variant_id})


def stock_of(db, variant_id):
    return db.fetch_value('SELECT stock_quantity FROM product_variants WHERE variant_id = :id', {'id': variant_id})


def count(db, table):
    return db.fetch_value(f'SELECT COUNT(*) AS n FROM {table}', default=0)


def snapshot(db, tables=STATE_TABLES):
    return {table: db.fetch_all(f'SELECT * FROM {table} ORDER BY 1') for table in tables}


def make_scope(user_id=None, admin_id=None, admin_role=None, ip='203.0.113.7'):
    return RequestScope(
        session=DatabaseSession(sid='test-session'),
        ip_address=ip,
        user_agent='pytest-agent',
        user_id=user_id,
        admin_id=admin_id,
        admin_role=admin_role,
    )


def shipping(**overrides):
    values = {
        'receiver_name': 'Maria Santos',
        'phone_number': '09171234567',
        'continent': 'Asia',
        'country': 'Philippines',
        'city': 'Quezon City',
        'address': '12 Kalayaan Ave',
        'payment_method': 'gcash',
    }
    values.update(overrides)
    return ShippingDetails(**values)


def csrf_from(response):
    match = re.search(r'name="csrf-token" content="([^"]+)"', response.get_data(as_text=True))
    assert match, 'page did not render a csrf token'
    return match.group(1)


class FailingGateway:
    """wraps a Gateway and raises a driver error on the first statement containing ``fail_on``"""

    def __init__(self, gateway, fail_on):
        self._gateway = gateway
        self.fail_on = fail_on
        self.failed = False

    def execute(self, query, params=None):
        if self.fail_on in query:
            self.failed = True
            raise OperationalError(query, params, Exception('injected failure'))
        return self._gateway.execute(query, params)

    def __getattr__(self, name):
        return getattr(self._gateway, name)


class Browser:
    """test client that remembers the csrf token of its session"""

    def __init__(self, client):
        self.client = client
        self.token = None

    def get(self, path, **kwargs):
        response = self.client.get(path, **kwargs)
        if response.status_code == 200 and 'text/html' in response.content_type:
            self.token = csrf_from(response)
        return response

    def post(self, path, data=None, xhr=False, **kwargs):
        if self.token is None:
            self.get('/')
        data = dict(data or {})
        data.setdefault('csrf_token', self.token)
        headers = kwargs.pop('headers', {})
        if xhr:
            headers['X-Requested-With'] = 'XMLHttpRequest'
        return self.client.post(path, data=data, headers=headers, **kwargs)

    def login(self, email='buyer@example.com', password=PASSWORD):
        self.get('/login')
        return self.post('/login', {'email': email, 'password': password})

    def admin_login(self, username='root', password=ADMIN_PASSWORD):
        self.get('/admin/login')
        return self.post('/admin/login', {'username': username, 'password': password})


# ---------- fixtures ----------

@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'DATABASE_URL': f"sqlite:///{tmp_path / 'thriftstore.db'}",
        'LOG_LEVEL': 'WARNING',
        'BOOTSTRAP_ADMIN_USERNAME': 'root',
        'BOOTSTRAP_ADMIN_EMAIL': 'root@example.com',
        'BOOTSTRAP_ADMIN_PASSWORD': ADMIN_PASSWORD,
    })
    yield app
    app.extensions[EXTENSION_KEY].dispose()


@pytest.fixture
def database(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def db(database):
    with database.session() as gateway:
        yield gateway


@pytest.fixture
def user_id(db):
    return make_user(db)


@pytest.fixture
def scope(user_id):
    return make_scope(user_id=user_id)


@pytest.fixture
def admin_scope(db):
    admin_id = db.fetch_value("SELECT admin_id FROM admins WHERE username = 'root'")
    return make_scope(admin_id=admin_id, admin_role='super_admin', ip='198.51.100.20')


@pytest.fixture
def jacket(db):
    """one product, two variants: M/Blue x5 at 500, L/Black x1 at 550"""
    product_id, (blue, black) = make_product(
        db, 'Denim Jacket', '500.00', [('M', 'Blue', 5, '0.00'), ('L', 'Black', 1, '50.00')],
    )
    return {'product_id': product_id, 'slug': 'denim-jacket', 'blue': blue, 'black': black}


@pytest.fixture
def placed_order(db, scope, jacket):
    add_to_cart(db, scope.user_id, jacket['blue'], 2)
    return place_order(db, scope, shipping())


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def browser(client):
    return Browser(client)


@pytest.fixture
def shopper(browser, user_id):
    response = browser.login()
    assert response.status_code == 302
    return browser


@pytest.fixture
def admin_browser(app):
    browser = Browser(app.test_client())
    response = browser.admin_login()
    assert response.status_code == 302
    return browser

"""
Thrift Store - storefront and back office

Run with `python app.py` for the development server. Settings come from
thriftstore.config.Config and THRIFTSTORE_* environment variables.
"""

import logging

from flask import Flask, g, jsonify, render_template, request, session, url_for
from markupsafe import Markup

from thriftstore import __version__
from thriftstore import admin, storefront
from thriftstore.accounts import insert_admin
from thriftstore.cart import cart_count
from thriftstore.config import Config, configure_logging
from thriftstore.db import Database, get_db, init_app, now
from thriftstore.security import clear_old_login_attempts, issue_csrf_token
from thriftstore.sessions import DatabaseSessionInterface, build_scope, cleanup_expired_sessions, wants_json

logger = logging.getLogger('thriftstore')

# ============== INIT DATA ==============

DEFAULT_SHIPPING_RATES = (
    ('Asia', 'Philippines', '150.00'),
    ('Oceania', None, '800.00'),
    ('Europe', None, '850.00'),
    ('North America', None, '900.00'),
    ('South America', None, '950.00'),
    ('Africa', None, '1000.00'),
)

DEFAULT_CATEGORIES = (
    ('Tops', 'tops'),
    ('Bottoms', 'bottoms'),
    ('Dresses', 'dresses'),
    ('Outerwear', 'outerwear'),
    ('Accessories', 'accessories'),
)


def init_data(db, config):
    """seed lookup tables on an empty database, plus the first super admin if configured"""
    if config.get('SEED_DATA'):
        if not db.fetch_value('SELECT COUNT(*) AS n FROM shipping_rates', default=0):
            for continent, country, rate in DEFAULT_SHIPPING_RATES:
                db.execute(
                    """INSERT INTO shipping_rates (continent, country, base_rate, is_active)
                       VALUES (:continent, :country, :rate, :active)""",
                    {'continent': continent, 'country': country, 'rate': rate, 'active': True},
                )
            logger.info('Seeded %d shipping rates', len(DEFAULT_SHIPPING_RATES))
        if not db.fetch_value('SELECT COUNT(*) AS n FROM categories', default=0):
            for order, (name, slug) in enumerate(DEFAULT_CATEGORIES, 1):
                db.execute(
                    """INSERT INTO categories (name, slug, display_order, is_active)
                       VALUES (:name, :slug, :order, :active)""",
                    {'name': name, 'slug': slug, 'order': order, 'active': True},
                )
            logger.info('Seeded %d categories', len(DEFAULT_CATEGORIES))

    username = config.get('BOOTSTRAP_ADMIN_USERNAME')
    password = config.get('BOOTSTRAP_ADMIN_PASSWORD')
    if username and password and not db.fetch_value('SELECT COUNT(*) AS n FROM admins', default=0):
        insert_admin(db, username, config.get('BOOTSTRAP_ADMIN_EMAIL') or f'{username}@localhost',
                     password, 'Administrator', role='super_admin')
        logger.info('Created bootstrap super admin %s', username)


# ============== APP FACTORY ==============

def create_app(config=None):
    app = Flask(__name__)
    Config.configure_app(app, config)
    configure_logging(app)

    database = Database(app.config['DATABASE_URL'])
    database.create_all()
    with database.session() as db:
        init_data(db, app.config)
        cleanup_expired_sessions(db, app.config['SESSION_LIFETIME'])
        clear_old_login_attempts(db)

    init_app(app, database)
    app.session_interface = DatabaseSessionInterface(database)
    app.register_blueprint(storefront.bp)
    app.register_blueprint(admin.bp)

    @app.before_request
    def load_scope():
        g.scope = build_scope(request, session)

    @app.context_processor
    def template_helpers():
        scope = g.get('scope')
        token = issue_csrf_token(scope.session, app.config['CSRF_TOKEN_LIFETIME']) if scope else ''

        def csrf_field():
            return Markup('<input type="hidden" name="csrf_token" value="{}">').format(token)

        def page_url(number):
            args = request.args.to_dict()
            args['page'] = number
            return url_for(request.endpoint, **(request.view_args or {}), **args)

        count = 0
        if scope and scope.is_authenticated:
            count = cart_count(get_db(), scope.user_id)
        return {
            'site_name': app.config['SITE_NAME'],
            'scope': scope,
            'csrf_token': token,
            'csrf_field': csrf_field,
            'page_url': page_url,
            'cart_count': count,
            'year': now()[:4],
        }

    @app.template_filter('price')
    def price(value):
        return '₱{:,.2f}'.format(value or 0)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'version': __version__})

    register_error_handlers(app)
    return app


# ============== ERROR HANDLERS ==============

def register_error_handlers(app):

    @app.errorhandler(404)
    def not_found(e):
        if wants_json():
            return jsonify({'success': False, 'message': 'Not found'}), 404
        return render_template('errors/404.html'), 404

    @app.errorhandler(500)
    def server_error(e):
        # details go to the log only
        logger.error('Server error on %s: %s', request.path, e)
        if wants_json():
            return jsonify({'success': False, 'message': 'Internal server error'}), 500
        return render_template('errors/500.html'), 500


# ============== STARTUP ==============

if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db = get_db()
        products = db.fetch_value('SELECT COUNT(*) AS n FROM products', default=0)
        rates = db.fetch_value('SELECT COUNT(*) AS n FROM shipping_rates WHERE is_active', default=0)
    print("=" * 50)
    print(f"{app.config['SITE_NAME']} v{__version__}")
    print("=" * 50)
    print(f"Loaded {products} products")
    print(f"Loaded {rates} shipping rates")
    print("Starting server on http://localhost:5000")
    print("=" * 50)
    app.run(host='127.0.0.1', port=5000, debug=app.config.get('DEBUG', False))

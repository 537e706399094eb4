"""
configuration - defaults here, override with THRIFTSTORE_* env vars
or by passing a dict to create_app()
"""

import logging
import os

ENV_PREFIX = 'THRIFTSTORE_'


class Config:
    SITE_NAME = 'Thrift Store'
    SECRET_KEY = 'change-me-in-production'
    DATABASE_URL = 'sqlite:///thriftstore.db'
    LOG_LEVEL = 'INFO'

    # security
    SESSION_COOKIE_NAME = 'thrift_session'
    SESSION_COOKIE_SAMESITE = 'Lax'
    SESSION_LIFETIME = 1800  # seconds of inactivity
    CSRF_TOKEN_LIFETIME = 3600
    MAX_LOGIN_ATTEMPTS = 5
    LOGIN_TIMEOUT_MINUTES = 15
    MIN_PASSWORD_LENGTH = 8
    MAX_PASSWORD_LENGTH = 128

    # orders
    ORDER_NUMBER_ATTEMPTS = 5
    PAYMENT_METHODS = ('gcash', 'maya', 'bank_transfer', 'cod')
    LOW_STOCK_THRESHOLD = 5

    # paging
    PRODUCTS_PER_PAGE = 12
    ORDERS_PER_PAGE = 10
    ADMIN_PER_PAGE = 20
    LOGS_PER_PAGE = 50

    # startup data
    SEED_DATA = True
    BOOTSTRAP_ADMIN_USERNAME = None
    BOOTSTRAP_ADMIN_EMAIL = None
    BOOTSTRAP_ADMIN_PASSWORD = None

    @classmethod
    def from_env(cls, environ=None):
        """collect class defaults, then apply any THRIFTSTORE_* overrides"""
        environ = os.environ if environ is None else environ
        settings = {k: v for k, v in vars(cls).items() if k.isupper()}
        for key, default in list(settings.items()):
            raw = environ.get(ENV_PREFIX + key)
            if raw is None:
                continue
            settings[key] = _coerce(raw, default)
        return settings

    @classmethod
    def configure_app(cls, app, overrides=None):
        app.config.update(cls.from_env())
        if overrides:
            app.config.update(overrides)
        app.secret_key = app.config['SECRET_KEY']


def _coerce(raw, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, tuple):
        return tuple(part.strip() for part in raw.split(',') if part.strip())
    return raw


def configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    root = logging.getLogger('thriftstore')
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(name)s] %(message)s'
        ))
        root.addHandler(handler)
    root.setLevel(level)
    app.logger.setLevel(level)

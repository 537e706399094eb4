"""
Persistence gateway.

A thin layer over a pooled SQLAlchemy engine: every query is a text()
statement with named bind parameters. Each request borrows one Gateway
(one pooled connection); statements outside an explicit transaction are
committed as they run, statements inside begin_transaction()/commit()
succeed or fail together.
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from flask import current_app, g
from sqlalchemy import create_engine, event, text

from .schema import metadata

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
EXTENSION_KEY = 'thriftstore.db'


def money(value):
    """normalize a db/form value to a 2dp Decimal"""
    if value is None or value == '':
        return Decimal('0.00')
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def now():
    return datetime.now().isoformat()


def _bind(params):
    # sqlite3 can't bind Decimal, NUMERIC columns accept the string form everywhere
    if not params:
        return {}
    return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in params.items()}


@dataclass
class ExecResult:
    rowcount: int
    lastrowid: object = None


class Gateway:
    """query primitives over a single connection"""

    def __init__(self, connection):
        self._conn = connection
        self._tx = None

    @property
    def in_transaction(self):
        return self._tx is not None

    def _run(self, query, params):
        try:
            return self._conn.execute(text(query), _bind(params))
        except Exception:
            if self._tx is None and self._conn.in_transaction():
                self._conn.rollback()
            raise

    def _autocommit(self):
        if self._tx is None and self._conn.in_transaction():
            self._conn.commit()

    def fetch_one(self, query, params=None):
        row = self._run(query, params).mappings().first()
        self._autocommit()
        return dict(row) if row is not None else None

    def fetch_all(self, query, params=None):
        rows = [dict(r) for r in self._run(query, params).mappings().all()]
        self._autocommit()
        return rows

    def fetch_value(self, query, params=None, default=None):
        row = self.fetch_one(query, params)
        if not row:
            return default
        value = next(iter(row.values()))
        return default if value is None else value

    def execute(self, query, params=None):
        result = self._run(query, params)
        outcome = ExecResult(rowcount=result.rowcount, lastrowid=getattr(result, 'lastrowid', None))
        self._autocommit()
        return outcome

    def begin_transaction(self):
        if self._tx is not None:
            raise RuntimeError('transaction already in progress')
        if self._conn.in_transaction():
            self._conn.commit()
        self._tx = self._conn.begin()

    def commit(self):
        if self._tx is None:
            raise RuntimeError('no transaction in progress')
        tx, self._tx = self._tx, None
        tx.commit()

    def rollback(self):
        if self._tx is None:
            return
        tx, self._tx = self._tx, None
        tx.rollback()

    @contextmanager
    def transaction(self):
        self.begin_transaction()
        try:
            yield self
        except BaseException:
            self.rollback()
            raise
        self.commit()

    def close(self):
        self.rollback()
        self._conn.close()


def _sqlite_pragmas(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


class Database:
    """owns the engine/pool; hands out Gateways"""

    def __init__(self, url, **engine_options):
        self.url = url
        if url.startswith('sqlite'):
            engine_options.setdefault('connect_args', {'timeout': 15})
        self.engine = create_engine(url, **engine_options)
        if self.engine.dialect.name == 'sqlite':
            event.listen(self.engine, 'connect', _sqlite_pragmas)

    def create_all(self):
        metadata.create_all(self.engine)
        logger.info('Database tables ready (%s)', self.engine.url.render_as_string(hide_password=True))

    def connect(self):
        return Gateway(self.engine.connect())

    @contextmanager
    def session(self):
        gw = self.connect()
        try:
            yield gw
        finally:
            gw.close()

    def dispose(self):
        self.engine.dispose()


# ============== FLASK WIRING ==============

def init_app(app, database):
    app.extensions[EXTENSION_KEY] = database
    app.teardown_appcontext(close_db)


def get_database():
    return current_app.extensions[EXTENSION_KEY]


def get_db():
    """per-request gateway, opened lazily"""
    if 'db' not in g:
        g.db = get_database().connect()
    return g.db


def close_db(exception=None):
    gw = g.pop('db', None)
    if gw is not None:
        gw.close()

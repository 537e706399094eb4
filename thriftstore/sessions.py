"""
Server-side sessions and the per-request scope.

Session data lives in the ``sessions`` table; the browser only holds a
signed session id. Every request gets a RequestScope (who is logged in,
where the request came from) that handlers pass explicitly to the
workflow code instead of reaching into globals.
"""

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Optional

from flask import current_app, flash, g, jsonify, redirect, request, url_for
from flask.sessions import SessionInterface, SessionMixin
from itsdangerous import BadSignature, Signer
from werkzeug.datastructures import CallbackDict

from .activity import client_ip
from .db import now
from .security import validate_csrf_token

logger = logging.getLogger(__name__)


class DatabaseSession(CallbackDict, SessionMixin):

    def __init__(self, initial=None, sid=None, new=False):
        def on_update(self):
            self.modified = True

        CallbackDict.__init__(self, initial, on_update)
        self.sid = sid
        self.new = new
        self.modified = False
        self.previous_sid = None


def regenerate_session(session):
    """new id, same data - called on login/logout against fixation"""
    session.previous_sid = session.sid
    session.sid = secrets.token_urlsafe(32)
    session.modified = True


class DatabaseSessionInterface(SessionInterface):
    salt = 'thriftstore-session'

    def __init__(self, database):
        self.database = database

    def _signer(self, app):
        return Signer(app.secret_key, salt=self.salt)

    def _fresh(self):
        return DatabaseSession(sid=secrets.token_urlsafe(32), new=True)

    def open_session(self, app, request):
        cookie = request.cookies.get(self.get_cookie_name(app))
        if not cookie:
            return self._fresh()
        try:
            sid = self._signer(app).unsign(cookie).decode('utf-8')
        except BadSignature:
            logger.warning('Rejected session cookie with bad signature')
            return self._fresh()

        with self.database.session() as db:
            row = db.fetch_one(
                'SELECT data, last_activity FROM sessions WHERE session_id = :sid', {'sid': sid}
            )
            if row is None:
                return self._fresh()
            idle_limit = timedelta(seconds=app.config['SESSION_LIFETIME'])
            if datetime.now() - datetime.fromisoformat(row['last_activity']) > idle_limit:
                db.execute('DELETE FROM sessions WHERE session_id = :sid', {'sid': sid})
                return self._fresh()
        return DatabaseSession(json.loads(row['data']), sid=sid)

    def save_session(self, app, session, response):
        name = self.get_cookie_name(app)
        domain = self.get_cookie_domain(app)
        path = self.get_cookie_path(app)

        with self.database.session() as db:
            if session.previous_sid:
                db.execute('DELETE FROM sessions WHERE session_id = :sid', {'sid': session.previous_sid})

            if not session:
                if not session.new:
                    db.execute('DELETE FROM sessions WHERE session_id = :sid', {'sid': session.sid})
                    response.delete_cookie(name, domain=domain, path=path)
                return

            params = {'sid': session.sid, 'data': json.dumps(dict(session)), 'ts': now()}
            updated = db.execute(
                'UPDATE sessions SET data = :data, last_activity = :ts WHERE session_id = :sid', params
            ).rowcount
            if not updated:
                db.execute(
                    """INSERT INTO sessions (session_id, data, created_at, last_activity)
                       VALUES (:sid, :data, :ts, :ts)""",
                    params,
                )

        signed = self._signer(app).sign(session.sid.encode('utf-8')).decode('utf-8')
        response.set_cookie(
            name,
            signed,
            max_age=app.config['SESSION_LIFETIME'],
            httponly=self.get_cookie_httponly(app),
            secure=self.get_cookie_secure(app),
            samesite=self.get_cookie_samesite(app),
            domain=domain,
            path=path,
        )


def cleanup_expired_sessions(db, lifetime_seconds):
    """remove sessions idle past the lifetime"""
    cutoff = (datetime.now() - timedelta(seconds=lifetime_seconds)).isoformat()
    removed = db.execute('DELETE FROM sessions WHERE last_activity < :cutoff', {'cutoff': cutoff}).rowcount
    if removed:
        logger.info('Removed %d expired sessions', removed)
    return removed


# ============== REQUEST SCOPE ==============

@dataclass
class RequestScope:
    session: DatabaseSession
    ip_address: str
    user_agent: Optional[str] = None
    user_id: Optional[int] = None
    admin_id: Optional[int] = None
    admin_role: Optional[str] = None

    @property
    def is_authenticated(self):
        return self.user_id is not None

    @property
    def is_admin(self):
        return self.admin_id is not None

    @property
    def is_super_admin(self):
        return self.admin_role == 'super_admin'

    def sign_in_user(self, user_id, username):
        regenerate_session(self.session)
        self.session['user_id'] = user_id
        self.session['username'] = username
        self.user_id = user_id

    def sign_in_admin(self, admin_id, username, role):
        regenerate_session(self.session)
        self.session['admin_id'] = admin_id
        self.session['admin_username'] = username
        self.session['admin_role'] = role
        self.admin_id = admin_id
        self.admin_role = role

    def sign_out(self, *keys):
        for key in keys:
            self.session.pop(key, None)
        regenerate_session(self.session)


def build_scope(req, session):
    return RequestScope(
        session=session,
        ip_address=client_ip(req.headers, req.remote_addr),
        user_agent=req.headers.get('User-Agent'),
        user_id=session.get('user_id'),
        admin_id=session.get('admin_id'),
        admin_role=session.get('admin_role'),
    )


def login_required(redirect_target=None):
    """redirect anonymous visitors to the login page, coming back afterwards"""
    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if not g.scope.is_authenticated:
                if wants_json():
                    return jsonify({'success': False, 'message': 'Please login to continue'}), 401
                target = redirect_target or request.path
                return redirect(url_for('storefront.login', next=target))
            return f(*args, **kwargs)
        return decorated
    return decorator


def admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not g.scope.is_admin:
            return redirect(url_for('admin.login'))
        return f(*args, **kwargs)
    return decorated


def super_admin_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if not g.scope.is_super_admin:
            flash('Only super admins can create new admin accounts.', 'error')
            return redirect(url_for('admin.dashboard'))
        return f(*args, **kwargs)
    return decorated


def wants_json():
    return request.is_json or request.headers.get('X-Requested-With') == 'XMLHttpRequest'


def csrf_protect(f):
    """reject POSTs without a valid token before the handler touches the db"""
    @wraps(f)
    def decorated(*args, **kwargs):
        if request.method == 'POST':
            payload = request.get_json(silent=True) or {}
            candidate = (request.form.get('csrf_token')
                         or request.headers.get('X-CSRF-Token')
                         or payload.get('csrf_token'))
            lifetime = current_app.config['CSRF_TOKEN_LIFETIME']
            if not validate_csrf_token(g.scope.session, candidate, lifetime):
                logger.warning('CSRF validation failed for %s from %s', request.path, g.scope.ip_address)
                if wants_json():
                    return jsonify({'success': False, 'message': 'Invalid security token'}), 403
                flash('Invalid security token. Please try again.', 'error')
                return redirect(request.url)
        return f(*args, **kwargs)
    return decorated

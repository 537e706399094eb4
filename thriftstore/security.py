"""
input sanitization, validators, csrf tokens, password hashing and
login rate limiting
"""

import hmac
import re
import secrets
import time
from datetime import date, datetime, timedelta

from markupsafe import Markup
from werkzeug.security import check_password_hash, generate_password_hash

from .db import now

USERNAME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9_-]{2,19}$')
EMAIL_RE = re.compile(r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$')
PHONE_RE = re.compile(r'^\+?[0-9]{10,15}$')
SPECIAL_CHARS_RE = re.compile(r'[!@#$%^&*()_+\-=\[\]{};:\'",<>.?\\|`~/]')

# ============== SANITIZATION ==============


def clean_text(value):
    """trim and drop markup; output escaping is left to the templates"""
    if value is None:
        return ''
    return Markup(str(value).strip()).striptags()


def clean_email(value):
    if value is None:
        return ''
    return re.sub(r'[^a-zA-Z0-9.!#$%&\'*+/=?^_`{|}~@-]', '', str(value).strip()).lower()


def clean_int(value, default=0):
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


# ============== VALIDATORS ==============


def validate_email(email):
    return bool(email) and EMAIL_RE.match(email) is not None


def validate_username(username):
    return bool(username) and USERNAME_RE.match(username) is not None


def validate_phone_number(phone):
    # formatting characters are allowed, only digits and a leading + count
    digits = re.sub(r'[^0-9+]', '', phone or '')
    return PHONE_RE.match(digits) is not None


def validate_password(password, min_length=8, max_length=128):
    """returns a list of problems, empty when the password is acceptable"""
    errors = []
    if len(password) < min_length:
        errors.append(f'Password must be at least {min_length} characters long.')
    if len(password) > max_length:
        errors.append(f'Password must not exceed {max_length} characters.')
    if not re.search(r'[A-Z]', password):
        errors.append('Password must contain at least one uppercase letter.')
    if not re.search(r'[a-z]', password):
        errors.append('Password must contain at least one lowercase letter.')
    if not re.search(r'[0-9]', password):
        errors.append('Password must contain at least one number.')
    if not SPECIAL_CHARS_RE.search(password):
        errors.append('Password must contain at least one special character.')
    return errors


def validate_birthdate(value, today=None):
    """returns an error message, or None when the birthdate is acceptable"""
    try:
        born = datetime.strptime(value or '', '%Y-%m-%d').date()
    except ValueError:
        return 'Invalid date format.'
    today = today or date.today()
    if born > today:
        return 'Birthdate cannot be in the future.'
    age = today.year - born.year - ((today.month, today.day) < (born.month, born.day))
    if age < 13:
        return 'You must be at least 13 years old.'
    if age > 120:
        return 'Please enter a valid birthdate.'
    return None


# ============== PASSWORDS ==============


def hash_password(password):
    return generate_password_hash(password)


def verify_password(password_hash, password):
    return check_password_hash(password_hash, password)


# ============== CSRF ==============


def issue_csrf_token(session, lifetime=3600):
    """reuse the session's token until it ages out"""
    token = session.get('csrf_token')
    issued = session.get('csrf_token_time', 0)
    if not token or time.time() - issued > lifetime:
        token = secrets.token_hex(32)
        session['csrf_token'] = token
        session['csrf_token_time'] = time.time()
    return token


def validate_csrf_token(session, candidate, lifetime=3600):
    expected = session.get('csrf_token')
    if not expected or not candidate:
        return False
    if time.time() - session.get('csrf_token_time', 0) > lifetime:
        return False
    return hmac.compare_digest(expected, str(candidate))


# ============== LOGIN RATE LIMITING ==============


def check_login_attempts(db, identifier, ip_address, max_attempts=5, window_minutes=15):
    """returns (allowed, remaining, message)"""
    cutoff = (datetime.now() - timedelta(minutes=window_minutes)).isoformat()
    failures = db.fetch_value(
        """SELECT COUNT(*) AS attempt_count FROM login_attempts
           WHERE (username_or_email = :identifier OR ip_address = :ip)
             AND attempted_at > :cutoff
             AND is_successful = :failed""",
        {'identifier': identifier, 'ip': ip_address, 'cutoff': cutoff, 'failed': False},
        default=0,
    )
    if failures >= max_attempts:
        return False, 0, f'Too many failed attempts. Please try again in {window_minutes} minutes.'
    return True, max_attempts - failures, ''


def record_login_attempt(db, identifier, ip_address, successful):
    db.execute(
        """INSERT INTO login_attempts (username_or_email, ip_address, is_successful, attempted_at)
           VALUES (:identifier, :ip, :ok, :ts)""",
        {'identifier': identifier, 'ip': ip_address, 'ok': bool(successful), 'ts': now()},
    )


def clear_old_login_attempts(db, hours=24):
    cutoff = (datetime.now() - timedelta(hours=hours)).isoformat()
    return db.execute(
        'DELETE FROM login_attempts WHERE attempted_at < :cutoff', {'cutoff': cutoff}
    ).rowcount

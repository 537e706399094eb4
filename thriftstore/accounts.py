"""
customer and admin accounts: registration, login, moderation, profiles
"""

import logging

from .activity import log_activity
from .db import now
from .errors import ValidationError
from .security import (
    check_login_attempts,
    clean_email,
    clean_text,
    hash_password,
    record_login_attempt,
    validate_birthdate,
    validate_email,
    validate_password,
    validate_phone_number,
    validate_username,
    verify_password,
)

logger = logging.getLogger(__name__)

ADMIN_ROLES = ('admin', 'moderator', 'super_admin')


# ---------- registration ----------

def register_user(db, form, min_password=8, max_password=128):
    """validate the sign-up form and create the user; returns the new user id"""
    username = clean_text(form.get('username'))
    email = clean_email(form.get('email'))
    full_name = clean_text(form.get('full_name'))
    phone = clean_text(form.get('phone_number'))
    birthdate = clean_text(form.get('birthdate'))
    password = form.get('password', '')
    confirm = form.get('confirm_password', '')

    errors = []
    if not username:
        errors.append('Username is required.')
    elif not validate_username(username):
        errors.append('Username must be 3-20 characters, start with a letter, and contain only '
                      'letters, numbers, underscores, or hyphens.')
    if not email:
        errors.append('Email is required.')
    elif not validate_email(email):
        errors.append('Please enter a valid email address.')
    if not full_name:
        errors.append('Full name is required.')
    if phone and not validate_phone_number(phone):
        errors.append('Please enter a valid phone number.')
    if not birthdate:
        errors.append('Birthdate is required.')
    else:
        problem = validate_birthdate(birthdate)
        if problem:
            errors.append(problem)
    if not password:
        errors.append('Password is required.')
    else:
        errors.extend(validate_password(password, min_password, max_password))
    if password != confirm:
        errors.append('Passwords do not match.')

    if not errors:
        existing = db.fetch_one(
            'SELECT user_id FROM users WHERE username = :username OR email = :email',
            {'username': username, 'email': email},
        )
        if existing:
            errors.append('Username or email already exists.')
    if errors:
        raise ValidationError(errors)

    result = db.execute(
        """INSERT INTO users (username, email, password_hash, full_name, phone_number, birthdate,
                              is_active, is_banned, created_at)
           VALUES (:username, :email, :hash, :full_name, :phone, :birthdate, :active, :banned, :ts)""",
        {
            'username': username,
            'email': email,
            'hash': hash_password(password),
            'full_name': full_name,
            'phone': phone or None,
            'birthdate': birthdate or None,
            'active': True,
            'banned': False,
            'ts': now(),
        },
    )
    return result.lastrowid


# ---------- login ----------

def authenticate_user(db, email, password, ip_address, max_attempts=5, window_minutes=15):
    """returns the user row; raises ValidationError with the reason otherwise"""
    email = clean_email(email)
    errors = []
    if not email:
        errors.append('Email is required.')
    elif not validate_email(email):
        errors.append('Please enter a valid email address.')
    if not password:
        errors.append('Password is required.')
    if errors:
        raise ValidationError(errors)

    allowed, _, message = check_login_attempts(db, email, ip_address, max_attempts, window_minutes)
    if not allowed:
        raise ValidationError([message])

    user = db.fetch_one(
        """SELECT user_id, username, email, password_hash, is_active, is_banned, ban_reason
           FROM users WHERE email = :email""",
        {'email': email},
    )
    if not user or not verify_password(user['password_hash'], password):
        record_login_attempt(db, email, ip_address, False)
        raise ValidationError(['Invalid email or password.'])
    if not user['is_active']:
        record_login_attempt(db, email, ip_address, False)
        raise ValidationError(['Your account has been deactivated. Please contact support.'])
    if user['is_banned']:
        record_login_attempt(db, email, ip_address, False)
        raise ValidationError([f"Your account has been banned. Reason: {user['ban_reason'] or 'Violation of terms.'}"])

    db.execute('UPDATE users SET last_login = :ts WHERE user_id = :id', {'ts': now(), 'id': user['user_id']})
    record_login_attempt(db, email, ip_address, True)
    return user


def authenticate_admin(db, username, password, ip_address, max_attempts=5, window_minutes=15):
    username = clean_text(username)
    errors = []
    if not username:
        errors.append('Username is required.')
    if not password:
        errors.append('Password is required.')
    if errors:
        raise ValidationError(errors)

    allowed, _, message = check_login_attempts(db, username, ip_address, max_attempts, window_minutes)
    if not allowed:
        raise ValidationError([message])

    admin = db.fetch_one(
        """SELECT admin_id, username, email, password_hash, full_name, role, is_active
           FROM admins WHERE username = :login OR email = :login""",
        {'login': username},
    )
    if not admin or not verify_password(admin['password_hash'], password):
        record_login_attempt(db, username, ip_address, False)
        raise ValidationError(['Invalid username or password.'])
    if not admin['is_active']:
        record_login_attempt(db, username, ip_address, False)
        raise ValidationError(['Your account has been deactivated.'])

    db.execute('UPDATE admins SET last_login = :ts WHERE admin_id = :id', {'ts': now(), 'id': admin['admin_id']})
    record_login_attempt(db, username, ip_address, True)
    return admin


# ---------- admins ----------

def create_admin(db, scope, form, min_password=8, max_password=128):
    """super admins only - the route checks the role before calling"""
    username = clean_text(form.get('username'))
    email = clean_email(form.get('email'))
    full_name = clean_text(form.get('full_name'))
    password = form.get('password', '')
    role = form.get('role') if form.get('role') in ('admin', 'moderator') else 'admin'

    errors = []
    if not username:
        errors.append('Username is required.')
    elif not validate_username(username):
        errors.append('Username must be 3-20 characters, start with a letter, and contain only '
                      'letters, numbers, underscores, or hyphens.')
    if not email:
        errors.append('Email is required.')
    elif not validate_email(email):
        errors.append('Please enter a valid email address.')
    if not full_name:
        errors.append('Full name is required.')
    if not password:
        errors.append('Password is required.')
    else:
        errors.extend(validate_password(password, min_password, max_password))
    if password != form.get('confirm_password', ''):
        errors.append('Passwords do not match.')
    if not errors and db.fetch_one(
        'SELECT admin_id FROM admins WHERE username = :username OR email = :email',
        {'username': username, 'email': email},
    ):
        errors.append('Username or email already exists.')
    if errors:
        raise ValidationError(errors)

    admin_id = insert_admin(db, username, email, password, full_name, role)
    log_activity(db, scope, 'admin_created', 'admin', admin_id, new_values={'username': username, 'role': role})
    return admin_id


def insert_admin(db, username, email, password, full_name, role='admin'):
    if role not in ADMIN_ROLES:
        raise ValueError(f'unknown admin role {role!r}')
    return db.execute(
        """INSERT INTO admins (username, email, password_hash, full_name, role, is_active, created_at)
           VALUES (:username, :email, :hash, :full_name, :role, :active, :ts)""",
        {
            'username': username,
            'email': email,
            'hash': hash_password(password),
            'full_name': full_name,
            'role': role,
            'active': True,
            'ts': now(),
        },
    ).lastrowid


# ---------- user moderation ----------

def list_users(db, search=None, status=None, page=1, per_page=20):
    where = ['1=1']
    params = {}
    if search:
        where.append('(username LIKE :term OR email LIKE :term OR full_name LIKE :term)')
        params['term'] = f'%{search}%'
    if status == 'active':
        where.append('is_active AND NOT is_banned')
    elif status == 'inactive':
        where.append('NOT is_active')
    elif status == 'banned':
        where.append('is_banned')
    clause = ' AND '.join(where)

    total = db.fetch_value(f'SELECT COUNT(*) AS total FROM users WHERE {clause}', params, default=0)
    rows = db.fetch_all(
        f"""SELECT u.user_id, u.username, u.email, u.full_name, u.phone_number,
                   u.is_active, u.is_banned, u.ban_reason, u.last_login, u.created_at,
                   (SELECT COUNT(*) FROM orders WHERE user_id = u.user_id) AS order_count,
                   (SELECT SUM(total_amount) FROM orders
                     WHERE user_id = u.user_id AND status NOT IN ('cancelled', 'refunded')) AS total_spent
            FROM users u
            WHERE {clause}
            ORDER BY u.created_at DESC
            LIMIT :limit OFFSET :offset""",
        {**params, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    return rows, total


def _user(db, user_id, columns='*'):
    return db.fetch_one(f'SELECT {columns} FROM users WHERE user_id = :id', {'id': user_id})


def toggle_user_status(db, scope, user_id):
    """returns (success, message)"""
    user = _user(db, user_id, 'is_active')
    if not user:
        return False, 'User not found'
    active = not user['is_active']
    db.execute('UPDATE users SET is_active = :active WHERE user_id = :id', {'active': active, 'id': user_id})
    log_activity(db, scope, 'user_activated' if active else 'user_deactivated', 'user', user_id,
                 old_values={'is_active': bool(user['is_active'])}, new_values={'is_active': active})
    return True, 'User activated' if active else 'User deactivated'


def toggle_user_ban(db, scope, user_id, reason=None):
    user = _user(db, user_id, 'is_banned, ban_reason')
    if not user:
        return False, 'User not found'
    banned = not user['is_banned']
    ban_reason = (clean_text(reason) or 'Violation of terms') if banned else None
    db.execute(
        'UPDATE users SET is_banned = :banned, ban_reason = :reason WHERE user_id = :id',
        {'banned': banned, 'reason': ban_reason, 'id': user_id},
    )
    log_activity(db, scope, 'user_banned' if banned else 'user_unbanned', 'user', user_id,
                 old_values={'is_banned': bool(user['is_banned']), 'ban_reason': user['ban_reason']},
                 new_values={'is_banned': banned, 'ban_reason': ban_reason})
    return True, 'User banned' if banned else 'User unbanned'


def delete_user(db, scope, user_id):
    user = _user(db, user_id, 'user_id, username, email')
    if not user:
        return False, 'User not found'
    orders = db.fetch_value('SELECT COUNT(*) AS count FROM orders WHERE user_id = :id', {'id': user_id}, default=0)
    if orders:
        return False, 'Cannot delete user with existing orders. Deactivate instead.'
    db.execute('DELETE FROM users WHERE user_id = :id', {'id': user_id})
    log_activity(db, scope, 'user_deleted', 'user', user_id, old_values=user)
    return True, 'User deleted successfully'


def update_user(db, scope, user_id, form):
    username = clean_text(form.get('username'))
    email = clean_email(form.get('email'))
    full_name = clean_text(form.get('full_name'))
    phone = clean_text(form.get('phone_number'))

    if not username or not email:
        return False, 'Username and email are required'
    if not validate_username(username) or not validate_email(email):
        return False, 'Invalid username or email'
    if phone and not validate_phone_number(phone):
        return False, 'Please enter a valid phone number'
    duplicate = db.fetch_one(
        'SELECT user_id FROM users WHERE (username = :username OR email = :email) AND user_id != :id',
        {'username': username, 'email': email, 'id': user_id},
    )
    if duplicate:
        return False, 'Username or email already exists'
    old = _user(db, user_id, 'username, email, full_name, phone_number')
    if not old:
        return False, 'User not found'

    new = {'username': username, 'email': email, 'full_name': full_name, 'phone_number': phone or None}
    db.execute(
        """UPDATE users SET username = :username, email = :email, full_name = :full_name,
                            phone_number = :phone_number
           WHERE user_id = :id""",
        {**new, 'id': user_id},
    )
    log_activity(db, scope, 'user_updated', 'user', user_id, old_values=old, new_values=new)
    return True, 'User updated successfully'


# ---------- self service ----------

PASSWORD_OWNERS = {'user': ('users', 'user_id'), 'admin': ('admins', 'admin_id')}


def get_user(db, user_id):
    return _user(db, user_id, 'user_id, username, email, full_name, phone_number, birthdate, created_at')


def get_admin(db, admin_id):
    return db.fetch_one(
        'SELECT admin_id, username, email, full_name, role, last_login, created_at FROM admins WHERE admin_id = :id',
        {'id': admin_id},
    )


def update_profile(db, scope, form):
    """customers may change their name and phone; username and email stay as registered"""
    full_name = clean_text(form.get('full_name'))
    phone = clean_text(form.get('phone_number'))
    errors = []
    if not full_name:
        errors.append('Full name is required.')
    if phone and not validate_phone_number(phone):
        errors.append('Please enter a valid phone number.')
    if errors:
        raise ValidationError(errors)

    old = _user(db, scope.user_id, 'full_name, phone_number')
    new = {'full_name': full_name, 'phone_number': phone or None}
    db.execute(
        'UPDATE users SET full_name = :full_name, phone_number = :phone_number WHERE user_id = :id',
        {**new, 'id': scope.user_id},
    )
    log_activity(db, scope, 'profile_updated', 'user', scope.user_id, old_values=old, new_values=new)


def update_admin_profile(db, scope, form):
    username = clean_text(form.get('username'))
    email = clean_email(form.get('email'))
    full_name = clean_text(form.get('full_name'))
    errors = []
    if not username or not email:
        errors.append('Username and email are required.')
    elif not validate_username(username) or not validate_email(email):
        errors.append('Invalid username or email.')
    elif db.fetch_one(
        'SELECT admin_id FROM admins WHERE (username = :username OR email = :email) AND admin_id != :id',
        {'username': username, 'email': email, 'id': scope.admin_id},
    ):
        errors.append('Username or email already in use.')
    if errors:
        raise ValidationError(errors)

    old = db.fetch_one('SELECT username, email, full_name FROM admins WHERE admin_id = :id', {'id': scope.admin_id})
    new = {'username': username, 'email': email, 'full_name': full_name or old['full_name']}
    db.execute(
        'UPDATE admins SET username = :username, email = :email, full_name = :full_name WHERE admin_id = :id',
        {**new, 'id': scope.admin_id},
    )
    log_activity(db, scope, 'profile_updated', 'admin', scope.admin_id, old_values=old, new_values=new)
    return new


def change_password(db, scope, owner, owner_id, form, min_password=8, max_password=128):
    """owner is 'user' or 'admin'; the current password must match before anything changes"""
    table, key = PASSWORD_OWNERS[owner]
    current = db.fetch_value(f'SELECT password_hash FROM {table} WHERE {key} = :id', {'id': owner_id})
    password = form.get('new_password', '')

    errors = []
    if current is None or not verify_password(current, form.get('current_password', '')):
        errors.append('Current password is incorrect.')
    else:
        errors.extend(validate_password(password, min_password, max_password))
        if password != form.get('confirm_password', ''):
            errors.append('New passwords do not match.')
    if errors:
        raise ValidationError(errors)

    db.execute(f'UPDATE {table} SET password_hash = :hash WHERE {key} = :id',
               {'hash': hash_password(password), 'id': owner_id})
    log_activity(db, scope, 'password_changed', owner, owner_id)
    logger.info('Password changed for %s %s', owner, owner_id)

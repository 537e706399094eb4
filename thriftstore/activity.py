"""
activity log - append-only audit trail of admin and customer actions
"""

import ipaddress
import json
import logging

from sqlalchemy.exc import SQLAlchemyError

from .db import now

logger = logging.getLogger(__name__)

# checked in this order, first value that parses as an IP wins
FORWARDING_HEADERS = ('CF-Connecting-IP', 'Client-IP', 'X-Forwarded-For')
UNKNOWN_IP = '0.0.0.0'


def client_ip(headers, remote_addr=None):
    candidates = [headers.get(name) for name in FORWARDING_HEADERS]
    candidates.append(remote_addr)
    for raw in candidates:
        if not raw:
            continue
        ip = raw.split(',')[0].strip()
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            continue
        return ip
    return UNKNOWN_IP


def _snapshot(values):
    if not values:
        return None
    return json.dumps(values, default=str, sort_keys=True)


def log_activity(db, scope, action, entity_type, entity_id=None, old_values=None, new_values=None):
    """
    Append one activity row for whoever is acting in ``scope``.

    Fire-and-forget: call it after the business change has committed. A
    failure here is logged and reported as False, never raised, so it can't
    undo the operation being audited.
    """
    try:
        db.execute(
            """INSERT INTO activity_logs
                   (admin_id, user_id, action, entity_type, entity_id,
                    old_values, new_values, ip_address, user_agent, created_at)
               VALUES (:admin_id, :user_id, :action, :entity_type, :entity_id,
                       :old_values, :new_values, :ip, :ua, :ts)""",
            {
                'admin_id': scope.admin_id,
                'user_id': scope.user_id,
                'action': action,
                'entity_type': entity_type,
                'entity_id': entity_id,
                'old_values': _snapshot(old_values),
                'new_values': _snapshot(new_values),
                'ip': scope.ip_address or UNKNOWN_IP,
                'ua': (scope.user_agent or '')[:500] or None,
                'ts': now(),
            },
        )
    except SQLAlchemyError:
        logger.exception('Failed to write activity log entry %s for %s %s', action, entity_type, entity_id)
        return False
    return True


# ---------- viewer ----------

def _log_filters(action=None, entity_type=None, date_from=None, date_to=None):
    where = ['1=1']
    params = {}
    if action:
        where.append('al.action LIKE :action')
        params['action'] = f'%{action}%'
    if entity_type:
        where.append('al.entity_type = :entity_type')
        params['entity_type'] = entity_type
    if date_from:
        where.append('substr(al.created_at, 1, 10) >= :date_from')
        params['date_from'] = date_from
    if date_to:
        where.append('substr(al.created_at, 1, 10) <= :date_to')
        params['date_to'] = date_to
    return ' AND '.join(where), params


def list_activity(db, action=None, entity_type=None, date_from=None, date_to=None, page=1, per_page=50):
    """returns (rows, total) newest first; snapshots decoded back into dicts"""
    where, params = _log_filters(action, entity_type, date_from, date_to)
    total = db.fetch_value(f'SELECT COUNT(*) AS total FROM activity_logs al WHERE {where}', params, default=0)
    rows = db.fetch_all(
        f"""SELECT al.*, a.username AS admin_username, u.username AS user_username
            FROM activity_logs al
            LEFT JOIN admins a ON al.admin_id = a.admin_id
            LEFT JOIN users u ON al.user_id = u.user_id
            WHERE {where}
            ORDER BY al.created_at DESC, al.log_id DESC
            LIMIT :limit OFFSET :offset""",
        {**params, 'limit': per_page, 'offset': (max(page, 1) - 1) * per_page},
    )
    for row in rows:
        row['old_values'] = json.loads(row['old_values']) if row['old_values'] else None
        row['new_values'] = json.loads(row['new_values']) if row['new_values'] else None
    return rows, total


def distinct_actions(db, limit=50):
    rows = db.fetch_all('SELECT DISTINCT action FROM activity_logs ORDER BY action LIMIT :limit', {'limit': limit})
    return [r['action'] for r in rows]


def distinct_entities(db):
    rows = db.fetch_all('SELECT DISTINCT entity_type FROM activity_logs ORDER BY entity_type')
    return [r['entity_type'] for r in rows]

"""
Order status workflow (admin side).

    pending -> confirmed -> processing -> shipped -> delivered
       \\___________\\______________\\--> cancelled
    confirmed/processing/shipped/delivered/cancelled --> refunded

Forward moves may skip steps (pending -> shipped is fine); nothing moves
backwards, and refunded is final. Moving to shipped stamps shipped_at,
moving to delivered stamps delivered_at, in the same UPDATE as the
status itself.
"""

import logging
from enum import Enum

from .activity import log_activity
from .db import now
from .errors import InvalidStatusTransition, OrderNotFoundError, ValidationError
from .security import clean_text

logger = logging.getLogger(__name__)


class OrderStatus(str, Enum):
    PENDING = 'pending'
    CONFIRMED = 'confirmed'
    PROCESSING = 'processing'
    SHIPPED = 'shipped'
    DELIVERED = 'delivered'
    CANCELLED = 'cancelled'
    REFUNDED = 'refunded'

    @classmethod
    def parse(cls, value):
        try:
            return cls(value)
        except ValueError:
            return None


FULFILMENT_FLOW = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
)

CANCELLABLE = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING})
REFUNDABLE = frozenset({
    OrderStatus.CONFIRMED, OrderStatus.PROCESSING, OrderStatus.SHIPPED,
    OrderStatus.DELIVERED, OrderStatus.CANCELLED,
})


def transition_error(current, requested):
    """reason the move is illegal, or None when it's allowed"""
    if current is requested:
        return f'order is already {current.value}'
    if requested is OrderStatus.CANCELLED:
        return None if current in CANCELLABLE else f'{current.value} orders cannot be cancelled'
    if requested is OrderStatus.REFUNDED:
        return None if current in REFUNDABLE else f'{current.value} orders cannot be refunded'
    if current not in FULFILMENT_FLOW:
        return f'{current.value} is a closed status'
    if FULFILMENT_FLOW.index(requested) < FULFILMENT_FLOW.index(current):
        return 'orders cannot move backwards'
    return None


def validate_transition(current, requested):
    reason = transition_error(current, requested)
    if reason:
        raise InvalidStatusTransition(current.value, requested.value, reason)


def allowed_next(current):
    return [status for status in OrderStatus if transition_error(current, status) is None]


def _current_status(db, order_id):
    row = db.fetch_one(
        'SELECT order_id, status, tracking_number FROM orders WHERE order_id = :id', {'id': order_id}
    )
    if row is None:
        raise OrderNotFoundError(order_id)
    return row


def update_status(db, scope, order_id, new_status):
    """move an order to ``new_status`` (str or OrderStatus); returns the new status"""
    requested = OrderStatus.parse(new_status)
    if requested is None:
        raise ValidationError(['Invalid status'])

    row = _current_status(db, order_id)
    current = OrderStatus(row['status'])
    validate_transition(current, requested)

    assignments = ['status = :status', 'updated_at = :ts']
    if requested is OrderStatus.SHIPPED:
        assignments.append('shipped_at = :ts')
    elif requested is OrderStatus.DELIVERED:
        assignments.append('delivered_at = :ts')

    # guarded on the status we validated against
    result = db.execute(
        f"UPDATE orders SET {', '.join(assignments)} WHERE order_id = :id AND status = :current",
        {'status': requested.value, 'ts': now(), 'id': order_id, 'current': current.value},
    )
    if result.rowcount != 1:
        raise InvalidStatusTransition(current.value, requested.value, 'order was changed concurrently')

    log_activity(
        db, scope, 'order_status_updated', 'order', order_id,
        old_values={'status': current.value}, new_values={'status': requested.value},
    )
    logger.info('Order %s status %s -> %s', order_id, current.value, requested.value)
    return requested


def add_tracking(db, scope, order_id, tracking_number):
    """record a tracking number; the order becomes (or stays) shipped"""
    tracking_number = clean_text(tracking_number)
    if not tracking_number:
        raise ValidationError(['Tracking number required'])

    row = _current_status(db, order_id)
    current = OrderStatus(row['status'])
    if current is not OrderStatus.SHIPPED:
        validate_transition(current, OrderStatus.SHIPPED)

    result = db.execute(
        """UPDATE orders
           SET tracking_number = :tracking, status = :shipped,
               shipped_at = COALESCE(shipped_at, :ts), updated_at = :ts
           WHERE order_id = :id AND status = :current""",
        {
            'tracking': tracking_number,
            'shipped': OrderStatus.SHIPPED.value,
            'ts': now(),
            'id': order_id,
            'current': current.value,
        },
    )
    if result.rowcount != 1:
        raise InvalidStatusTransition(current.value, OrderStatus.SHIPPED.value, 'order was changed concurrently')

    log_activity(
        db, scope, 'tracking_added', 'order', order_id,
        old_values={'status': current.value, 'tracking_number': row['tracking_number']},
        new_values={'status': OrderStatus.SHIPPED.value, 'tracking_number': tracking_number},
    )
    return tracking_number

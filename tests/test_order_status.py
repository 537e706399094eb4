"""Tests for the admin order status workflow."""

import json

import pytest

from thriftstore.errors import InvalidStatusTransition, OrderNotFoundError, ValidationError
from thriftstore.order_status import OrderStatus, add_tracking, allowed_next, update_status


def set_status(db, order_id, status):
    db.execute('UPDATE orders SET status = :s WHERE order_id = :id', {'s': status, 'id': order_id})


def order_row(db, order_id):
    return db.fetch_one('SELECT * FROM orders WHERE order_id = :id', {'id': order_id})


def last_log(db, action):
    return db.fetch_one(
        'SELECT * FROM activity_logs WHERE action = :action ORDER BY log_id DESC', {'action': action}
    )


ALLOWED = [
    ('pending', 'confirmed'),
    ('pending', 'processing'),
    ('pending', 'shipped'),
    ('pending', 'delivered'),
    ('pending', 'cancelled'),
    ('confirmed', 'processing'),
    ('confirmed', 'cancelled'),
    ('confirmed', 'refunded'),
    ('processing', 'shipped'),
    ('processing', 'cancelled'),
    ('shipped', 'delivered'),
    ('shipped', 'refunded'),
    ('delivered', 'refunded'),
    ('cancelled', 'refunded'),
]

REJECTED = [
    ('pending', 'pending'),
    ('pending', 'refunded'),
    ('confirmed', 'pending'),
    ('shipped', 'processing'),
    ('shipped', 'cancelled'),
    ('delivered', 'pending'),
    ('delivered', 'cancelled'),
    ('cancelled', 'pending'),
    ('cancelled', 'shipped'),
    ('refunded', 'delivered'),
    ('refunded', 'cancelled'),
    ('refunded', 'refunded'),
]


class TestTransitions:
    @pytest.mark.parametrize('current,requested', ALLOWED)
    def test_allowed(self, db, admin_scope, placed_order, current, requested):
        set_status(db, placed_order.order_id, current)

        assert update_status(db, admin_scope, placed_order.order_id, requested) is OrderStatus(requested)

        assert order_row(db, placed_order.order_id)['status'] == requested

    @pytest.mark.parametrize('current,requested', REJECTED)
    def test_rejected(self, db, admin_scope, placed_order, current, requested):
        set_status(db, placed_order.order_id, current)

        with pytest.raises(InvalidStatusTransition):
            update_status(db, admin_scope, placed_order.order_id, requested)

        assert order_row(db, placed_order.order_id)['status'] == current
        assert last_log(db, 'order_status_updated') is None

    def test_allowed_next(self):
        assert allowed_next(OrderStatus.PROCESSING) == [
            OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED,
        ]
        assert allowed_next(OrderStatus.REFUNDED) == []
        assert allowed_next(OrderStatus.CANCELLED) == [OrderStatus.REFUNDED]


class TestUpdateStatus:
    def test_shipping_stamps_and_logs(self, db, admin_scope, placed_order):
        update_status(db, admin_scope, placed_order.order_id, 'shipped')

        order = order_row(db, placed_order.order_id)
        assert order['status'] == 'shipped'
        assert order['shipped_at'] is not None
        assert order['delivered_at'] is None
        log = last_log(db, 'order_status_updated')
        assert log['admin_id'] == admin_scope.admin_id
        assert log['user_id'] is None
        assert log['entity_type'] == 'order'
        assert log['entity_id'] == placed_order.order_id
        assert json.loads(log['old_values']) == {'status': 'pending'}
        assert json.loads(log['new_values']) == {'status': 'shipped'}
        assert log['ip_address'] == '198.51.100.20'

    def test_delivery_stamps_delivered_at(self, db, admin_scope, placed_order):
        update_status(db, admin_scope, placed_order.order_id, 'shipped')
        shipped_at = order_row(db, placed_order.order_id)['shipped_at']

        update_status(db, admin_scope, placed_order.order_id, OrderStatus.DELIVERED)

        order = order_row(db, placed_order.order_id)
        assert order['delivered_at'] is not None
        assert order['shipped_at'] == shipped_at

    def test_unknown_status(self, db, admin_scope, placed_order):
        with pytest.raises(ValidationError) as exc:
            update_status(db, admin_scope, placed_order.order_id, 'lost')
        assert exc.value.errors == ['Invalid status']

    def test_missing_order(self, db, admin_scope):
        with pytest.raises(OrderNotFoundError):
            update_status(db, admin_scope, 9999, 'confirmed')

    def test_concurrent_change_is_detected(self, db, admin_scope, placed_order):
        class StaleGateway:
            """reads the order, then someone else cancels it before our update"""

            def __init__(self, gateway):
                self._gateway = gateway

            def fetch_one(self, query, params=None):
                row = self._gateway.fetch_one(query, params)
                set_status(self._gateway, placed_order.order_id, 'cancelled')
                return row

            def __getattr__(self, name):
                return getattr(self._gateway, name)

        with pytest.raises(InvalidStatusTransition):
            update_status(StaleGateway(db), admin_scope, placed_order.order_id, 'shipped')

        assert order_row(db, placed_order.order_id)['status'] == 'cancelled'


class TestAddTracking:
    def test_pending_order_becomes_shipped(self, db, admin_scope, placed_order):
        assert add_tracking(db, admin_scope, placed_order.order_id, 'TRK123') == 'TRK123'

        order = order_row(db, placed_order.order_id)
        assert order['tracking_number'] == 'TRK123'
        assert order['status'] == 'shipped'
        assert order['shipped_at'] is not None
        log = last_log(db, 'tracking_added')
        assert json.loads(log['old_values']) == {'status': 'pending', 'tracking_number': None}
        assert json.loads(log['new_values']) == {'status': 'shipped', 'tracking_number': 'TRK123'}

    def test_shipped_order_keeps_ship_date(self, db, admin_scope, placed_order):
        update_status(db, admin_scope, placed_order.order_id, 'shipped')
        shipped_at = order_row(db, placed_order.order_id)['shipped_at']

        add_tracking(db, admin_scope, placed_order.order_id, 'TRK999')

        order = order_row(db, placed_order.order_id)
        assert order['tracking_number'] == 'TRK999'
        assert order['shipped_at'] == shipped_at

    @pytest.mark.parametrize('status', ['delivered', 'cancelled', 'refunded'])
    def test_closed_orders_are_rejected(self, db, admin_scope, placed_order, status):
        set_status(db, placed_order.order_id, status)

        with pytest.raises(InvalidStatusTransition):
            add_tracking(db, admin_scope, placed_order.order_id, 'TRK123')

        order = order_row(db, placed_order.order_id)
        assert order['status'] == status
        assert order['tracking_number'] is None

    def test_blank_tracking_number(self, db, admin_scope, placed_order):
        with pytest.raises(ValidationError):
            add_tracking(db, admin_scope, placed_order.order_id, '   ')

    def test_missing_order(self, db, admin_scope):
        with pytest.raises(OrderNotFoundError):
            add_tracking(db, admin_scope, 9999, 'TRK123')

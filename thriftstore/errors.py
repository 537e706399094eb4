"""Exceptions raised by the store's business logic."""


class StoreError(Exception):
    """Base exception for all store errors."""

    pass


class ValidationError(StoreError):
    """Raised when submitted form data fails validation.

    Carries every message so the page can list them all at once.
    """

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__('; '.join(self.errors))


class EmptyCartError(StoreError):
    """Raised when checkout is attempted with nothing in the cart."""

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Cart is empty for user {user_id}")


class OutOfStockError(StoreError):
    """Raised when a cart line asks for more than the variant has in stock."""

    def __init__(self, lines):
        self.lines = list(lines)
        names = ', '.join(
            f"{line['product_name']} ({line['size']}/{line['color']})" for line in self.lines
        )
        super().__init__(f"Insufficient stock for: {names}")


class OrderNotFoundError(StoreError):
    """Raised when an order id or number doesn't exist."""

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Order not found: {ref}")


class InvalidStatusTransition(StoreError):
    """Raised when an order can't move from its current status to the requested one."""

    def __init__(self, current, requested, reason=None):
        self.current = current
        self.requested = requested
        msg = f"Cannot change order status from {current} to {requested}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg)


class OrderNumberExhaustedError(StoreError):
    """Raised when no unused order number could be generated."""

    def __init__(self, attempts):
        self.attempts = attempts
        super().__init__(f"Could not generate a unique order number after {attempts} attempts")

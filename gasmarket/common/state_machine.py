"""Order status transitions enforced by the order service.

`dispatched` is the only accepted name for the out-for-delivery state.
"""

from gasmarket.common.errors import InvalidTransition

PENDING_PAYMENT = "pending_payment"
PENDING = "pending"
CONFIRMED = "confirmed"
PROCESSING = "processing"
DISPATCHED = "dispatched"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REJECTED = "rejected"
REFUNDED = "refunded"

ORDER_STATUSES = (
    PENDING_PAYMENT,
    PENDING,
    CONFIRMED,
    PROCESSING,
    DISPATCHED,
    DELIVERED,
    CANCELLED,
    REJECTED,
    REFUNDED,
)

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    # Only payment verification leaves pending_payment.
    PENDING_PAYMENT: {PENDING},
    PENDING: {CONFIRMED, REJECTED, CANCELLED},
    CONFIRMED: {PROCESSING, CANCELLED},
    PROCESSING: {DISPATCHED, CANCELLED},
    DISPATCHED: {DELIVERED},
    DELIVERED: set(),
    CANCELLED: set(),
    REJECTED: set(),
    REFUNDED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)
CANCELLABLE_BY_CUSTOMER = frozenset({PENDING, CONFIRMED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Cannot change status from {current} to {new}")


PAYMENT_PENDING = "pending"
PAYMENT_COMPLETED = "completed"
PAYMENT_FAILED = "failed"
PAYMENT_CANCELLED = "cancelled"
PAYMENT_EXPIRED = "expired"

PAYMENT_TRANSITIONS: dict[str, set[str]] = {
    PAYMENT_PENDING: {PAYMENT_COMPLETED, PAYMENT_EXPIRED, PAYMENT_FAILED},
    PAYMENT_COMPLETED: set(),
    PAYMENT_FAILED: set(),
    PAYMENT_CANCELLED: set(),
    PAYMENT_EXPIRED: set(),
}


def validate_payment_transition(current: str, new: str) -> None:
    """Payments only ever move forward out of `pending`."""

    if new not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"Payment cannot move from {current} to {new}")

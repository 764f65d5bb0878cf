"""Domain error taxonomy mapped to HTTP responses at the request boundary.

Services raise these; the gateway's exception handlers render them as
`{"success": false, "message": ..., "error": ...}` with `status_code`.
"""

from typing import Any


class MarketplaceError(Exception):
    """Base for every expected, user-visible failure."""

    status_code = 400
    error = "error"
    default_message = "Request failed"

    def __init__(self, message: str | None = None, **extra: Any) -> None:
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"success": False, "message": self.message, "error": self.error}
        body.update(self.extra)
        return body


class ValidationError(MarketplaceError):
    status_code = 400
    error = "validation_error"
    default_message = "Invalid request"


class AuthorizationError(MarketplaceError):
    status_code = 403
    error = "forbidden"
    default_message = "You are not allowed to perform this action"


class NotFoundError(MarketplaceError):
    status_code = 404
    error = "not_found"
    default_message = "Resource not found"


class StateConflictError(MarketplaceError):
    status_code = 400
    error = "state_conflict"
    default_message = "Operation not allowed in the current state"


class UnexpectedError(MarketplaceError):
    status_code = 500
    error = "unexpected_error"
    default_message = "Internal server error"


# Not found


class ListingNotFound(NotFoundError):
    error = "listing_not_found"
    default_message = "Product listing not found"


class OrderNotFound(NotFoundError):
    error = "order_not_found"
    default_message = "Order not found or you do not have permission to access it"


class PaymentNotFound(NotFoundError):
    error = "payment_not_found"
    default_message = "Payment not found or you do not have permission"


# Validation


class InvalidPhone(ValidationError):
    error = "invalid_phone"
    default_message = "Please enter a valid Kenyan phone number (e.g., 0712345678 or 0112345678)"


class InvalidRating(ValidationError):
    error = "invalid_rating"
    default_message = "Rating must be between 1 and 5"


# State conflicts


class ListingUnavailable(StateConflictError):
    error = "listing_unavailable"
    default_message = "This product is currently unavailable"


class InsufficientStock(StateConflictError):
    error = "insufficient_stock"
    default_message = "Not enough units available"


class SelfOrder(StateConflictError):
    error = "self_order"
    default_message = "You cannot order from yourself"


class InvalidTransition(StateConflictError):
    error = "invalid_transition"


class NotCancellable(StateConflictError):
    error = "not_cancellable"


class AlreadyRated(StateConflictError):
    error = "already_rated"
    default_message = "You have already rated this order"


class OrderNotEligible(StateConflictError):
    error = "order_not_eligible"
    default_message = "Order not found or payment cannot be initiated"


class AmountMismatch(StateConflictError):
    error = "amount_mismatch"


class AlreadyPaid(StateConflictError):
    error = "already_paid"
    default_message = "This order has already been paid for"


class AlreadyProcessed(StateConflictError):
    error = "already_processed"


class PaymentExpired(StateConflictError):
    error = "payment_expired"
    default_message = "Verification code has expired. Please restart payment."


class CodeMismatch(StateConflictError):
    error = "code_mismatch"


class TooManyAttempts(StateConflictError):
    error = "too_many_attempts"
    default_message = "Too many failed attempts. Payment has been expired."

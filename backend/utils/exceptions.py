"""
Domain errors for the order lifecycle.

Every error carries a stable ``code`` and the HTTP status it maps to, so the
API layer can render them without knowing each type.
"""
from typing import Any, Dict, List, Optional


class MarketplaceError(Exception):
    status_code = 400
    code = "marketplace_error"
    default_message = "The operation could not be completed"

    def __init__(self, message: Optional[str] = None, **context: Any):
        self.message = message or self.default_message
        self.context = context
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"detail": self.message, "error": self.code}
        if self.context:
            body["context"] = {key: str(value) for key, value in self.context.items()}
        return body


class ValidationError(MarketplaceError):
    code = "validation_error"
    default_message = "Invalid input"


class EmptyCartError(ValidationError):
    code = "empty_cart"
    default_message = "Cart is empty"


class OrderNotFoundError(MarketplaceError):
    status_code = 404
    code = "order_not_found"
    default_message = "Order not found"


class InvalidTransitionError(MarketplaceError):
    status_code = 409
    code = "invalid_transition"
    default_message = "This status change is not allowed"


class ForbiddenTransitionError(MarketplaceError):
    status_code = 403
    code = "forbidden_transition"
    default_message = "You are not allowed to change this order"


class DriverAlreadyAssignedError(ForbiddenTransitionError):
    status_code = 409
    code = "driver_already_assigned"
    default_message = "Order is already assigned to another driver"


class StaleStateError(MarketplaceError):
    status_code = 409
    code = "stale_state"
    default_message = "Order was already updated by someone else, please refresh"


class InsufficientStockError(MarketplaceError):
    status_code = 409
    code = "insufficient_stock"
    default_message = "Not enough stock"


class ProductUnavailableError(MarketplaceError):
    status_code = 409
    code = "product_unavailable"
    default_message = "Product is no longer available"


class ProtectedAccountError(MarketplaceError):
    status_code = 403
    code = "protected_account"
    default_message = "This account is protected and cannot be deleted"


class DependencyCleanupError(MarketplaceError):
    """A deletion step failed; recorded on the report while the orchestrator moves on."""
    status_code = 500
    code = "dependency_cleanup_failed"

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        super().__init__(f"Cleanup step '{step}' failed: {cause}", step=step)


class AccountDeletionError(MarketplaceError):
    status_code = 500
    code = "account_deletion_failed"
    default_message = "User could not be deleted"

    def __init__(self, message: Optional[str] = None, blocking: Optional[List[Dict[str, Any]]] = None, **context: Any):
        self.blocking = blocking or []
        super().__init__(message, **context)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["blocking"] = self.blocking
        return body


class OperationTimeoutError(MarketplaceError, TimeoutError):
    status_code = 504
    code = "timeout"
    default_message = "Request timed out, please try again"

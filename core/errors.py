"""
Error taxonomy shared by all services.

Every error carries the HTTP status and machine-readable code it maps to,
so the API layer can render it without inspecting the type.
"""
from typing import Any, Dict, Optional


class CommerceError(Exception):
    """Base exception for all domain errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, **details: Any):
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class ValidationError(CommerceError):
    """Raised when request input fails validation."""

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthError(CommerceError):
    """Raised when a credential is missing, malformed, or expired."""

    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Authentication required"


class AuthorizationError(CommerceError):
    """
    Role or ownership mismatch.

    Nothing raises this today: foreign orders answer 404 so their existence
    is not disclosed. It keeps the 403 slot of the error envelope defined.
    """

    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFoundError(CommerceError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class ConflictError(CommerceError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflicting state"


class DependencyError(CommerceError):
    """Raised when a sibling service or provider is unreachable or answers non-success."""

    status_code = 502
    code = "DEPENDENCY_ERROR"
    default_message = "Upstream service unavailable"


class InternalError(CommerceError):
    pass


class InvalidProductsError(ValidationError):
    code = "INVALID_PRODUCTS"
    default_message = "One or more products are invalid or inactive"


class InsufficientStockError(ConflictError):
    """Raised when a reservation cannot be satisfied."""

    code = "INSUFFICIENT_STOCK"
    default_message = "Insufficient stock"

    def __init__(self, product_id: Optional[str] = None, message: Optional[str] = None):
        if message is None and product_id is not None:
            message = f"Insufficient stock for product {product_id}"
        super().__init__(message, product_id=product_id)
        self.product_id = product_id


class OrderCreateError(InternalError):
    code = "CREATE_FAILED"
    default_message = "Failed to create order"


class ReservationExpiredError(ConflictError):
    code = "RESERVATION_EXPIRED"
    default_message = "Reservation expired before the order was saved"


class AlreadyPaidError(ConflictError):
    code = "ALREADY_PAID"
    default_message = "Order is already paid"


class InvalidStateError(ConflictError):
    code = "INVALID_STATE"
    default_message = "Order is not awaiting payment"


class WebhookSignatureError(ValidationError):
    code = "INVALID_SIGNATURE"
    default_message = "Invalid webhook signature"


class ServiceUnavailableError(DependencyError):
    """Raised when a backing store needed before any side effect is unavailable."""

    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class WebhookPayloadError(ValidationError):
    code = "INVALID_PAYLOAD"
    default_message = "Malformed webhook payload"

"""
Custom exceptions for the storefront checkout service.
"""
from typing import Any, Dict, List, Optional


class StorefrontError(Exception):
    """Base exception for storefront operations"""
    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(StorefrontError):
    """Raised when input is malformed or missing"""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class LimitExceededError(ValidationError):
    """Raised when cart limits are exceeded"""
    error_code = "LIMIT_EXCEEDED"


class UnauthorizedError(StorefrontError):
    """Raised when no caller identity is present"""
    status_code = 401
    error_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required"):
        super().__init__(message)


class ForbiddenError(StorefrontError):
    """Raised when the caller may not act on a resource"""
    status_code = 403
    error_code = "FORBIDDEN"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a cart, product, variant, session or order does not exist"""
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Any):
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class InsufficientStockError(StorefrontError):
    """Raised when a variant cannot cover the requested quantity"""
    status_code = 409
    error_code = "INSUFFICIENT_STOCK"

    def __init__(self, issues: List[Dict[str, Any]]):
        self.issues = issues
        super().__init__(
            "Insufficient stock for " + ", ".join(self._describe(issue) for issue in issues),
            details=issues,
        )

    @staticmethod
    def _describe(issue: Dict[str, Any]) -> str:
        name = issue.get("product_name") or f"product {issue.get('product_id')}"
        if issue.get("variant_name"):
            name = f"{name} ({issue['variant_name']})"
        available = issue.get("available")
        if available is None:
            return f"{name}: requested {issue.get('requested')}"
        return f"{name}: only {available} available, requested {issue.get('requested')}"


class InvalidStateError(StorefrontError):
    """Raised on an illegal status or step transition"""
    status_code = 409
    error_code = "INVALID_STATE"


class SessionExpiredError(StorefrontError):
    """Raised when a checkout session is past its expiry"""
    status_code = 410
    error_code = "SESSION_EXPIRED"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Checkout session has expired. Please start a new checkout.")


class PaymentFailedError(StorefrontError):
    """Raised when the payment gateway declines or times out"""
    status_code = 402

    def __init__(self, error_code: Optional[str], message: Optional[str], payment_id: Optional[int] = None):
        self.error_code = error_code or "PAYMENT_FAILED"
        self.payment_id = payment_id
        super().__init__(
            message or "Payment failed. Please try again or use a different payment method.",
            details={"payment_id": payment_id} if payment_id is not None else None,
        )


class PaymentInProgressError(StorefrontError):
    """Raised when an idempotency key is replayed while its attempt is still running"""
    status_code = 409
    error_code = "PAYMENT_IN_PROGRESS"


class RedisConnectionError(StorefrontError):
    """Raised when Redis connection fails"""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"

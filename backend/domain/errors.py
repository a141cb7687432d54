"""
Custom domain exceptions for consistent error handling.

These exceptions are mapped to HTTP status codes by the global exception handler
in main.py.
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class NotFoundError(DomainError):
    """Resource not found (404)."""
    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        message = f"{resource_type} not found: {identifier}"
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, details=details)


class OrderNotFoundError(NotFoundError):
    def __init__(self, order_id, details: dict | None = None):
        super().__init__("Order", str(order_id), details=details)


class PaymentNotFoundError(NotFoundError):
    def __init__(self, reference: str, details: dict | None = None):
        super().__init__("Payment", reference, details=details)


class ReferenceNotFoundError(NotFoundError):
    """The gateway has no charge for this reference."""
    def __init__(self, reference: str, details: dict | None = None):
        super().__init__("Gateway charge", reference, details=details)


class ValidationError(DomainError):
    """Validation error (400)."""
    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PermissionDeniedError(DomainError):
    """Permission denied (403)."""
    def __init__(self, message: str = "Permission denied", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class UnauthorizedError(DomainError):
    """Unauthorized access (401)."""
    def __init__(self, message: str = "Unauthorized", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class ConflictError(DomainError):
    """Resource conflict (409)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class AlreadyPaidError(ConflictError):
    def __init__(self, order_id, details: dict | None = None):
        super().__init__(f"Order {order_id} is already paid", details=details)


class InsufficientStockError(ConflictError):
    def __init__(self, product_name: str, details: dict | None = None):
        super().__init__(f"Insufficient stock for product: {product_name}", details=details)


class RateLimitError(DomainError):
    """Rate limit exceeded (429)."""
    def __init__(self, message: str = "Rate limit exceeded", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_429_TOO_MANY_REQUESTS, details=details)


class InvalidSignatureError(DomainError):
    """Webhook signature did not verify (400). Never retried."""
    def __init__(self, message: str = "Invalid webhook signature", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class GatewayError(DomainError):
    """Payment gateway operation error (502)."""
    def __init__(self, message: str, status_code: int = status.HTTP_502_BAD_GATEWAY, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class GatewayUnavailableError(GatewayError):
    """Transport failure, timeout or 5xx from the gateway (503). Retryable."""
    def __init__(self, message: str = "Payment gateway unavailable", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details)


class GatewayRejectedError(GatewayError):
    """The gateway refused the request as malformed (502)."""
    pass


class PaymentInitFailedError(GatewayError):
    """Charge could not be started; no ledger row was written."""
    def __init__(self, message: str = "Failed to initialize payment", details: dict | None = None):
        super().__init__(message, details=details)


class VerificationFailedError(GatewayError):
    """Charge status could not be fetched; the payment is left untouched."""
    def __init__(self, message: str = "Payment verification failed", details: dict | None = None):
        super().__init__(message, details=details)

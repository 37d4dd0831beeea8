"""
Custom domain exceptions for consistent error handling.

These exceptions are mapped to HTTP status codes by the global exception handler
in main.py. Every DomainError is a business rejection: callers must not retry
it blindly. Job handlers raise HandlerError (or anything else) to request a
retry from the orchestrator instead.
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


class ConflictError(DomainError):
    """Resource conflict (409)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


# ── Order state machine ─────────────────────────────────────────────

class InvalidTransitionError(DomainError):
    """Target status is not reachable from the current one (400)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class ForbiddenTransitionError(PermissionDeniedError):
    """Actor role may not request this transition (403)."""


class InvalidStateError(DomainError):
    """Order is in a state that accepts no further transitions (409)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class StaleStateError(ConflictError):
    """A conditional update lost its precondition; re-read and retry (409)."""


# ── Payments ────────────────────────────────────────────────────────

class InvalidSignatureError(DomainError):
    """HMAC signature mismatch on a confirmation or webhook (400)."""
    def __init__(self, message: str = "Invalid payment signature", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class GatewayError(DomainError):
    """Payment gateway failure (502)."""
    def __init__(self, message: str, status_code: int = status.HTTP_502_BAD_GATEWAY, details: dict | None = None):
        super().__init__(message, status_code=status_code, details=details)


class GatewayTimeoutError(GatewayError):
    """
    Gateway call exceeded its timeout (504).

    The gateway may still have applied the request, so the message never
    claims the payment failed.
    """
    def __init__(self, message: str = "Payment service is slow to respond. Please try again.", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_504_GATEWAY_TIMEOUT, details=details)


# ── Coins ───────────────────────────────────────────────────────────

class InsufficientBalanceError(DomainError):
    """Coin debit exceeds the user's balance (400)."""
    def __init__(self, required: int, available: int, details: dict | None = None):
        message = f"Insufficient coin balance: {required} required, {available} available"
        details = details or {"required": required, "available": available}
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)
        self.required = required
        self.available = available


# ── Jobs ────────────────────────────────────────────────────────────

class HandlerError(Exception):
    """Raised by job handlers for failures that should be retried."""
    pass

"""
Billing lifecycle exceptions.

Every error carries a machine-readable code and the HTTP status the API layer
should answer with. Services raise these; routes translate them.
"""

from typing import Any


class BillingError(Exception):
    """
    Base billing error.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or "BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
        }


class NotFoundError(BillingError):
    """Customer, plan, subscription or retry record does not exist."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "NOT_FOUND", status_code=404, context=context)


class ConflictError(BillingError):
    """Customer already holds an active subscription."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "CONFLICT", status_code=409, context=context)


class InvalidStateError(BillingError):
    """Operation is not legal from the record's current status."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "INVALID_STATE", status_code=400, context=context)


class ProrationValidationError(BillingError, ValueError):
    """Change date falls outside the current billing period."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message, "PRORATION_VALIDATION_ERROR", status_code=422, context=context)


class CollaboratorError(BillingError):
    """A downstream service call failed for a reason other than a missing record."""

    def __init__(self, message: str, service: str, context: dict[str, Any] | None = None):
        context = {"service": service, **(context or {})}
        super().__init__(message, "COLLABORATOR_ERROR", status_code=502, context=context)
        self.service = service

"""
Error taxonomy for the billing endpoints.

Every error carries an HTTP status and renders to the same JSON shape,
`{"error": ..., "message": ..., "details": ...}`, so clients can branch on
`error` (e.g. a duplicate subscription) without parsing messages.
"""
from typing import Optional


class BillingError(Exception):
    status_code = 500
    error = "Internal Server Error"

    def __init__(self, message: str = "", error: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message or self.error)
        if error:
            self.error = error
        self.message = message or self.error
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.error, "message": self.message, "details": self.details}


class AuthenticationError(BillingError):
    status_code = 401
    error = "Unauthorized"


class PermissionDeniedError(BillingError):
    status_code = 403
    error = "Forbidden"


class NotFoundError(BillingError):
    status_code = 404
    error = "Not Found"


class ValidationError(BillingError):
    status_code = 400
    error = "Invalid request"


class ConflictError(BillingError):
    """Duplicate active subscription. Stays a 400 so existing clients keep working."""
    status_code = 400
    error = "Subscription already exists"


class UpstreamError(BillingError):
    """Stripe (or the record store) failed or rejected the request."""
    status_code = 500
    error = "Upstream service error"


class ConfigurationError(BillingError):
    status_code = 500
    error = "Server configuration error"

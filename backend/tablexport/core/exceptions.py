"""Error taxonomy for the billing API.

Every error carries the HTTP status it maps to and a client-safe message.
Anything else raised inside a request is reported as a generic 500.
"""

from typing import Any


class TableXportError(Exception):
    """Base exception for TableXport."""

    status_code: int = 500
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, **extra: Any):
        self.message = message or self.message
        self.extra = extra
        super().__init__(self.message)

    def to_payload(self) -> dict[str, Any]:
        return {"success": False, "error": self.message, **self.extra}


class AuthenticationRequired(TableXportError):
    """No valid session on a route that needs one."""

    status_code = 401
    message = "Unauthorized"


class AuthorizationDenied(TableXportError):
    """Authenticated, but not allowed (non-admin, non-pro)."""

    status_code = 403
    message = "Forbidden"


class ValidationFailed(TableXportError):
    """Webhook payload or signature could not be validated."""

    status_code = 401
    message = "Invalid webhook"


class InvalidRequest(TableXportError):
    status_code = 400
    message = "Invalid request"


class NotFound(TableXportError):
    status_code = 404
    message = "Not found"


class QuotaExceeded(TableXportError):
    """Daily export limit reached. Carries ``usedToday`` / ``dailyLimit``."""

    status_code = 429
    message = "Daily limit exceeded"


class RateLimited(TableXportError):
    status_code = 429
    message = "Too many requests"


class UpstreamFailure(TableXportError):
    """A dependency (database, PayPal) failed while serving the request."""

    status_code = 500


class StorageError(UpstreamFailure):
    pass


class PayPalAPIError(UpstreamFailure):
    """PayPal failed or answered non-2xx. ``detail`` stays in server logs."""

    message = "Payment provider error"

    def __init__(self, detail: str, status: int | None = None):
        self.detail = detail
        self.upstream_status = status
        super().__init__()


class NotificationFailure(TableXportError):
    """Email delivery failed. Caught inside the dispatcher, never surfaced."""

"""
API error taxonomy.

Every error surfaced to a client is an ApiError subclass carrying an HTTP
status and a stable machine-readable code. The NinjaAPI exception handler in
config/api.py renders them as {"error": {"code": ..., "message": ...}}.
"""


class ApiError(Exception):
    """Base exception for errors rendered into the error envelope."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None, code: str | None = None) -> None:
        self.message = message or self.default_message
        if code is not None:
            self.code = code
        super().__init__(self.message)


class ValidationFailed(ApiError):
    """Missing or malformed input."""

    status_code = 400
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthenticationFailed(ApiError):
    """Caller identity is missing or could not be verified."""

    status_code = 401
    code = "UNAUTHORIZED"
    default_message = "Not authenticated"


class PermissionDenied(ApiError):
    """Caller is known but may not act on the resource."""

    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFound(ApiError):
    """Resource is absent or not owned by the caller."""

    status_code = 404
    code = "NOT_FOUND"
    default_message = "Resource not found"


class Conflict(ApiError):
    """Request conflicts with the current state of the resource."""

    status_code = 409
    code = "CONFLICT"
    default_message = "Request conflicts with current state"


class UpstreamError(ApiError):
    """A third-party dependency failed; the upstream message is attached."""

    status_code = 500
    code = "UPSTREAM_ERROR"
    default_message = "Upstream service failed"

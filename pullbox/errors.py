"""
Domain error taxonomy.

Every error carries the HTTP status it maps to, a stable error code for
clients/dashboards, and a short user-facing message. Terminal errors (bad or
expired link, owner not connected) have specific messages; transient upstream
failures share a generic retry-later message.
"""
from typing import Any, Optional


class PullBoxError(Exception):
    """Base class for errors rendered by the API exception handler."""

    status_code: int = 500
    error_code: str = "PULLBOX_ERROR"
    public_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        self.message = message or self.public_message
        if status_code is not None:
            self.status_code = status_code
        self.context = context
        super().__init__(self.message)


class ValidationError(PullBoxError):
    """Missing fields, malformed link codes, or non-image content."""

    status_code = 400
    error_code = "VALIDATION_ERROR"
    public_message = "Invalid request"


class NotFound(PullBoxError):
    """Unknown link code or collection."""

    status_code = 404
    error_code = "NOT_FOUND"
    public_message = "Invalid link"


class Expired(PullBoxError):
    """Collection is past its retention window."""

    status_code = 410
    error_code = "LINK_EXPIRED"
    public_message = "Link expired"


class OwnerDisconnected(PullBoxError):
    """
    No usable credential for the collection owner.

    403 when no credential row exists; 502 when a stored credential could not
    be refreshed (``reason="refresh_failed"``).
    """

    status_code = 403
    error_code = "OWNER_NOT_CONNECTED"
    public_message = "Owner not connected"

    def __init__(self, message: Optional[str] = None, *, reason: str = "no_credential", **kwargs: Any):
        self.reason = reason
        if reason == "refresh_failed":
            kwargs.setdefault("status_code", 502)
            message = message or "Owner token refresh failed"
        super().__init__(message, **kwargs)


class RefreshFailed(PullBoxError):
    """The provider refresh grant could not be exchanged."""

    status_code = 502
    error_code = "TOKEN_REFRESH_FAILED"
    public_message = "Owner token refresh failed"


class NoRefreshToken(RefreshFailed):
    """No refresh token stored for (owner, provider)."""

    status_code = 403
    error_code = "NO_REFRESH_TOKEN"
    public_message = "Owner not connected"


class ProviderRejected(RefreshFailed):
    """Token endpoint returned non-success (revoked or invalid grant)."""

    error_code = "REFRESH_REJECTED"

    def __init__(self, message: Optional[str] = None, *, provider_status: Optional[int] = None, **kwargs: Any):
        self.provider_status = provider_status
        super().__init__(message, **kwargs)


class UpstreamError(PullBoxError):
    """
    Provider API failure after the single refresh-retry.

    ``reason`` is one of ``unauthorized``, ``timeout``, ``network``,
    ``http_error`` or ``invalid_response``; ``upstream_status`` holds the provider status code if any.
    """

    status_code = 502
    error_code = "UPSTREAM_ERROR"
    public_message = "Storage provider unavailable, please retry later"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        reason: str = "http_error",
        upstream_status: Optional[int] = None,
        **kwargs: Any,
    ):
        self.reason = reason
        self.upstream_status = upstream_status
        super().__init__(message, **kwargs)

    @property
    def unauthorized(self) -> bool:
        return self.reason == "unauthorized"


class AllocationExhausted(PullBoxError):
    """Link-code collisions exceeded the retry budget."""

    status_code = 503
    error_code = "LINK_ALLOCATION_EXHAUSTED"
    public_message = "Could not allocate a link, please retry"

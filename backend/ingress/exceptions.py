"""
Ingress — Fault Hierarchy
===========================

What:  Application faults raised by pipeline stages and business routers.
How:   Each fault carries a client-safe message, an HTTP status code, an
       `operational` flag and an optional context dict (logged, never
       returned). Stages raise; only the error normalizer turns a fault into
       a response.

Fault contract (what the error normalizer reads):
    message:      str   — safe to show to the client when operational
    status_code:  int   — HTTP status of the error response
    operational:  bool  — True for expected, client-attributable failures

Hierarchy:
    ApplicationError (base, operational)
    ├── MalformedBodyError       → 400 Bad Request
    ├── RouteNotFoundError       → 404 Not Found
    ├── PayloadTooLargeError     → 413 Payload Too Large
    └── RateLimitExceededError   → 429 Too Many Requests

Business routers raise `ApplicationError(message, status_code)` directly.
Anything that is not an ApplicationError is treated as an unexpected fault.
"""

from typing import Any, Dict, Optional


class ApplicationError(Exception):
    """
    Base class for operational faults.

    Attributes:
        message:      User-facing error description
        status_code:  HTTP status for the error response
        status:       'fail' for 4xx faults, 'error' otherwise
        operational:  Always True for this hierarchy
        context:      Debug info for server-side logs only
        headers:      Extra response headers (e.g. Retry-After)
    """

    operational = True

    def __init__(
        self,
        message: str = "Something went wrong",
        status_code: int = 500,
        context: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.status = status_label(status_code)
        self.context = context or {}
        self.headers = headers or {}
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(status_code={self.status_code}, message={self.message!r})"


def status_label(status_code: int) -> str:
    """'fail' for client errors (4xx), 'error' for everything else."""
    return "fail" if 400 <= status_code < 500 else "error"


class MalformedBodyError(ApplicationError):
    """Request body could not be decoded or parsed."""

    def __init__(
        self,
        message: str = "Malformed request body",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, status_code=400, context=context)


class RouteNotFoundError(ApplicationError):
    """
    No mounted router matched the request.

    The message names the original URL (path plus query string) exactly as
    the client sent it.
    """

    def __init__(self, original_url: str, context: Optional[Dict[str, Any]] = None):
        ctx = context or {}
        ctx["url"] = original_url
        super().__init__(
            message=f"Can't find {original_url} on this server!",
            status_code=404,
            context=ctx,
        )
        self.original_url = original_url


class PayloadTooLargeError(ApplicationError):
    """JSON or urlencoded body exceeded the configured byte ceiling."""

    def __init__(self, limit: int, received: Optional[int] = None):
        ctx: Dict[str, Any] = {"limit": limit}
        if received is not None:
            ctx["received"] = received
        super().__init__(
            message=f"Request body too large. Maximum size is {limit} bytes.",
            status_code=413,
            context=ctx,
        )
        self.limit = limit


class RateLimitExceededError(ApplicationError):
    """
    Raised when a client exceeds its request budget for the current window.

    HTTP:    429 Too Many Requests
    Headers: Retry-After (seconds until the window resets) plus the
             X-RateLimit-* headers computed by the throttle.
    """

    def __init__(
        self,
        message: str,
        retry_after: int,
        headers: Optional[Dict[str, str]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        ctx["retry_after"] = retry_after
        hdrs = dict(headers or {})
        hdrs["Retry-After"] = str(retry_after)
        super().__init__(message=message, status_code=429, context=ctx, headers=hdrs)
        self.retry_after = retry_after

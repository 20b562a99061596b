"""
Exception hierarchy and error formatting.

API errors carry the HTTP status so task failures can be reported as a
single readable line. Expected cache misses are never exceptions.
"""

import httpx


class GraphAPIError(Exception):
    """Base exception for Graph API errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code:
            return f"{base} (HTTP {self.status_code})"
        return base


class GraphThrottledError(GraphAPIError):
    """Raised when the service throttles us (429)."""
    pass


class GraphAuthError(GraphAPIError):
    """Raised when authentication or authorization fails (401/403)."""
    pass


class GraphServerError(GraphAPIError):
    """Raised on server errors (5xx) - these are retryable."""
    pass


class GraphNotFoundError(GraphAPIError):
    """Raised when a resource is not found (404)."""
    pass


class CacheError(Exception):
    """Raised when the cache store hits an unexpected I/O failure."""
    pass


class EnrichmentError(Exception):
    """Raised when one or more per-item lookups fail during enrichment."""

    def __init__(self, label: str, failures: list[tuple[str, str]]):
        self.label = label
        self.failures = failures
        shown = "; ".join(f"{name}: {detail}" for name, detail in failures[:3])
        more = f" (+{len(failures) - 3} more)" if len(failures) > 3 else ""
        super().__init__(f"{len(failures)} {label} lookup(s) failed: {shown}{more}")


class SyncCancelled(Exception):
    """Raised by a fetch that stopped early because the run was cancelled."""
    pass


def is_retryable_error(exception: BaseException) -> bool:
    """Determine if an exception should trigger a retry."""
    if isinstance(exception, (GraphThrottledError, GraphServerError)):
        return True
    if isinstance(exception, (httpx.TransportError, httpx.TimeoutException)):
        return True
    return False


def format_error(exc: BaseException) -> str:
    """
    Render an exception as the one-line detail shown to operators.

    API errors already read well on their own; anything else is prefixed
    with its type so "KeyError: 'id'" does not collapse to "'id'".
    """
    if isinstance(exc, (GraphAPIError, EnrichmentError)):
        return str(exc)
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return f"{type(exc).__name__}: {message}"
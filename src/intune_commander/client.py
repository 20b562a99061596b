"""
Microsoft Graph API client.

Synchronous HTTP client used as the fetcher for every resource type:
- Shared token-bucket throttle across worker threads
- Retry with exponential backoff for transient errors (429, 5xx, network)
- ``@odata.nextLink`` pagination with cancellation checks between pages
- Polymorphic decoding of list items through the type registry

Token acquisition is not handled here: pass a bearer token or a callable
that returns a current one.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from intune_commander.errors import (
    GraphAPIError,
    GraphAuthError,
    GraphNotFoundError,
    GraphServerError,
    GraphThrottledError,
    SyncCancelled,
    is_retryable_error,
)
from intune_commander.models import GraphCollectionResponse, GroupMemberCounts, MobileAppAssignment
from intune_commander.rate_limiter import RequestThrottle
from intune_commander.serialization import TypeRegistry, registry as default_registry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

GRAPH_BETA_URL = "https://graph.microsoft.com/beta"

TokenSource = str | Callable[[], str]

Fetcher = Callable[[threading.Event | None], list[Any]]

_MEMBER_KINDS = {
    "#microsoft.graph.user": "users",
    "#microsoft.graph.device": "devices",
    "#microsoft.graph.group": "nested_groups",
}


class GraphClient:
    """
    Graph API client shared by all fetch tasks of a run.

    Example:
        with GraphClient(access_token=token) as client:
            configs = client.list_collection(
                "/deviceManagement/deviceConfigurations", DeviceConfiguration
            )
    """

    def __init__(
        self,
        access_token: TokenSource,
        base_url: str = GRAPH_BETA_URL,
        requests_per_minute: int = 600,
        timeout: float = 30.0,
        max_retries: int = 4,
        backoff_min: float = 2.0,
        backoff_max: float = 30.0,
        transport: httpx.BaseTransport | None = None,
        type_registry: TypeRegistry | None = None,
    ):
        """
        Initialize the client.

        Args:
            access_token: Bearer token, or a callable returning a fresh one
            base_url: Graph endpoint root (beta by default)
            requests_per_minute: Shared throttle rate across all workers
            timeout: Request timeout in seconds
            max_retries: Max attempts for transient errors
            backoff_min: Minimum retry wait in seconds
            backoff_max: Maximum retry wait in seconds
            transport: Custom httpx transport (tests, proxies)
            type_registry: Registry used to decode polymorphic items
        """
        if not access_token:
            raise ValueError("An access token or token provider is required")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.registry = type_registry or default_registry

        self._token = access_token
        self._transport = transport
        self._client: httpx.Client | None = None
        self._client_lock = threading.Lock()

        self.throttle = RequestThrottle(requests_per_minute=requests_per_minute)

        self._request_count = 0
        self._error_count = 0
        self._counter_lock = threading.Lock()

        self._log = logger.bind(base_url=self.base_url)

    def __enter__(self) -> "GraphClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def close(self) -> None:
        with self._client_lock:
            if self._client:
                self._client.close()
                self._client = None

    @property
    def client(self) -> httpx.Client:
        """HTTP client with connection pooling, created on first use."""
        with self._client_lock:
            if self._client is None:
                self._client = httpx.Client(
                    timeout=self.timeout,
                    limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                    headers={"User-Agent": "IntuneCommander-Sync/1.0"},
                    transport=self._transport,
                )
            return self._client

    def _bearer(self) -> str:
        token = self._token() if callable(self._token) else self._token
        return f"Bearer {token}"

    def _make_request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> dict[str, Any]:
        """
        Make a throttled, retrying request.

        ``endpoint`` is either a path below ``base_url`` or an absolute
        continuation URL returned by the service.
        """
        log = self._log.bind(endpoint=endpoint, method=method)
        url = endpoint if endpoint.startswith("http") else f"{self.base_url}{endpoint}"

        @retry(
            retry=retry_if_exception(is_retryable_error),
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=2, min=self.backoff_min, max=self.backoff_max),
            before_sleep=before_sleep_log(log, logging.INFO),
            reraise=True,
        )
        def _do_request() -> dict[str, Any]:
            if not self.throttle.acquire(cancel=cancel):
                raise SyncCancelled("Cancelled while waiting for request capacity")

            with self._counter_lock:
                self._request_count += 1
                request_id = self._request_count

            request_headers = {"Authorization": self._bearer(), **(headers or {})}
            log.debug("API request", request_id=request_id)

            start_time = time.monotonic()
            response = self.client.request(method, url, params=params, headers=request_headers)
            elapsed = time.monotonic() - start_time

            log.debug(
                "API response",
                request_id=request_id,
                status_code=response.status_code,
                elapsed_ms=round(elapsed * 1000),
            )

            if response.status_code >= 400:
                with self._counter_lock:
                    self._error_count += 1
                raise self._error_for(response, endpoint)

            try:
                return response.json()
            except ValueError as e:
                raise GraphAPIError(f"Invalid JSON response: {e}") from e

        return _do_request()

    @staticmethod
    def _error_for(response: httpx.Response, endpoint: str) -> GraphAPIError:
        status = response.status_code
        body = response.text[:500]
        message = _graph_error_message(response) or body[:200]

        if status == 429:
            return GraphThrottledError("Request throttled - will retry", status_code=status, response_body=body)
        if status in (401, 403):
            return GraphAuthError(message or "Authentication failed", status_code=status)
        if status == 404:
            return GraphNotFoundError(f"Resource not found: {endpoint}", status_code=status)
        if status >= 500:
            return GraphServerError(f"Server error {status} - will retry", status_code=status, response_body=body)
        return GraphAPIError(f"API error: {message}", status_code=status, response_body=body)

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def list_raw(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> list[dict[str, Any]]:
        """Fetch every page of a collection as raw JSON objects."""
        items: list[dict[str, Any]] = []
        next_url: str | None = endpoint
        request_params = params
        page = 0

        while next_url:
            if cancel is not None and cancel.is_set():
                raise SyncCancelled(f"Cancelled while listing {endpoint}")

            data = self._make_request("GET", next_url, request_params, headers, cancel)
            response = GraphCollectionResponse.model_validate(data)
            items.extend(response.value)
            page += 1

            self._log.debug("Fetched page", endpoint=endpoint, page=page, count=len(response.value))

            # nextLink already carries the query string
            next_url = response.next_link
            request_params = None

        return items

    def list_collection(
        self,
        endpoint: str,
        item_type: type[T],
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        cancel: threading.Event | None = None,
    ) -> list[T]:
        """Fetch every page of a collection and decode items as ``item_type`` or a subtype."""
        raw = self.list_raw(endpoint, params=params, headers=headers, cancel=cancel)
        items = self.registry.decode_many(raw, item_type)
        self._log.info("Fetched collection", endpoint=endpoint, count=len(items))
        return items

    def fetcher(
        self,
        endpoint: str,
        item_type: type[T],
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> Callable[[threading.Event | None], list[T]]:
        """Bind a collection endpoint into a fetch function taking a cancel event."""
        def fetch(cancel: threading.Event | None = None) -> list[T]:
            return self.list_collection(endpoint, item_type, params=params, headers=headers, cancel=cancel)
        return fetch

    # -------------------------------------------------------------------------
    # Secondary lookups (used by enrichment)
    # -------------------------------------------------------------------------

    def get_group_member_counts(
        self,
        group_id: str,
        cancel: threading.Event | None = None,
    ) -> GroupMemberCounts:
        """Count a group's direct members by kind."""
        members = self.list_raw(
            f"/groups/{group_id}/members",
            params={"$select": "id"},
            cancel=cancel,
        )
        counts = {"users": 0, "devices": 0, "nested_groups": 0}
        for member in members:
            kind = _MEMBER_KINDS.get(member.get("@odata.type", ""))
            if kind:
                counts[kind] += 1
        return GroupMemberCounts(**counts)

    def get_app_assignments(
        self,
        app_id: str,
        cancel: threading.Event | None = None,
    ) -> list[MobileAppAssignment]:
        """List the assignments of one mobile app."""
        return self.list_collection(
            f"/deviceAppManagement/mobileApps/{app_id}/assignments",
            MobileAppAssignment,
            cancel=cancel,
        )

    def resolve_group_name(self, group_id: str) -> str:
        """Display name of a group, or the id itself if the group is gone."""
        try:
            data = self._make_request("GET", f"/groups/{group_id}", params={"$select": "displayName"})
        except GraphNotFoundError:
            return group_id
        return data.get("displayName") or group_id

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict[str, Any]:
        """Get client statistics for monitoring."""
        with self._counter_lock:
            requests, errors = self._request_count, self._error_count
        return {
            "request_count": requests,
            "error_count": errors,
            "error_rate": round(errors / max(1, requests), 4),
            "throttle": self.throttle.get_stats(),
        }

    def health_check(self) -> dict[str, Any]:
        """Verify connectivity and credentials."""
        try:
            data = self._make_request("GET", "/organization", params={"$select": "id,displayName"})
            org = (data.get("value") or [{}])[0]
            return {
                "status": "healthy",
                "tenant_id": org.get("id", "unknown"),
                "organization": org.get("displayName", "unknown"),
            }
        except GraphAuthError:
            return {"status": "auth_error", "message": "Access token rejected"}
        except Exception as e:
            return {"status": "error", "message": str(e)}


def _graph_error_message(response: httpx.Response) -> str | None:
    """Pull ``error.message`` out of a Graph error body, if there is one."""
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            return error.get("message")
    return None

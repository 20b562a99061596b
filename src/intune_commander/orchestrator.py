"""
Sync orchestration across every registered resource type.

The orchestrator owns three operating modes built on the bounded runner
and the cache store:

- ``run_lazy``: fetch one type on demand and write it through to the cache
- ``run_refresh``: re-fetch the always-on types plus the ones in view,
  then drop derived cache entries that depend on them
- ``run_download_all``: every registered type plus the composite tasks,
  with live progress and cooperative cancellation

What it can sync is decided entirely by its list of ``ResourceDefinition``
entries. A failing type is recorded in the run summary; a failing cache
read or write is logged and treated as a miss.
"""

import threading
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import structlog

from intune_commander.cache import CacheMetadata, CacheStore, utc_now
from intune_commander.errors import CacheError, SyncCancelled, format_error
from intune_commander.runner import BoundedRunner, RunSummary, SyncTask

logger = structlog.get_logger(__name__)

Fetch = Callable[[threading.Event | None], list[Any]]

MAX_REPORTED_ERRORS = 5


class ProgressSink(Protocol):
    """Receives live progress from a long-running sync."""

    def on_progress(self, done: int, total: int) -> None:
        ...

    def on_status(self, text: str) -> None:
        ...


@dataclass
class ResourceDefinition:
    """
    Everything the orchestrator needs to sync one resource type.

    ``set_items`` and ``set_loaded`` push results into whatever holds the
    in-memory view; either may be None (a cache-only type has neither).
    """
    display_name: str
    cache_key: str
    fetch: Fetch
    item_type: type | None = None
    set_items: Callable[[list[Any]], None] | None = None
    set_loaded: Callable[[bool], None] | None = None
    label: str | None = None
    always_on: bool = False

    @property
    def error_label(self) -> str:
        return self.label or self.display_name


class SyncState:
    """
    In-memory collections and loaded flags, keyed by cache key.

    Writes come from runner worker threads, so every access takes the lock.
    """

    def __init__(self) -> None:
        self._collections: dict[str, list[Any]] = {}
        self._loaded: dict[str, bool] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> list[Any]:
        with self._lock:
            return list(self._collections.get(key, []))

    def set_items(self, key: str, items: list[Any]) -> None:
        with self._lock:
            self._collections[key] = list(items)

    def is_loaded(self, key: str) -> bool:
        with self._lock:
            return self._loaded.get(key, False)

    def set_loaded(self, key: str, loaded: bool) -> None:
        with self._lock:
            self._loaded[key] = loaded

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {key: len(items) for key, items in self._collections.items()}

    def items_setter(self, key: str) -> Callable[[list[Any]], None]:
        return lambda items: self.set_items(key, items)

    def loaded_setter(self, key: str) -> Callable[[bool], None]:
        return lambda loaded: self.set_loaded(key, loaded)


@dataclass
class LoadResult:
    """Outcome of loading a single resource type."""
    cache_key: str
    items: list[Any] = field(default_factory=list)
    source: str | None = None  # "cache" or "remote"
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CacheLoadResult:
    """What ``load_from_cache`` found."""
    types_loaded: int = 0
    item_count: int = 0
    oldest_cached_at: datetime | None = None


def format_cache_age(cached_at: datetime | None, now: datetime | None = None) -> str:
    """
    Render the age of a cache entry.

    Example:
        >>> format_cache_age(now - timedelta(hours=3, minutes=12), now)
        '3h 12m ago'
    """
    if cached_at is None:
        return "unknown age"
    age = (now or utc_now()) - cached_at
    minutes = age.total_seconds() / 60
    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{int(minutes)}m ago"
    hours = minutes / 60
    if hours < 24:
        return f"{int(hours)}h {int(minutes) % 60}m ago"
    return f"{age.days}d ago"


class SyncOrchestrator:
    """
    Runs resource-type fetches for one tenant.

    Example:
        orchestrator = SyncOrchestrator("tenant-a", definitions, cache=store)
        summary = orchestrator.run_download_all(progress_sink=sink, cancel=cancel)
        if summary.failures:
            print(orchestrator.last_error)
    """

    def __init__(
        self,
        tenant_id: str,
        definitions: Iterable[ResourceDefinition] = (),
        cache: CacheStore | None = None,
        runner: BoundedRunner | None = None,
        state: SyncState | None = None,
        cache_ttl: timedelta | None = None,
        derived_keys: Sequence[str] = (),
    ):
        """
        Initialize the orchestrator.

        Args:
            tenant_id: Tenant whose data is synced and cached
            definitions: Resource types this orchestrator can sync
            cache: Write-through cache (None = in-memory only)
            runner: Bounded runner shared by every mode
            state: In-memory view updated by the default setters
            cache_ttl: TTL for written entries (None = store default)
            derived_keys: Cache keys invalidated after every refresh
        """
        if not tenant_id:
            raise ValueError("tenant_id is required")

        self.tenant_id = tenant_id
        self.cache = cache
        self.runner = runner or BoundedRunner()
        self.state = state or SyncState()
        self.cache_ttl = cache_ttl
        self.derived_keys = tuple(derived_keys)
        self.last_error: str | None = None

        self._definitions: dict[str, ResourceDefinition] = {}
        self._log = logger.bind(tenant_id=tenant_id)

        for definition in definitions:
            self.register(definition)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, definition: ResourceDefinition) -> None:
        """Add a resource type. Cache keys must be unique."""
        if definition.cache_key in self._definitions:
            raise ValueError(f"Resource type already registered: {definition.cache_key}")
        self._definitions[definition.cache_key] = definition

    @property
    def definitions(self) -> list[ResourceDefinition]:
        return list(self._definitions.values())

    def get_definition(self, cache_key: str) -> ResourceDefinition:
        try:
            return self._definitions[cache_key]
        except KeyError:
            raise KeyError(f"Unknown resource type: {cache_key}") from None

    # -------------------------------------------------------------------------
    # Cache access (failures degrade to misses)
    # -------------------------------------------------------------------------

    def read_cache(self, cache_key: str, item_type: type | None = None) -> list[Any] | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get(self.tenant_id, cache_key, item_type)
        except CacheError as e:
            self._log.warning("Cache read failed, treating as miss", data_type=cache_key, error=str(e))
            return None

    def write_through(self, cache_key: str, items: list[Any]) -> bool:
        """Persist a fetched collection. Returns False if the write failed."""
        if self.cache is None:
            return False
        try:
            self.cache.set(self.tenant_id, cache_key, items, ttl=self.cache_ttl)
            return True
        except (CacheError, TypeError, ValueError) as e:
            self._log.warning("Cache write failed", data_type=cache_key, error=str(e))
            return False

    def _invalidate(self, cache_key: str) -> None:
        if self.cache is None:
            return
        try:
            self.cache.invalidate(self.tenant_id, cache_key)
        except CacheError as e:
            self._log.warning("Cache invalidate failed", data_type=cache_key, error=str(e))

    # -------------------------------------------------------------------------
    # Task construction
    # -------------------------------------------------------------------------

    @staticmethod
    def _apply(definition: ResourceDefinition, items: list[Any]) -> None:
        if definition.set_items is not None:
            definition.set_items(items)
        if definition.set_loaded is not None:
            definition.set_loaded(True)

    def _fetch_and_store(self, definition: ResourceDefinition, cancel: threading.Event | None) -> list[Any]:
        items = list(definition.fetch(cancel))
        self._apply(definition, items)
        self.write_through(definition.cache_key, items)
        self._log.debug("Synced resource type", data_type=definition.cache_key, count=len(items))
        return items

    def _task_for(
        self,
        definition: ResourceDefinition,
        cancel: threading.Event | None,
        name: str | None = None,
    ) -> SyncTask:
        def action() -> int:
            try:
                return len(self._fetch_and_store(definition, cancel))
            except Exception:
                if definition.set_loaded is not None:
                    definition.set_loaded(False)
                raise

        return SyncTask(name=name or definition.display_name, action=action)

    # -------------------------------------------------------------------------
    # Operating modes
    # -------------------------------------------------------------------------

    def run_lazy(self, cache_key: str, cancel: threading.Event | None = None) -> LoadResult:
        """
        Fetch one resource type now, update state and write it through.

        Errors are returned in the result, never raised.
        """
        definition = self.get_definition(cache_key)
        log = self._log.bind(data_type=cache_key)
        log.info("Loading resource type", display_name=definition.display_name)

        try:
            items = self._fetch_and_store(definition, cancel)
        except SyncCancelled:
            return LoadResult(cache_key, error="Cancelled")
        except Exception as e:
            detail = format_error(e)
            log.warning("Lazy load failed", error=detail)
            self.last_error = f"Failed to load {definition.display_name}: {detail}"
            return LoadResult(cache_key, error=detail)

        return LoadResult(cache_key, items=items, source="remote")

    def ensure_loaded(self, cache_key: str, cancel: threading.Event | None = None) -> LoadResult:
        """Serve from state or cache when possible, fetching only on a miss."""
        definition = self.get_definition(cache_key)
        if self.state.is_loaded(cache_key):
            return LoadResult(cache_key, items=self.state.get(cache_key), source="state")

        cached = self.read_cache(cache_key, definition.item_type)
        if cached is not None:
            self._apply(definition, cached)
            return LoadResult(cache_key, items=cached, source="cache")

        return self.run_lazy(cache_key, cancel)

    def run_refresh(
        self,
        active_keys: Iterable[str] = (),
        cancel: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> RunSummary:
        """
        Re-fetch the always-on types plus ``active_keys``.

        Afterwards the derived entries are invalidated and their loaded
        flags reset, so they rebuild the next time they are viewed.
        """
        wanted = set(active_keys)
        unknown = wanted - self._definitions.keys()
        if unknown:
            raise KeyError(f"Unknown resource type(s): {', '.join(sorted(unknown))}")

        selected = [d for d in self._definitions.values() if d.always_on or d.cache_key in wanted]
        self._log.info("Refreshing", types=[d.cache_key for d in selected])

        tasks = [self._task_for(d, cancel, name=d.error_label) for d in selected]
        summary = self.runner.run(tasks, on_progress=on_progress, cancel=cancel)

        for key in self.derived_keys:
            self.state.set_loaded(key, False)
            self._invalidate(key)

        self.last_error = summary.error_message("Some data failed to load")
        return summary

    def run_download_all(
        self,
        progress_sink: ProgressSink | None = None,
        cancel: threading.Event | None = None,
    ) -> RunSummary:
        """
        Fetch and cache every registered type through the runner.

        Progress is reported after each task; the final status line
        reflects success, partial failure or cancellation.
        """
        cancel = cancel or threading.Event()
        tasks = [self._task_for(d, cancel) for d in self._definitions.values()]
        total = len(tasks)

        def status(text: str) -> None:
            if progress_sink is not None:
                progress_sink.on_status(text)

        def progress(done: int, total: int) -> None:
            if progress_sink is not None:
                progress_sink.on_progress(done, total)
                progress_sink.on_status(f"Downloading {done} of {total}...")

        status("Preparing download...")
        self._log.info("Starting download of all data types", total=total,
                       max_concurrency=self.runner.max_concurrency)

        summary = self.runner.run(tasks, on_progress=progress, cancel=cancel)

        if summary.cancelled:
            status(f"Cancelled - {summary.succeeded} of {total} completed")
            self._log.info("Download cancelled", completed=summary.completed, total=total)
        elif summary.failures:
            status(f"Completed with {summary.failed} error(s) - {summary.succeeded} of {total} succeeded")
        else:
            status(f"Downloaded all {total} data types")

        self.last_error = summary.error_message("Some downloads failed", limit=MAX_REPORTED_ERRORS)
        self._log.info("Download finished", succeeded=summary.succeeded, failed=summary.failed)
        return summary

    # -------------------------------------------------------------------------
    # Cache-backed helpers
    # -------------------------------------------------------------------------

    def load_from_cache(self) -> CacheLoadResult:
        """Populate in-memory state from every cached type."""
        result = CacheLoadResult()
        for definition in self._definitions.values():
            items = self.read_cache(definition.cache_key, definition.item_type)
            if items is None:
                continue

            self._apply(definition, items)
            result.types_loaded += 1
            result.item_count += len(items)

            meta = self._metadata(definition.cache_key)
            if meta is not None and (
                result.oldest_cached_at is None or meta.cached_at < result.oldest_cached_at
            ):
                result.oldest_cached_at = meta.cached_at

        self._log.info(
            "Loaded from cache",
            types=result.types_loaded,
            items=result.item_count,
            age=format_cache_age(result.oldest_cached_at),
        )
        return result

    def _metadata(self, cache_key: str) -> CacheMetadata | None:
        if self.cache is None:
            return None
        try:
            return self.cache.get_metadata(self.tenant_id, cache_key)
        except CacheError as e:
            self._log.warning("Cache metadata read failed", data_type=cache_key, error=str(e))
            return None

    def cache_status(self, cache_keys: Iterable[str] | None = None) -> dict[str, CacheMetadata | None]:
        """Metadata for each requested type (all registered types by default)."""
        keys = list(cache_keys) if cache_keys is not None else list(self._definitions)
        return {key: self._metadata(key) for key in keys}

    def force_refresh(
        self,
        cache_keys: Iterable[str],
        cancel: threading.Event | None = None,
    ) -> list[LoadResult]:
        """Drop the cached copies and reload each type from the service."""
        results = []
        for key in cache_keys:
            self.get_definition(key)
            self._invalidate(key)
            self.state.set_loaded(key, False)
            results.append(self.run_lazy(key, cancel))
        return results

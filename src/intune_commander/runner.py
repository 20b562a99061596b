"""
Bounded-concurrency task runner.

Runs independent units of work on a thread pool with a fixed ceiling.
A failing task is recorded and never stops its siblings; cancellation is
cooperative and checked before each task starts.
"""

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any

import structlog

from intune_commander.errors import SyncCancelled, format_error

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENCY = 5

ProgressCallback = Callable[[int, int], None]


@dataclass
class SyncTask:
    """
    One unit of work.

    ``action`` returns the number of items it handled (or None) and
    signals failure by raising.
    """
    name: str
    action: Callable[[], int | None]


@dataclass
class TaskOutcome:
    """Result of a single task that actually ran."""
    name: str
    success: bool
    item_count: int = 0
    error: str | None = None
    duration_seconds: float = 0.0


@dataclass
class RunSummary:
    """
    Aggregate result of a run.

    ``failures`` lists (task name, error detail) in completion order.
    Tasks that never started because the run was cancelled are counted in
    ``skipped`` only.
    """
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    failures: list[tuple[str, str]] = field(default_factory=list)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    cancelled: bool = False
    duration_seconds: float = 0.0

    @property
    def completed(self) -> int:
        return self.succeeded + self.failed

    @property
    def skipped(self) -> int:
        return self.total - self.completed

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 100.0
        return self.completed / self.total * 100

    @property
    def item_count(self) -> int:
        return sum(o.item_count for o in self.outcomes if o.success)

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.cancelled

    def error_message(self, prefix: str = "Some data failed to load", limit: int | None = None) -> str | None:
        """
        Combine failures into one line for display, or None if nothing failed.

        Example: ``"Some data failed to load: Scope Tags: Forbidden (HTTP 403); ..."``
        """
        if not self.failures:
            return None
        shown = self.failures if limit is None else self.failures[:limit]
        detail = "; ".join(f"{name}: {error}" for name, error in shown)
        return f"{prefix}: {detail}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "cancelled": self.cancelled,
            "failures": [{"task": name, "error": error} for name, error in self.failures],
            "duration_seconds": round(self.duration_seconds, 2),
        }


class BoundedRunner:
    """
    Runs tasks with at most ``max_concurrency`` in flight.

    Guarantees:
    - A task's exception is caught and recorded; siblings carry on
    - ``on_progress(done, total)`` is called after every completed task,
      one call at a time
    - Once ``cancel`` is set, tasks that have not started are skipped and
      running tasks finish normally; the summary covers what completed

    Example:
        runner = BoundedRunner(max_concurrency=5)
        summary = runner.run(tasks, on_progress=lambda done, total: print(done, total))
        if summary.failures:
            print(summary.error_message())
    """

    def __init__(self, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.max_concurrency = max_concurrency

    def run(
        self,
        tasks: Sequence[SyncTask],
        on_progress: ProgressCallback | None = None,
        cancel: threading.Event | None = None,
        max_concurrency: int | None = None,
    ) -> RunSummary:
        """
        Execute every task and return the aggregate summary.

        Args:
            tasks: Independent units of work
            on_progress: Called with (completed, total) after each task
            cancel: Cooperative cancellation signal
            max_concurrency: Override the runner's ceiling for this run
        """
        summary = RunSummary(total=len(tasks))
        if not tasks:
            return summary

        limit = max_concurrency if max_concurrency is not None else self.max_concurrency
        if limit < 1:
            raise ValueError("max_concurrency must be at least 1")

        cancel = cancel or threading.Event()
        lock = threading.Lock()
        log = logger.bind(total=len(tasks), max_concurrency=limit)
        log.debug("Starting run")
        start_time = time.monotonic()

        def execute(task: SyncTask) -> None:
            if cancel.is_set():
                return

            task_start = time.monotonic()
            try:
                count = task.action()
                outcome = TaskOutcome(
                    name=task.name,
                    success=True,
                    item_count=count or 0,
                    duration_seconds=time.monotonic() - task_start,
                )
            except SyncCancelled:
                if cancel.is_set():
                    log.debug("Task stopped by cancellation", task=task.name)
                    return
                outcome = TaskOutcome(
                    name=task.name,
                    success=False,
                    error="Cancelled",
                    duration_seconds=time.monotonic() - task_start,
                )
            except Exception as e:
                outcome = TaskOutcome(
                    name=task.name,
                    success=False,
                    error=format_error(e),
                    duration_seconds=time.monotonic() - task_start,
                )

            with lock:
                summary.outcomes.append(outcome)
                if outcome.success:
                    summary.succeeded += 1
                    log.debug("Task completed", task=task.name, count=outcome.item_count)
                else:
                    summary.failed += 1
                    summary.failures.append((task.name, outcome.error or "Unknown error"))
                    log.warning("Task failed", task=task.name, error=outcome.error)

                if on_progress is not None:
                    try:
                        on_progress(summary.completed, summary.total)
                    except Exception as e:
                        log.warning("Progress callback failed", error=str(e))

        with ThreadPoolExecutor(max_workers=min(limit, len(tasks)), thread_name_prefix="sync") as executor:
            futures = [executor.submit(execute, task) for task in tasks]
            for future in as_completed(futures):
                # execute() records its own errors; this only surfaces bugs.
                future.result()

        summary.cancelled = cancel.is_set() and summary.skipped > 0
        summary.duration_seconds = time.monotonic() - start_time

        log.info(
            "Run finished",
            succeeded=summary.succeeded,
            failed=summary.failed,
            skipped=summary.skipped,
            cancelled=summary.cancelled,
        )
        return summary

"""
Tests for the bounded-concurrency runner.
"""

import threading
import time

import pytest

from intune_commander.errors import GraphAuthError, SyncCancelled
from intune_commander.runner import BoundedRunner, RunSummary, SyncTask


def ok(count: int = 1):
    return lambda: count


def boom(message: str = "boom"):
    def action():
        raise RuntimeError(message)
    return action


class TestFailureIsolation:
    def test_one_failure_does_not_stop_siblings(self):
        tasks = [SyncTask(f"task-{i}", ok(i)) for i in range(6)]
        tasks[3] = SyncTask("task-3", boom())

        summary = BoundedRunner(max_concurrency=3).run(tasks)

        assert summary.total == 6
        assert summary.succeeded == 5
        assert summary.failed == 1
        assert summary.failures == [("task-3", "RuntimeError: boom")]
        assert summary.item_count == 0 + 1 + 2 + 4 + 5

    def test_api_errors_keep_status_code(self):
        def denied():
            raise GraphAuthError("Insufficient privileges", status_code=403)

        summary = BoundedRunner().run([SyncTask("Scope Tags", denied)])

        assert summary.failures == [("Scope Tags", "Insufficient privileges (HTTP 403)")]

    def test_error_message_joins_failures(self):
        summary = BoundedRunner(max_concurrency=1).run(
            [SyncTask("A", boom("a")), SyncTask("B", ok()), SyncTask("C", boom("c"))]
        )

        message = summary.error_message()
        assert message.startswith("Some data failed to load: ")
        assert "A: RuntimeError: a" in message
        assert "C: RuntimeError: c" in message

    def test_error_message_limit(self):
        summary = RunSummary(failures=[(str(i), "x") for i in range(8)])
        assert summary.error_message("Failed", limit=5).count(": x") == 5
        assert RunSummary().error_message() is None


class TestConcurrencyCeiling:
    @pytest.mark.parametrize("limit", [1, 2, 4])
    def test_never_exceeds_limit(self, limit):
        active = 0
        peak = 0
        lock = threading.Lock()

        def action():
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with lock:
                active -= 1
            return 1

        summary = BoundedRunner(max_concurrency=limit).run(
            [SyncTask(f"t{i}", action) for i in range(12)]
        )

        assert summary.succeeded == 12
        assert peak <= limit

    def test_per_run_override(self):
        seen = set()

        def action():
            seen.add(threading.current_thread().name)
            time.sleep(0.01)

        BoundedRunner(max_concurrency=8).run(
            [SyncTask(f"t{i}", action) for i in range(6)], max_concurrency=1
        )
        assert len(seen) == 1

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            BoundedRunner(max_concurrency=0)

    def test_invalid_per_run_limit(self):
        with pytest.raises(ValueError):
            BoundedRunner(max_concurrency=4).run([SyncTask("t", ok())], max_concurrency=0)


class TestProgress:
    def test_progress_called_after_every_task(self):
        calls = []
        tasks = [SyncTask(f"t{i}", ok()) for i in range(4)] + [SyncTask("bad", boom())]

        BoundedRunner(max_concurrency=3).run(tasks, on_progress=lambda d, t: calls.append((d, t)))

        assert sorted(calls) == [(1, 5), (2, 5), (3, 5), (4, 5), (5, 5)]

    def test_progress_calls_never_overlap(self):
        inside = 0
        overlapped = False

        def on_progress(done, total):
            nonlocal inside, overlapped
            inside += 1
            if inside > 1:
                overlapped = True
            time.sleep(0.005)
            inside -= 1

        BoundedRunner(max_concurrency=5).run(
            [SyncTask(f"t{i}", ok()) for i in range(20)], on_progress=on_progress
        )
        assert overlapped is False

    def test_failing_progress_callback_is_ignored(self):
        def on_progress(done, total):
            raise RuntimeError("display gone")

        summary = BoundedRunner().run([SyncTask("t", ok())], on_progress=on_progress)
        assert summary.succeeded == 1


class TestCancellation:
    def test_cancel_before_start_runs_nothing(self):
        cancel = threading.Event()
        cancel.set()

        summary = BoundedRunner().run([SyncTask("t", ok())], cancel=cancel)

        assert summary.completed == 0
        assert summary.cancelled is True
        assert summary.ok is False

    def test_in_flight_tasks_finish(self):
        cancel = threading.Event()
        started = threading.Event()
        finished = []

        def first():
            started.set()
            cancel.set()
            time.sleep(0.02)
            finished.append("first")
            return 1

        tasks = [SyncTask("first", first)] + [SyncTask(f"t{i}", ok()) for i in range(5)]
        summary = BoundedRunner(max_concurrency=1).run(tasks, cancel=cancel)

        assert finished == ["first"]
        assert summary.succeeded == 1
        assert summary.skipped == 5
        assert summary.cancelled is True
        assert summary.failures == []

    def test_cancelled_fetch_is_not_a_failure(self):
        cancel = threading.Event()

        def stops_midway():
            cancel.set()
            raise SyncCancelled("stopped between pages")

        summary = BoundedRunner(max_concurrency=1).run(
            [SyncTask("paged", stops_midway), SyncTask("next", ok())], cancel=cancel
        )

        assert summary.failed == 0
        assert summary.completed == 0
        assert summary.cancelled is True

    def test_empty_run(self):
        summary = BoundedRunner().run([])
        assert summary.total == 0
        assert summary.percent == 100.0
        assert summary.ok is True

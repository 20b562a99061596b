"""
Per-item enrichment on top of the bounded runner.

Some views need one remote call per primary record: member counts for
each group, assignments for each app. The pipeline fans those lookups out
under the same concurrency ceiling as a sync run, merges the resulting
rows and sorts them so the output never depends on completion order.
"""

import threading
from collections.abc import Callable, Iterable, Sequence
from typing import Any, TypeVar

import structlog

from intune_commander.errors import EnrichmentError, SyncCancelled
from intune_commander.models import (
    AllDevicesAssignmentTarget,
    AllLicensedUsersAssignmentTarget,
    AndroidStoreApp,
    AppAssignmentRow,
    AssignmentTarget,
    DeviceUserEntry,
    ExclusionGroupAssignmentTarget,
    Group,
    GroupAssignmentTarget,
    GroupMemberCounts,
    GroupRow,
    IosStoreApp,
    ManagedDevice,
    MobileApp,
    MobileAppAssignment,
    User,
    WebApp,
    Win32LobApp,
)
from intune_commander.runner import BoundedRunner, SyncTask

logger = structlog.get_logger(__name__)

P = TypeVar("P")
R = TypeVar("R")
Row = TypeVar("Row")


class EnrichmentPipeline:
    """
    Decorates a primary collection with per-item lookups.

    Example:
        pipeline = EnrichmentPipeline(BoundedRunner(max_concurrency=5))
        rows = pipeline.run(
            groups,
            lookup=lambda g: client.get_member_counts(g.id),
            build=lambda g, counts: [GroupRow.from_group(g, counts)],
            sort_key=lambda row: row.group_name.casefold(),
            label="group member count",
        )
    """

    def __init__(self, runner: BoundedRunner | None = None):
        self.runner = runner or BoundedRunner()

    def run(
        self,
        items: Sequence[P],
        lookup: Callable[[P], R],
        build: Callable[[P, R], Iterable[Row]],
        sort_key: Callable[[Row], Any],
        label: str,
        name_of: Callable[[P], str] | None = None,
        cancel: threading.Event | None = None,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> list[Row]:
        """
        Run ``lookup`` for every item and return the merged, sorted rows.

        Raises:
            EnrichmentError: one or more lookups failed
            SyncCancelled: the run was cancelled before every item was handled
        """
        rows: list[Row] = []
        rows_lock = threading.Lock()
        name_of = name_of or _default_name

        def make_action(item: P) -> Callable[[], int]:
            def action() -> int:
                built = list(build(item, lookup(item)))
                with rows_lock:
                    rows.extend(built)
                return len(built)
            return action

        tasks = [SyncTask(name=name_of(item), action=make_action(item)) for item in items]
        summary = self.runner.run(tasks, on_progress=on_progress, cancel=cancel)

        if summary.failures:
            raise EnrichmentError(label, summary.failures)
        if summary.cancelled:
            raise SyncCancelled(f"{label} enrichment cancelled after {summary.completed} of {summary.total}")

        rows.sort(key=sort_key)
        logger.debug("Enrichment complete", label=label, items=len(items), rows=len(rows))
        return rows


def _default_name(item: Any) -> str:
    return getattr(item, "display_name", None) or getattr(item, "id", None) or repr(item)


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

def enrich_group_rows(
    pipeline: EnrichmentPipeline,
    groups: Sequence[Group],
    member_counts: Callable[[str], GroupMemberCounts],
    cancel: threading.Event | None = None,
) -> list[GroupRow]:
    """Build one ``GroupRow`` per group, sorted by name (case-insensitive)."""
    def lookup(group: Group) -> GroupMemberCounts:
        if not group.id:
            return GroupMemberCounts()
        return member_counts(group.id)

    return pipeline.run(
        groups,
        lookup=lookup,
        build=lambda group, counts: [GroupRow.from_group(group, counts)],
        sort_key=lambda row: (row.group_name.casefold(), row.group_id),
        label="group member count",
        cancel=cancel,
    )


# ---------------------------------------------------------------------------
# Application assignments
# ---------------------------------------------------------------------------

class GroupNameResolver:
    """Memoizes group id -> display name lookups for one enrichment run."""

    def __init__(self, resolve: Callable[[str], str]):
        self._resolve = resolve
        self._names: dict[str, str] = {}
        self._lock = threading.Lock()

    def __call__(self, group_id: str | None) -> str:
        if not group_id:
            return ""
        with self._lock:
            if group_id in self._names:
                return self._names[group_id]
        name = self._resolve(group_id)
        with self._lock:
            self._names[group_id] = name
        return name


def describe_target(
    target: AssignmentTarget | None,
    group_name: Callable[[str | None], str],
) -> tuple[str, str, str, bool]:
    """Return (assignment type, target name, group id, is exclusion)."""
    if isinstance(target, AllDevicesAssignmentTarget):
        return "All Devices", "All Devices", "", False
    if isinstance(target, AllLicensedUsersAssignmentTarget):
        return "All Users", "All Users", "", False
    if isinstance(target, ExclusionGroupAssignmentTarget):
        return "Group", group_name(target.group_id), target.group_id or "", True
    if isinstance(target, GroupAssignmentTarget):
        return "Group", group_name(target.group_id), target.group_id or "", False
    return "Unknown", "Unknown", "", False


def _app_columns(app: MobileApp) -> dict[str, str]:
    version = bundle_id = package_id = store_url = ""
    if isinstance(app, Win32LobApp):
        version = app.display_version or ""
    elif isinstance(app, IosStoreApp):
        bundle_id = app.bundle_id or ""
        store_url = app.app_store_url or ""
    elif isinstance(app, AndroidStoreApp):
        package_id = app.package_id or ""
        store_url = app.app_store_url or ""
    elif isinstance(app, WebApp):
        store_url = app.app_url or ""

    return {
        "app_id": app.id or "",
        "app_name": app.display_name or "",
        "publisher": app.publisher or "",
        "app_type": app.short_type_name,
        "version": version,
        "bundle_id": bundle_id,
        "package_id": package_id,
        "app_store_url": store_url,
    }


def build_app_assignment_rows(
    app: MobileApp,
    assignments: Sequence[MobileAppAssignment],
    group_name: Callable[[str | None], str],
) -> list[AppAssignmentRow]:
    """One row per assignment; an unassigned app still yields a single row."""
    columns = _app_columns(app)
    if not assignments:
        return [AppAssignmentRow(**columns)]

    rows = []
    for assignment in assignments:
        assignment_type, target_name, group_id, is_exclusion = describe_target(
            assignment.target, group_name
        )
        rows.append(AppAssignmentRow(
            **columns,
            assignment_type=assignment_type,
            target_name=target_name,
            target_group_id=group_id,
            install_intent=(assignment.intent or "").lower(),
            is_exclusion=is_exclusion,
        ))
    return rows


def enrich_app_assignment_rows(
    pipeline: EnrichmentPipeline,
    apps: Sequence[MobileApp],
    get_assignments: Callable[[str], list[MobileAppAssignment]],
    resolve_group_name: Callable[[str], str],
    cancel: threading.Event | None = None,
) -> list[AppAssignmentRow]:
    """Flatten every app's assignments, sorted by app name then target name."""
    group_name = GroupNameResolver(resolve_group_name)

    def lookup(app: MobileApp) -> list[MobileAppAssignment]:
        return get_assignments(app.id) if app.id else []

    return pipeline.run(
        apps,
        lookup=lookup,
        build=lambda app, assignments: build_app_assignment_rows(app, assignments, group_name),
        sort_key=lambda row: (row.app_name.casefold(), row.target_name.casefold()),
        label="app assignment",
        cancel=cancel,
    )


# ---------------------------------------------------------------------------
# Devices and users
# ---------------------------------------------------------------------------

def build_device_user_entries(
    devices: Iterable[ManagedDevice],
    users: Iterable[User],
) -> list[DeviceUserEntry]:
    """Join devices to their primary users (first user wins per id), sorted by device name."""
    user_by_id: dict[str, User] = {}
    for user in users:
        if user.id and user.id not in user_by_id:
            user_by_id[user.id] = user

    entries = [
        DeviceUserEntry.from_device(device, user_by_id.get(device.user_id or ""))
        for device in devices
    ]
    entries.sort(key=lambda e: e.device_name.casefold())
    return entries

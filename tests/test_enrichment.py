"""
Tests for per-item enrichment.
"""

import threading

import pytest

from intune_commander.errors import EnrichmentError, GraphNotFoundError, SyncCancelled
from intune_commander.models import (
    AllDevicesAssignmentTarget,
    Group,
    GroupMemberCounts,
    ManagedDevice,
    MobileApp,
    MobileAppAssignment,
    User,
)
from intune_commander.enrichment import (
    EnrichmentPipeline,
    GroupNameResolver,
    build_app_assignment_rows,
    build_device_user_entries,
    describe_target,
    enrich_app_assignment_rows,
    enrich_group_rows,
)
from intune_commander.runner import BoundedRunner
from intune_commander.serialization import registry


@pytest.fixture
def pipeline():
    return EnrichmentPipeline(BoundedRunner(max_concurrency=3))


@pytest.fixture
def groups(sample_groups):
    return [Group.model_validate(g) for g in sample_groups]


@pytest.fixture
def apps(sample_mobile_apps):
    return registry.decode_many(sample_mobile_apps, MobileApp)


GROUP_NAMES = {"grp-1": "sales laptops", "grp-2": "All Engineers"}


class TestPipeline:
    def test_rows_sorted_regardless_of_completion_order(self, pipeline):
        rows = pipeline.run(
            ["c", "A", "b"],
            lookup=lambda item: item * 2,
            build=lambda item, doubled: [doubled],
            sort_key=str.casefold,
            label="letter",
            name_of=str,
        )
        assert rows == ["AA", "bb", "cc"]

    def test_failures_raise_enrichment_error(self, pipeline):
        def lookup(item):
            if item == "bad":
                raise GraphNotFoundError("Resource not found: /x", status_code=404)
            return item

        with pytest.raises(EnrichmentError) as exc_info:
            pipeline.run(["ok", "bad"], lookup=lookup, build=lambda i, r: [r],
                         sort_key=str, label="widget", name_of=str)

        assert exc_info.value.failures == [("bad", "Resource not found: /x (HTTP 404)")]
        assert str(exc_info.value).startswith("1 widget lookup(s) failed: bad:")

    def test_cancelled_run_raises(self, pipeline):
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SyncCancelled):
            pipeline.run(["a"], lookup=str, build=lambda i, r: [r], sort_key=str,
                         label="widget", name_of=str, cancel=cancel)

    def test_empty_input(self, pipeline):
        assert pipeline.run([], lookup=str, build=lambda i, r: [r], sort_key=str, label="x") == []


class TestGroupRows:
    def test_counts_and_case_insensitive_order(self, pipeline, groups):
        counts = {
            "grp-1": GroupMemberCounts(devices=40),
            "grp-2": GroupMemberCounts(users=12, nested_groups=1),
            "grp-3": GroupMemberCounts(users=3),
        }

        rows = enrich_group_rows(pipeline, groups, counts.__getitem__)

        assert [r.group_name for r in rows] == ["All Engineers", "Marketing", "sales laptops"]
        engineers = rows[0]
        assert engineers.total_members == 13
        assert engineers.group_type == "Security (Dynamic)"
        assert engineers.processing_state == "Paused"
        assert rows[1].group_type == "Microsoft 365 (Dynamic)"
        assert rows[2].devices == 40

    def test_group_without_id_gets_zero_counts(self, pipeline):
        def never(group_id):
            raise AssertionError("should not be called")

        [row] = enrich_group_rows(pipeline, [Group(display_name="orphan")], never)
        assert row.total_members == 0

    def test_one_failing_lookup_fails_the_view(self, pipeline, groups):
        def counts(group_id):
            if group_id == "grp-3":
                raise RuntimeError("timeout")
            return GroupMemberCounts()

        with pytest.raises(EnrichmentError, match="Marketing: RuntimeError: timeout"):
            enrich_group_rows(pipeline, groups, counts)


class TestAppAssignmentRows:
    def test_flattens_and_sorts(self, pipeline, apps, sample_app_assignments):
        assignments = {"app-7zip": [MobileAppAssignment.model_validate(a) for a in sample_app_assignments]}

        rows = enrich_app_assignment_rows(
            pipeline, apps, lambda app_id: assignments.get(app_id, []), GROUP_NAMES.__getitem__,
        )

        assert [(r.app_name, r.target_name) for r in rows] == [
            ("7-Zip", "All Engineers"),
            ("7-Zip", "All Users"),
            ("7-Zip", "sales laptops"),
            ("Company Portal (web)", ""),
            ("Microsoft Outlook", ""),
        ]

        required, all_users, excluded = rows[:3]
        assert required.app_type == "win32LobApp"
        assert required.version == "23.01"
        assert required.install_intent == "required"
        assert required.target_group_id == "grp-2"
        assert all_users.assignment_type == "All Users"
        assert all_users.install_intent == "available"
        assert excluded.is_exclusion is True
        assert excluded.assignment_type == "Group"

    def test_unassigned_app_yields_none_row(self, apps):
        outlook = apps[1]

        [row] = build_app_assignment_rows(outlook, [], lambda gid: gid)

        assert row.assignment_type == "None"
        assert row.bundle_id == "com.microsoft.Office.Outlook"
        assert row.app_store_url == "https://apps.apple.com/app/id951937596"

    def test_web_app_url_is_store_url(self, apps):
        [row] = build_app_assignment_rows(apps[2], [], lambda gid: gid)
        assert row.app_store_url == "https://portal.manage.microsoft.com"

    def test_group_names_resolved_once(self, pipeline, apps, sample_app_assignments):
        calls = []
        lock = threading.Lock()

        def resolve(group_id):
            with lock:
                calls.append(group_id)
            return GROUP_NAMES[group_id]

        same = [MobileAppAssignment.model_validate(a) for a in sample_app_assignments]
        enrich_app_assignment_rows(pipeline, apps, lambda app_id: same, resolve)

        assert sorted(set(calls)) == ["grp-1", "grp-2"]
        assert calls.count("grp-2") <= 3

    def test_failed_assignment_lookup(self, pipeline, apps):
        def assignments(app_id):
            raise RuntimeError("boom")

        with pytest.raises(EnrichmentError) as exc_info:
            enrich_app_assignment_rows(pipeline, apps, assignments, str)
        assert len(exc_info.value.failures) == 3


class TestDescribeTarget:
    def test_targets(self):
        assert describe_target(AllDevicesAssignmentTarget(), str) == ("All Devices", "All Devices", "", False)
        assert describe_target(None, str) == ("Unknown", "Unknown", "", False)

    def test_resolver_memoizes(self):
        calls = []
        resolver = GroupNameResolver(lambda gid: calls.append(gid) or f"name-{gid}")

        assert resolver("g1") == "name-g1"
        assert resolver("g1") == "name-g1"
        assert resolver(None) == ""
        assert calls == ["g1"]


class TestDeviceUserEntries:
    def test_join_first_user_wins_and_sort(self):
        devices = [
            ManagedDevice(id="d1", device_name="zeta-laptop", user_id="u1", operating_system="Windows"),
            ManagedDevice(id="d2", device_name="Alpha-phone", user_id="u2"),
            ManagedDevice(id="d3", device_name="kiosk", user_id=None),
        ]
        users = [
            User(id="u1", display_name="Ada", department="Eng", account_enabled=True),
            User(id="u1", display_name="Ada (duplicate)"),
            User(id="u2", display_name="Grace", account_enabled=False),
        ]

        entries = build_device_user_entries(devices, users)

        assert [e.device_name for e in entries] == ["Alpha-phone", "kiosk", "zeta-laptop"]
        alpha, kiosk, zeta = entries
        assert zeta.user_display_name == "Ada"
        assert zeta.department == "Eng"
        assert zeta.account_enabled == "True"
        assert alpha.account_enabled == "False"
        assert kiosk.user_display_name == ""
        assert kiosk.account_enabled == ""

    def test_device_with_unknown_user(self):
        [entry] = build_device_user_entries([ManagedDevice(id="d", device_name="x", user_id="ghost")], [])
        assert entry.user_id == "ghost"
        assert entry.user_display_name == ""

"""
Pytest configuration and fixtures for the sync engine tests.
"""

import sys
from datetime import datetime, timedelta, timezone

import pytest
import structlog
from cryptography.fernet import Fernet

from intune_commander.cache import CacheStore
from intune_commander.protector import FernetProtector


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Undo any structlog configuration a test (e.g. the CLI) installed."""
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()
    # Module-level lazy proxies cache their first bound logger (which may
    # hold a now-closed captured stream); drop that cache as well.
    for name, module in list(sys.modules.items()):
        if not name.startswith("intune_commander"):
            continue
        proxy = getattr(module, "logger", None)
        if isinstance(proxy, structlog._config.BoundLoggerLazyProxy):
            proxy.__dict__.pop("bind", None)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def protector():
    return FernetProtector(Fernet.generate_key())


@pytest.fixture
def store_dir(tmp_path):
    return tmp_path / "cache"


@pytest.fixture
def store(protector, store_dir, clock):
    cache = CacheStore(protector, base_path=store_dir, clock=clock)
    yield cache
    cache.close()


@pytest.fixture
def sample_compliance_policies():
    """Mixed compliance policies as returned by Graph."""
    return [
        {
            "@odata.type": "#microsoft.graph.windows10CompliancePolicy",
            "id": "cp-win",
            "displayName": "Windows baseline",
            "createdDateTime": "2024-01-10T08:00:00Z",
            "version": 3,
            "passwordRequired": True,
            "bitLockerEnabled": True,
            "osMinimumVersion": "10.0.19045",
        },
        {
            "@odata.type": "#microsoft.graph.iosCompliancePolicy",
            "id": "cp-ios",
            "displayName": "iOS baseline",
            "passcodeRequired": True,
            "osMinimumVersion": "17.0",
        },
        {
            "@odata.type": "#microsoft.graph.macOSCompliancePolicy",
            "id": "cp-mac",
            "displayName": "macOS baseline",
        },
    ]


@pytest.fixture
def sample_mobile_apps():
    """Mixed mobile apps as returned by Graph."""
    return [
        {
            "@odata.type": "#microsoft.graph.win32LobApp",
            "id": "app-7zip",
            "displayName": "7-Zip",
            "publisher": "Igor Pavlov",
            "displayVersion": "23.01",
            "fileName": "7z2301-x64.intunewin",
        },
        {
            "@odata.type": "#microsoft.graph.iosStoreApp",
            "id": "app-outlook-ios",
            "displayName": "Microsoft Outlook",
            "publisher": "Microsoft Corporation",
            "bundleId": "com.microsoft.Office.Outlook",
            "appStoreUrl": "https://apps.apple.com/app/id951937596",
        },
        {
            "@odata.type": "#microsoft.graph.webApp",
            "id": "app-portal",
            "displayName": "Company Portal (web)",
            "appUrl": "https://portal.manage.microsoft.com",
        },
    ]


@pytest.fixture
def sample_groups():
    return [
        {
            "id": "grp-1",
            "displayName": "sales laptops",
            "securityEnabled": True,
            "mailEnabled": False,
            "groupTypes": ["DynamicMembership"],
            "membershipRule": '(device.deviceCategory -eq "Sales")',
            "membershipRuleProcessingState": "On",
        },
        {
            "id": "grp-2",
            "displayName": "All Engineers",
            "securityEnabled": True,
            "mailEnabled": False,
            "groupTypes": ["DynamicMembership"],
            "membershipRule": '(user.department -eq "Engineering")',
            "membershipRuleProcessingState": "Paused",
        },
        {
            "id": "grp-3",
            "displayName": "Marketing",
            "securityEnabled": False,
            "mailEnabled": True,
            "groupTypes": ["Unified", "DynamicMembership"],
        },
    ]


@pytest.fixture
def sample_app_assignments():
    """Assignments of the 7-Zip app."""
    return [
        {
            "id": "asg-1",
            "intent": "required",
            "target": {
                "@odata.type": "#microsoft.graph.groupAssignmentTarget",
                "groupId": "grp-2",
            },
        },
        {
            "id": "asg-2",
            "intent": "required",
            "target": {
                "@odata.type": "#microsoft.graph.exclusionGroupAssignmentTarget",
                "groupId": "grp-1",
            },
        },
        {
            "id": "asg-3",
            "intent": "available",
            "target": {"@odata.type": "#microsoft.graph.allLicensedUsersAssignmentTarget"},
        },
    ]

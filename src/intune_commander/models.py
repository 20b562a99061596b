"""
Pydantic models for Graph API resources and derived rows.

Graph payloads are camelCase and polymorphic: a list of device
configurations mixes Windows, iOS and macOS profiles, each tagged with an
``@odata.type`` discriminator. Subtypes are registered with the type
registry so both fetched and cached items decode to the concrete class.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny, field_validator
from pydantic.alias_generators import to_camel

from intune_commander.serialization import registry


class GraphModel(BaseModel):
    """Base for anything that arrives from (or is shaped like) Graph JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GraphEntity(GraphModel):
    """Common fields shared by every Graph resource we list."""

    id: str | None = None
    odata_type: str | None = Field(default=None, alias="@odata.type")
    display_name: str | None = None
    description: str | None = None
    created_date_time: datetime | None = None
    last_modified_date_time: datetime | None = None

    @property
    def short_type_name(self) -> str:
        """``#microsoft.graph.win32LobApp`` -> ``win32LobApp``."""
        if not self.odata_type:
            return ""
        return self.odata_type.rsplit(".", 1)[-1]


# ---------------------------------------------------------------------------
# Device configurations
# ---------------------------------------------------------------------------

class DeviceConfiguration(GraphEntity):
    version: int | None = None


@registry.subtype_of(DeviceConfiguration)
class Windows10GeneralConfiguration(DeviceConfiguration):
    password_required: bool | None = None
    password_minimum_length: int | None = None
    defender_require_real_time_monitoring: bool | None = None


@registry.subtype_of(DeviceConfiguration)
class IosGeneralDeviceConfiguration(DeviceConfiguration):
    passcode_required: bool | None = None
    passcode_minimum_length: int | None = None
    app_store_block_automatic_downloads: bool | None = None


@registry.subtype_of(DeviceConfiguration)
class MacOSCustomConfiguration(DeviceConfiguration):
    payload_name: str | None = None
    payload_file_name: str | None = None


# ---------------------------------------------------------------------------
# Compliance policies
# ---------------------------------------------------------------------------

class DeviceCompliancePolicy(GraphEntity):
    version: int | None = None


@registry.subtype_of(DeviceCompliancePolicy)
class Windows10CompliancePolicy(DeviceCompliancePolicy):
    password_required: bool | None = None
    bit_locker_enabled: bool | None = None
    os_minimum_version: str | None = None


@registry.subtype_of(DeviceCompliancePolicy)
class IosCompliancePolicy(DeviceCompliancePolicy):
    passcode_required: bool | None = None
    os_minimum_version: str | None = None


@registry.subtype_of(DeviceCompliancePolicy)
class AndroidWorkProfileCompliancePolicy(DeviceCompliancePolicy):
    security_require_verify_apps: bool | None = None
    os_minimum_version: str | None = None


# ---------------------------------------------------------------------------
# Applications
# ---------------------------------------------------------------------------

class MobileApp(GraphEntity):
    publisher: str | None = None
    is_assigned: bool | None = None
    is_featured: bool | None = None
    notes: str | None = None


@registry.subtype_of(MobileApp)
class Win32LobApp(MobileApp):
    file_name: str | None = None
    display_version: str | None = None
    install_command_line: str | None = None
    minimum_supported_windows_release: str | None = None


@registry.subtype_of(MobileApp)
class IosStoreApp(MobileApp):
    bundle_id: str | None = None
    app_store_url: str | None = None


@registry.subtype_of(MobileApp)
class AndroidStoreApp(MobileApp):
    package_id: str | None = None
    app_store_url: str | None = None


@registry.subtype_of(MobileApp)
class WebApp(MobileApp):
    app_url: str | None = None


class AssignmentTarget(GraphModel):
    odata_type: str | None = Field(default=None, alias="@odata.type")


@registry.subtype_of(AssignmentTarget)
class GroupAssignmentTarget(AssignmentTarget):
    group_id: str | None = None


@registry.subtype_of(AssignmentTarget)
class ExclusionGroupAssignmentTarget(GroupAssignmentTarget):
    pass


@registry.subtype_of(AssignmentTarget)
class AllDevicesAssignmentTarget(AssignmentTarget):
    pass


@registry.subtype_of(AssignmentTarget)
class AllLicensedUsersAssignmentTarget(AssignmentTarget):
    pass


class MobileAppAssignment(GraphModel):
    id: str | None = None
    intent: str | None = None
    target: SerializeAsAny[AssignmentTarget] | None = None

    @field_validator("target", mode="before")
    @classmethod
    def resolve_target(cls, v: Any) -> Any:
        """Decode the target through the registry so group ids survive."""
        if isinstance(v, dict):
            return registry.decode(v, AssignmentTarget)
        return v


# ---------------------------------------------------------------------------
# Conditional access named locations
# ---------------------------------------------------------------------------

class NamedLocation(GraphEntity):
    pass


@registry.subtype_of(NamedLocation)
class IpNamedLocation(NamedLocation):
    is_trusted: bool | None = None
    ip_ranges: list[dict[str, Any]] = Field(default_factory=list)


@registry.subtype_of(NamedLocation)
class CountryNamedLocation(NamedLocation):
    countries_and_regions: list[str] = Field(default_factory=list)
    include_unknown_countries_and_regions: bool | None = None


# ---------------------------------------------------------------------------
# Directory objects
# ---------------------------------------------------------------------------

class Group(GraphEntity):
    mail_enabled: bool | None = None
    security_enabled: bool | None = None
    group_types: list[str] = Field(default_factory=list)
    membership_rule: str | None = None
    membership_rule_processing_state: str | None = None

    @property
    def is_dynamic(self) -> bool:
        return "DynamicMembership" in self.group_types

    @property
    def inferred_type(self) -> str:
        """Human label such as ``Security (Dynamic)``."""
        if "Unified" in self.group_types:
            kind = "Microsoft 365"
        elif self.security_enabled:
            kind = "Security"
        elif self.mail_enabled:
            kind = "Distribution"
        else:
            kind = "Other"
        membership = "Dynamic" if self.is_dynamic else "Assigned"
        return f"{kind} ({membership})"


class User(GraphEntity):
    user_principal_name: str | None = None
    department: str | None = None
    job_title: str | None = None
    office_location: str | None = None
    usage_location: str | None = None
    account_enabled: bool | None = None


class ManagedDevice(GraphModel):
    id: str | None = None
    device_name: str | None = None
    user_id: str | None = None
    operating_system: str | None = None
    os_version: str | None = None
    compliance_state: str | None = None
    model: str | None = None
    manufacturer: str | None = None
    serial_number: str | None = None
    device_category_display_name: str | None = None
    managed_device_owner_type: str | None = None


# ---------------------------------------------------------------------------
# Derived rows (built by enrichment, cached as-is)
# ---------------------------------------------------------------------------

class GroupMemberCounts(BaseModel):
    users: int = 0
    devices: int = 0
    nested_groups: int = 0

    @property
    def total(self) -> int:
        return self.users + self.devices + self.nested_groups


class GroupRow(BaseModel):
    """A group decorated with its member counts."""

    group_id: str = ""
    group_name: str = ""
    description: str = ""
    membership_rule: str = ""
    processing_state: str = ""
    group_type: str = ""
    total_members: int = 0
    users: int = 0
    devices: int = 0
    nested_groups: int = 0
    security_enabled: bool = False
    mail_enabled: bool = False
    created_date: datetime | None = None

    @classmethod
    def from_group(cls, group: Group, counts: GroupMemberCounts) -> "GroupRow":
        return cls(
            group_id=group.id or "",
            group_name=group.display_name or "",
            description=group.description or "",
            membership_rule=group.membership_rule or "",
            processing_state=group.membership_rule_processing_state or "",
            group_type=group.inferred_type,
            total_members=counts.total,
            users=counts.users,
            devices=counts.devices,
            nested_groups=counts.nested_groups,
            security_enabled=bool(group.security_enabled),
            mail_enabled=bool(group.mail_enabled),
            created_date=group.created_date_time,
        )


class AppAssignmentRow(BaseModel):
    """One application/assignment pair, flattened for browsing and export."""

    app_id: str = ""
    app_name: str = ""
    publisher: str = ""
    app_type: str = ""
    version: str = ""
    bundle_id: str = ""
    package_id: str = ""
    app_store_url: str = ""
    assignment_type: str = "None"
    target_name: str = ""
    target_group_id: str = ""
    install_intent: str = ""
    is_exclusion: bool = False


class DeviceUserEntry(BaseModel):
    """A managed device joined to its primary user."""

    device_id: str = ""
    device_name: str = ""
    user_id: str = ""
    user_display_name: str = ""
    user_principal_name: str = ""
    department: str = ""
    job_title: str = ""
    office_location: str = ""
    account_enabled: str = ""
    operating_system: str = ""
    os_version: str = ""
    compliance_state: str = ""
    device_model: str = ""
    manufacturer: str = ""
    serial_number: str = ""
    device_category: str = ""
    ownership: str = ""

    @classmethod
    def from_device(cls, device: ManagedDevice, user: User | None) -> "DeviceUserEntry":
        return cls(
            device_id=device.id or "",
            device_name=device.device_name or "",
            user_id=device.user_id or "",
            user_display_name=(user.display_name if user else None) or "",
            user_principal_name=(user.user_principal_name if user else None) or "",
            department=(user.department if user else None) or "",
            job_title=(user.job_title if user else None) or "",
            office_location=(user.office_location if user else None) or "",
            account_enabled=(
                str(user.account_enabled) if user and user.account_enabled is not None else ""
            ),
            operating_system=device.operating_system or "",
            os_version=device.os_version or "",
            compliance_state=device.compliance_state or "",
            device_model=device.model or "",
            manufacturer=device.manufacturer or "",
            serial_number=device.serial_number or "",
            device_category=device.device_category_display_name or "",
            ownership=device.managed_device_owner_type or "",
        )


# API response wrapper


class GraphCollectionResponse(BaseModel):
    """One page of a Graph collection (``value`` plus continuation link)."""

    model_config = ConfigDict(populate_by_name=True)

    value: list[dict[str, Any]] = Field(default_factory=list)
    next_link: str | None = Field(default=None, alias="@odata.nextLink")

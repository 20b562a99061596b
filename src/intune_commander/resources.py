"""
Catalog of the resource types a tenant sync knows about.

Each ``ResourceSpec`` names one independently fetchable Graph collection:
where it lives, what model its items decode to, and the cache key its
snapshot is stored under. The orchestrator turns these into sync tasks;
adding a resource type means adding one entry here.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from intune_commander.models import (
    DeviceCompliancePolicy,
    DeviceConfiguration,
    GraphEntity,
    Group,
    ManagedDevice,
    MobileApp,
    NamedLocation,
    User,
)


@dataclass(frozen=True)
class ResourceSpec:
    """
    One Graph collection.

    Attributes:
        cache_key: Data type name used for the cache entry and in-memory state
        display_name: Name shown in progress and failure messages
        label: Short label used when a refresh reports errors
        endpoint: Path below the Graph root (may contain ``{tenant_id}``)
        item_type: Model the items decode to (or a registered subtype)
        always_on: Refreshed on every refresh, whatever is in view
        params: Extra query parameters for the first page
        headers: Extra request headers (advanced queries)
    """
    cache_key: str
    display_name: str
    label: str
    endpoint: str
    item_type: type = GraphEntity
    always_on: bool = False
    params: Mapping[str, Any] = field(default_factory=dict, compare=False)
    headers: Mapping[str, str] = field(default_factory=dict, compare=False)

    def endpoint_for(self, tenant_id: str) -> str:
        return self.endpoint.format(tenant_id=tenant_id)


# Cache keys for collections that are built, not listed directly.
DYNAMIC_GROUPS = "DynamicGroups"
ASSIGNED_GROUPS = "AssignedGroups"
APP_ASSIGNMENTS = "AppAssignments"
USERS = "Users"
MANAGED_DEVICES = "ManagedDevices"
ENTRA_USERS = "EntraUsers"
DEVICE_USERS = "DeviceUsers"

# Derived from collections a refresh re-fetches; dropped after every refresh.
DERIVED_CACHE_KEYS = (APP_ASSIGNMENTS, DYNAMIC_GROUPS, ASSIGNED_GROUPS)

# Display names of the composite tasks, in registration order.
COMPOSITE_TASKS = {
    DYNAMIC_GROUPS: "Dynamic Groups",
    ASSIGNED_GROUPS: "Assigned Groups",
    USERS: "Users",
    DEVICE_USERS: "Managed Devices & Entra Users",
    APP_ASSIGNMENTS: "App Assignments",
}

_ADVANCED_QUERY = {"ConsistencyLevel": "eventual"}


RESOURCE_SPECS: tuple[ResourceSpec, ...] = (
    # Core types
    ResourceSpec("DeviceConfigurations", "Device Configurations", "Device Configs",
                 "/deviceManagement/deviceConfigurations", DeviceConfiguration, always_on=True),
    ResourceSpec("CompliancePolicies", "Compliance Policies", "Compliance Policies",
                 "/deviceManagement/deviceCompliancePolicies", DeviceCompliancePolicy, always_on=True),
    ResourceSpec("Applications", "Applications", "Applications",
                 "/deviceAppManagement/mobileApps", MobileApp, always_on=True),
    ResourceSpec("SettingsCatalog", "Settings Catalog", "Settings Catalog",
                 "/deviceManagement/configurationPolicies", always_on=True),

    # Loaded when their category is opened
    ResourceSpec("ConditionalAccessPolicies", "Conditional Access", "Conditional Access",
                 "/identity/conditionalAccess/policies"),
    ResourceSpec("AssignmentFilters", "Assignment Filters", "Assignment Filters",
                 "/deviceManagement/assignmentFilters"),
    ResourceSpec("PolicySets", "Policy Sets", "Policy Sets",
                 "/deviceAppManagement/policySets"),
    ResourceSpec("EndpointSecurityIntents", "Endpoint Security", "Endpoint Security",
                 "/deviceManagement/intents"),
    ResourceSpec("AdministrativeTemplates", "Administrative Templates", "Admin Templates",
                 "/deviceManagement/groupPolicyConfigurations"),
    ResourceSpec("EnrollmentConfigurations", "Enrollment Configurations", "Enrollment Configs",
                 "/deviceManagement/deviceEnrollmentConfigurations"),
    ResourceSpec("AppProtectionPolicies", "App Protection Policies", "App Protection",
                 "/deviceAppManagement/managedAppPolicies"),
    ResourceSpec("ManagedDeviceAppConfigurations", "Managed Device App Configurations",
                 "Managed Device App Configs", "/deviceAppManagement/mobileAppConfigurations"),
    ResourceSpec("TargetedManagedAppConfigurations", "Targeted Managed App Configurations",
                 "Targeted App Configs", "/deviceAppManagement/targetedManagedAppConfigurations"),
    ResourceSpec("TermsAndConditions", "Terms and Conditions", "Terms and Conditions",
                 "/deviceManagement/termsAndConditions"),
    ResourceSpec("ScopeTags", "Scope Tags", "Scope Tags",
                 "/deviceManagement/roleScopeTags"),
    ResourceSpec("RoleDefinitions", "Role Definitions", "Role Definitions",
                 "/deviceManagement/roleDefinitions"),
    ResourceSpec("IntuneBrandingProfiles", "Intune Branding Profiles", "Intune Branding",
                 "/deviceManagement/intuneBrandingProfiles"),
    ResourceSpec("AzureBrandingLocalizations", "Azure Branding Localizations", "Azure Branding",
                 "/organization/{tenant_id}/branding/localizations"),
    ResourceSpec("AutopilotProfiles", "Autopilot Profiles", "Autopilot",
                 "/deviceManagement/windowsAutopilotDeploymentProfiles"),
    ResourceSpec("DeviceHealthScripts", "Device Health Scripts", "Device Health Scripts",
                 "/deviceManagement/deviceHealthScripts"),
    ResourceSpec("MacCustomAttributes", "Mac Custom Attributes", "Mac Custom Attributes",
                 "/deviceManagement/deviceCustomAttributeShellScripts"),
    ResourceSpec("FeatureUpdateProfiles", "Feature Update Profiles", "Feature Updates",
                 "/deviceManagement/windowsFeatureUpdateProfiles"),
    ResourceSpec("QualityUpdateProfiles", "Quality Update Profiles", "Quality Updates",
                 "/deviceManagement/windowsQualityUpdateProfiles"),
    ResourceSpec("DriverUpdateProfiles", "Driver Update Profiles", "Driver Updates",
                 "/deviceManagement/windowsDriverUpdateProfiles"),
    ResourceSpec("NamedLocations", "Named Locations", "Named Locations",
                 "/identity/conditionalAccess/namedLocations", NamedLocation),
    ResourceSpec("AuthenticationStrengthPolicies", "Authentication Strength Policies",
                 "Auth Strengths", "/policies/authenticationStrengthPolicies"),
    ResourceSpec("AuthenticationContexts", "Authentication Contexts", "Auth Contexts",
                 "/identity/conditionalAccess/authenticationContextClassReferences"),
    ResourceSpec("TermsOfUseAgreements", "Terms of Use Agreements", "Terms of Use",
                 "/identityGovernance/termsOfUse/agreements"),
    ResourceSpec("DeviceManagementScripts", "Device Management Scripts", "Device Mgmt Scripts",
                 "/deviceManagement/deviceManagementScripts"),
    ResourceSpec("DeviceShellScripts", "Device Shell Scripts", "Shell Scripts",
                 "/deviceManagement/deviceShellScripts"),
    ResourceSpec("ComplianceScripts", "Compliance Scripts", "Compliance Scripts",
                 "/deviceManagement/deviceComplianceScripts"),
    ResourceSpec("AppleDepSettings", "Apple DEP", "Apple DEP",
                 "/deviceManagement/depOnboardingSettings"),
    ResourceSpec("DeviceCategories", "Device Categories", "Device Categories",
                 "/deviceManagement/deviceCategories"),
    ResourceSpec("CloudPcProvisioningPolicies", "Cloud PC Provisioning Policies",
                 "Cloud PC Provisioning", "/deviceManagement/virtualEndpoint/provisioningPolicies"),
    ResourceSpec("CloudPcUserSettings", "Cloud PC User Settings", "Cloud PC User Settings",
                 "/deviceManagement/virtualEndpoint/userSettings"),
    ResourceSpec("VppTokens", "VPP Tokens", "VPP Tokens",
                 "/deviceAppManagement/vppTokens"),
    ResourceSpec("RoleAssignments", "Role Assignments", "Role Assignments",
                 "/deviceManagement/roleAssignments"),
    ResourceSpec("AdmxFiles", "ADMX Files", "ADMX Files",
                 "/deviceManagement/groupPolicyUploadedDefinitionFiles"),
    ResourceSpec("ReusablePolicySettings", "Reusable Policy Settings", "Reusable Settings",
                 "/deviceManagement/reusablePolicySettings"),
    ResourceSpec("NotificationTemplates", "Notification Templates", "Notification Templates",
                 "/deviceManagement/notificationMessageTemplates"),
)

ALWAYS_ON_KEYS = tuple(spec.cache_key for spec in RESOURCE_SPECS if spec.always_on)


# Source collections for the composite tasks. Not synced on their own.

DYNAMIC_GROUP_SOURCE = ResourceSpec(
    "DynamicGroupSource", "Dynamic Groups", "Dynamic Groups", "/groups", Group,
    params={"$filter": "groupTypes/any(c:c eq 'DynamicMembership')", "$count": "true"},
    headers=_ADVANCED_QUERY,
)
ASSIGNED_GROUP_SOURCE = ResourceSpec(
    "AssignedGroupSource", "Assigned Groups", "Assigned Groups", "/groups", Group,
    params={"$filter": "NOT groupTypes/any(c:c eq 'DynamicMembership')", "$count": "true"},
    headers=_ADVANCED_QUERY,
)
USER_SOURCE = ResourceSpec(USERS, "Users", "Users", "/users", User)
MANAGED_DEVICE_SOURCE = ResourceSpec(
    MANAGED_DEVICES, "Managed Devices", "Managed Devices",
    "/deviceManagement/managedDevices", ManagedDevice,
)
ENTRA_USER_SOURCE = ResourceSpec(
    ENTRA_USERS, "Entra Users", "Entra Users", "/users", User,
    params={"$select": "id,displayName,userPrincipalName,department,jobTitle,"
                       "officeLocation,accountEnabled"},
)

_BY_KEY = {spec.cache_key: spec for spec in RESOURCE_SPECS}


def get_spec(cache_key: str) -> ResourceSpec:
    """Look up a resource type by cache key."""
    try:
        return _BY_KEY[cache_key]
    except KeyError:
        raise KeyError(f"Unknown resource type: {cache_key}") from None

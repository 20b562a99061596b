"""
Wires the resource catalog and the Graph client into an orchestrator.

Plain resource types become one definition each. The composite tasks
(group rows with member counts, app assignment rows, the device/user
join and the cache-only user list) are definitions whose fetch runs an
enrichment pass before returning rows.
"""

import threading
from datetime import timedelta

import structlog

from intune_commander.cache import CacheStore
from intune_commander.client import GraphClient
from intune_commander.enrichment import (
    EnrichmentPipeline,
    build_device_user_entries,
    enrich_app_assignment_rows,
    enrich_group_rows,
)
from intune_commander.models import AppAssignmentRow, DeviceUserEntry, GroupRow
from intune_commander.orchestrator import Fetch, ResourceDefinition, SyncOrchestrator, SyncState
from intune_commander.resources import (
    APP_ASSIGNMENTS,
    ASSIGNED_GROUP_SOURCE,
    ASSIGNED_GROUPS,
    COMPOSITE_TASKS,
    DERIVED_CACHE_KEYS,
    DEVICE_USERS,
    DYNAMIC_GROUP_SOURCE,
    DYNAMIC_GROUPS,
    ENTRA_USER_SOURCE,
    MANAGED_DEVICE_SOURCE,
    RESOURCE_SPECS,
    USER_SOURCE,
    USERS,
    ResourceSpec,
    get_spec,
)
from intune_commander.runner import DEFAULT_MAX_CONCURRENCY, BoundedRunner

logger = structlog.get_logger(__name__)


def spec_fetch(client: GraphClient, spec: ResourceSpec, tenant_id: str) -> Fetch:
    """Fetch function listing one catalog collection."""
    return client.fetcher(
        spec.endpoint_for(tenant_id),
        spec.item_type,
        params=dict(spec.params) or None,
        headers=dict(spec.headers) or None,
    )


def resource_definitions(
    client: GraphClient,
    tenant_id: str,
    state: SyncState,
    specs: tuple[ResourceSpec, ...] = RESOURCE_SPECS,
) -> list[ResourceDefinition]:
    """One definition per catalog entry. Always-on types carry no loaded flag."""
    return [
        ResourceDefinition(
            display_name=spec.display_name,
            cache_key=spec.cache_key,
            fetch=spec_fetch(client, spec, tenant_id),
            item_type=spec.item_type,
            set_items=state.items_setter(spec.cache_key),
            set_loaded=None if spec.always_on else state.loaded_setter(spec.cache_key),
            label=spec.label,
            always_on=spec.always_on,
        )
        for spec in specs
    ]


def composite_definitions(
    orchestrator: SyncOrchestrator,
    client: GraphClient,
    pipeline: EnrichmentPipeline,
) -> list[ResourceDefinition]:
    """Definitions for the tasks that need a second pass over their source data."""
    state = orchestrator.state

    def group_rows(source: ResourceSpec) -> Fetch:
        list_groups = spec_fetch(client, source, orchestrator.tenant_id)

        def fetch(cancel: threading.Event | None = None) -> list[GroupRow]:
            groups = list_groups(cancel)
            return enrich_group_rows(
                pipeline,
                groups,
                lambda group_id: client.get_group_member_counts(group_id, cancel),
                cancel=cancel,
            )
        return fetch

    list_users = spec_fetch(client, USER_SOURCE, orchestrator.tenant_id)
    list_devices = spec_fetch(client, MANAGED_DEVICE_SOURCE, orchestrator.tenant_id)
    list_entra_users = spec_fetch(client, ENTRA_USER_SOURCE, orchestrator.tenant_id)

    def device_users(cancel: threading.Event | None = None) -> list[DeviceUserEntry]:
        devices = list_devices(cancel)
        orchestrator.write_through(MANAGED_DEVICE_SOURCE.cache_key, devices)

        users = list_entra_users(cancel)
        orchestrator.write_through(ENTRA_USER_SOURCE.cache_key, users)

        return build_device_user_entries(devices, users)

    list_apps = spec_fetch(client, get_spec("Applications"), orchestrator.tenant_id)

    def app_assignments(cancel: threading.Event | None = None) -> list[AppAssignmentRow]:
        apps = list_apps(cancel)
        return enrich_app_assignment_rows(
            pipeline,
            apps,
            lambda app_id: client.get_app_assignments(app_id, cancel),
            client.resolve_group_name,
            cancel=cancel,
        )

    return [
        ResourceDefinition(
            display_name=COMPOSITE_TASKS[DYNAMIC_GROUPS],
            cache_key=DYNAMIC_GROUPS,
            fetch=group_rows(DYNAMIC_GROUP_SOURCE),
            item_type=GroupRow,
            set_items=state.items_setter(DYNAMIC_GROUPS),
            set_loaded=state.loaded_setter(DYNAMIC_GROUPS),
        ),
        ResourceDefinition(
            display_name=COMPOSITE_TASKS[ASSIGNED_GROUPS],
            cache_key=ASSIGNED_GROUPS,
            fetch=group_rows(ASSIGNED_GROUP_SOURCE),
            item_type=GroupRow,
            set_items=state.items_setter(ASSIGNED_GROUPS),
            set_loaded=state.loaded_setter(ASSIGNED_GROUPS),
        ),
        # Cache-only: kept for lookups, not shown anywhere on its own.
        ResourceDefinition(
            display_name=COMPOSITE_TASKS[USERS],
            cache_key=USERS,
            fetch=list_users,
            item_type=USER_SOURCE.item_type,
        ),
        ResourceDefinition(
            display_name=COMPOSITE_TASKS[DEVICE_USERS],
            cache_key=DEVICE_USERS,
            fetch=device_users,
            item_type=DeviceUserEntry,
            set_items=state.items_setter(DEVICE_USERS),
            set_loaded=state.loaded_setter(DEVICE_USERS),
        ),
        ResourceDefinition(
            display_name=COMPOSITE_TASKS[APP_ASSIGNMENTS],
            cache_key=APP_ASSIGNMENTS,
            fetch=app_assignments,
            item_type=AppAssignmentRow,
            set_items=state.items_setter(APP_ASSIGNMENTS),
            set_loaded=state.loaded_setter(APP_ASSIGNMENTS),
        ),
    ]


def build_orchestrator(
    client: GraphClient,
    tenant_id: str,
    cache: CacheStore | None = None,
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    cache_ttl: timedelta | None = None,
) -> SyncOrchestrator:
    """
    Build an orchestrator that knows every catalog type and composite task.

    Example:
        with GraphClient(token) as client, CacheStore(protector) as store:
            orchestrator = build_orchestrator(client, tenant_id, cache=store)
            summary = orchestrator.run_download_all()
    """
    runner = BoundedRunner(max_concurrency=max_concurrency)
    state = SyncState()

    orchestrator = SyncOrchestrator(
        tenant_id,
        resource_definitions(client, tenant_id, state),
        cache=cache,
        runner=runner,
        state=state,
        cache_ttl=cache_ttl,
        derived_keys=DERIVED_CACHE_KEYS,
    )

    pipeline = EnrichmentPipeline(BoundedRunner(max_concurrency=max_concurrency))
    for definition in composite_definitions(orchestrator, client, pipeline):
        orchestrator.register(definition)

    logger.debug(
        "Orchestrator ready",
        tenant_id=tenant_id,
        resource_types=len(orchestrator.definitions),
    )
    return orchestrator

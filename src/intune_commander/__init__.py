"""
Intune Commander sync engine

Fetches tenant resource collections from Microsoft Graph under a
concurrency bound and keeps them in an encrypted local cache.

Features:
- Encrypted per-tenant cache with per-entry TTL
- Polymorphic payloads decoded to their concrete subtype
- Self-healing key recovery (unreadable key wipes the store with it)
- Bounded-concurrency runs with failure isolation and cancellation
- Per-item enrichment (group member counts, app assignments)

Quick Start:
    pip install intune-commander-sync
    export IC_TENANT_ID=... IC_ACCESS_TOKEN=... IC_CACHE_PASSPHRASE=...
    ic-sync download-all   # Fetch everything into the cache
    ic-sync status         # See what is cached
"""

from intune_commander.cache import CacheMetadata, CacheStore
from intune_commander.client import GraphClient
from intune_commander.config import SyncSettings, load_settings, save_settings
from intune_commander.enrichment import EnrichmentPipeline
from intune_commander.errors import (
    CacheError,
    EnrichmentError,
    GraphAPIError,
    GraphAuthError,
    GraphNotFoundError,
    GraphServerError,
    GraphThrottledError,
    SyncCancelled,
)
from intune_commander.graph_sync import build_orchestrator
from intune_commander.maintenance import CacheJanitor
from intune_commander.orchestrator import (
    LoadResult,
    ProgressSink,
    ResourceDefinition,
    SyncOrchestrator,
    SyncState,
    format_cache_age,
)
from intune_commander.protector import FernetProtector, PassphraseProtector, Protector
from intune_commander.runner import BoundedRunner, RunSummary, SyncTask
from intune_commander.serialization import TypeRegistry, registry

__version__ = "1.0.0"
__all__ = [
    # Cache
    "CacheStore",
    "CacheMetadata",
    "CacheJanitor",

    # Key protection
    "Protector",
    "FernetProtector",
    "PassphraseProtector",

    # Serialization
    "TypeRegistry",
    "registry",

    # Running
    "BoundedRunner",
    "SyncTask",
    "RunSummary",
    "EnrichmentPipeline",

    # Orchestration
    "SyncOrchestrator",
    "SyncState",
    "ResourceDefinition",
    "LoadResult",
    "ProgressSink",
    "format_cache_age",
    "build_orchestrator",

    # API client
    "GraphClient",
    "GraphAPIError",
    "GraphAuthError",
    "GraphNotFoundError",
    "GraphServerError",
    "GraphThrottledError",

    # Errors
    "CacheError",
    "EnrichmentError",
    "SyncCancelled",

    # Config
    "SyncSettings",
    "load_settings",
    "save_settings",
]

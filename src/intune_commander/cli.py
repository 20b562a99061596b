#!/usr/bin/env python3
"""
Intune Commander sync CLI

Fetch, cache and inspect tenant data from the command line.

Usage:
    ic-sync download-all         # Fetch every data type into the cache
    ic-sync refresh --active X   # Refresh core types plus X
    ic-sync load KEY             # Fetch one data type
    ic-sync status               # Show what is cached and how old it is
    ic-sync cleanup              # Remove expired cache entries
    ic-sync invalidate [KEY]     # Drop one (or every) cached data type
    ic-sync types                # List known data types
"""

import argparse
import logging
import sys
import threading

import structlog
from colorama import Fore, Style, init

from intune_commander.cache import CacheStore
from intune_commander.client import GraphClient
from intune_commander.config import SyncSettings, load_settings
from intune_commander.graph_sync import build_orchestrator
from intune_commander.maintenance import CacheJanitor
from intune_commander.orchestrator import format_cache_age
from intune_commander.resources import (
    ALWAYS_ON_KEYS,
    COMPOSITE_TASKS,
    ENTRA_USERS,
    MANAGED_DEVICES,
    RESOURCE_SPECS,
)
from intune_commander.runner import RunSummary

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Intune Commander Sync{RESET}{BLUE}                                    ║
║     Tenant data cache for offline browsing                     ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def configure_logging(verbose: bool = False) -> None:
    """Route structlog to stderr with a console renderer."""
    level = logging.DEBUG if verbose else logging.INFO
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="%H:%M:%S"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


class ConsoleProgress:
    """Progress sink that redraws a single status line."""

    def __init__(self):
        self._lock = threading.Lock()
        self._percent = 0.0

    def on_progress(self, done: int, total: int) -> None:
        with self._lock:
            self._percent = done / total * 100 if total else 100.0

    def on_status(self, text: str) -> None:
        with self._lock:
            print(f"\r{BLUE}[{self._percent:5.1f}%] {text}{RESET}\033[K", end="", flush=True)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def require_tenant(settings: SyncSettings) -> str | None:
    if not settings.tenant_id:
        print_error("No tenant configured.")
        print_info("Set IC_TENANT_ID or pass --tenant")
        return None
    return settings.tenant_id


def open_store(settings: SyncSettings) -> CacheStore:
    return CacheStore(
        settings.build_protector(),
        base_path=settings.cache_dir,
        default_ttl=settings.cache_ttl,
    )


def open_client(settings: SyncSettings) -> GraphClient:
    if not settings.access_token:
        raise ValueError("Set IC_ACCESS_TOKEN to a Graph access token")
    return GraphClient(
        access_token=settings.access_token,
        base_url=settings.graph_base_url,
        requests_per_minute=settings.requests_per_minute,
        timeout=settings.request_timeout,
        max_retries=settings.max_retries,
    )


def print_summary(summary: RunSummary, error: str | None) -> int:
    print()
    print(f"  Succeeded: {summary.succeeded}")
    if summary.failed:
        print_warning(f"  Failed: {summary.failed}")
    if summary.skipped:
        print_warning(f"  Skipped: {summary.skipped}")
    print(f"  Items: {summary.item_count}")
    print(f"  Duration: {summary.duration_seconds:.1f}s")
    if error:
        print_error(error)
    return 0 if summary.ok else 1


def run_cancellable(work) -> RunSummary | None:
    """Run ``work(cancel)`` on a worker thread so Ctrl+C can cancel it."""
    cancel = threading.Event()
    result: list[RunSummary] = []
    worker = threading.Thread(target=lambda: result.append(work(cancel)), name="ic-sync")
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        print()
        print_warning("Cancelling - waiting for running tasks to finish...")
        cancel.set()
        worker.join()
    return result[0] if result else None


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------

def cmd_download_all(args, settings: SyncSettings):
    """Fetch every data type into the cache."""
    tenant_id = require_tenant(settings)
    if tenant_id is None:
        return 1

    print_banner()
    print(f"{BOLD}Downloading all data types{RESET}\n")

    with open_client(settings) as client, open_store(settings) as store, \
            CacheJanitor(store, interval=settings.cleanup_interval):
        orchestrator = build_orchestrator(
            client, tenant_id, cache=store,
            max_concurrency=args.max_concurrency or settings.max_concurrency,
            cache_ttl=settings.cache_ttl,
        )
        sink = ConsoleProgress()
        summary = run_cancellable(
            lambda cancel: orchestrator.run_download_all(progress_sink=sink, cancel=cancel),
        )
        if summary is None:
            print_error("Download failed")
            return 1
        return print_summary(summary, orchestrator.last_error)


def cmd_refresh(args, settings: SyncSettings):
    """Refresh the always-on types plus any requested ones."""
    tenant_id = require_tenant(settings)
    if tenant_id is None:
        return 1

    with open_client(settings) as client, open_store(settings) as store:
        orchestrator = build_orchestrator(
            client, tenant_id, cache=store,
            max_concurrency=settings.max_concurrency, cache_ttl=settings.cache_ttl,
        )
        for key in args.active:
            orchestrator.get_definition(key)
        print_info(f"Refreshing {', '.join(ALWAYS_ON_KEYS + tuple(args.active))}")
        summary = run_cancellable(
            lambda cancel: orchestrator.run_refresh(args.active, cancel=cancel),
        )
        if summary is None:
            print_error("Refresh failed")
            return 1
        return print_summary(summary, orchestrator.last_error)


def cmd_load(args, settings: SyncSettings):
    """Fetch one data type and write it through to the cache."""
    tenant_id = require_tenant(settings)
    if tenant_id is None:
        return 1

    with open_client(settings) as client, open_store(settings) as store:
        orchestrator = build_orchestrator(client, tenant_id, cache=store, cache_ttl=settings.cache_ttl)
        definition = orchestrator.get_definition(args.key)
        print_info(f"Loading {definition.display_name}...")

        result = orchestrator.run_lazy(args.key)
        if not result.ok:
            print_error(orchestrator.last_error or f"Failed to load {definition.display_name}")
            return 1

        print_success(f"Loaded {len(result.items)} {definition.display_name}")
        return 0


def cmd_status(args, settings: SyncSettings):
    """Show what is cached for the tenant."""
    tenant_id = require_tenant(settings)
    if tenant_id is None:
        return 1

    print_banner()
    keys = [spec.cache_key for spec in RESOURCE_SPECS]
    keys += list(COMPOSITE_TASKS) + [MANAGED_DEVICES, ENTRA_USERS]

    with open_store(settings) as store:
        print(f"{BOLD}Cache Status{RESET} ({settings.cache_dir})\n")
        cached = 0
        for key in keys:
            meta = store.get_metadata(tenant_id, key)
            if meta is None:
                if args.all:
                    print(f"  {key:<36} {YELLOW}not cached{RESET}")
                continue
            cached += 1
            print(f"  {key:<36} {meta.item_count:>6} item(s)  {format_cache_age(meta.cached_at)}")

        stats = store.get_stats()
        print(f"\n  {cached} of {len(keys)} data types cached, {stats['entries']} entries in store")
    return 0


def cmd_cleanup(args, settings: SyncSettings):
    """Remove expired entries from the cache."""
    with open_store(settings) as store:
        removed = store.cleanup_expired()
    print_success(f"Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")
    return 0


def cmd_invalidate(args, settings: SyncSettings):
    """Drop one cached data type, or everything for the tenant."""
    tenant_id = require_tenant(settings)
    if tenant_id is None:
        return 1

    with open_store(settings) as store:
        removed = store.invalidate(tenant_id, args.key)

    target = args.key or "all data types"
    print_success(f"Invalidated {target} ({removed} entr{'y' if removed == 1 else 'ies'})")
    return 0


def cmd_types(args, settings: SyncSettings):
    """List the data types this tool can sync."""
    print(f"{BOLD}Resource types{RESET}\n")
    for spec in RESOURCE_SPECS:
        marker = f" {GREEN}(always refreshed){RESET}" if spec.always_on else ""
        print(f"  {spec.cache_key:<36} {spec.display_name}{marker}")

    print(f"\n{BOLD}Composite tasks{RESET}\n")
    for key, name in COMPOSITE_TASKS.items():
        print(f"  {key:<36} {name}")
    return 0


def main(argv: list[str] | None = None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Intune Commander sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  ic-sync download-all                 Fetch every data type into the cache
  ic-sync refresh --active ScopeTags   Refresh core types plus scope tags
  ic-sync load NamedLocations          Fetch one data type
  ic-sync status --all                 Show cached and missing data types

Environment:
  IC_TENANT_ID, IC_ACCESS_TOKEN, IC_CACHE_PASSPHRASE, IC_CACHE_DIR
        """,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--tenant", help="Tenant id (overrides IC_TENANT_ID)")
    parser.add_argument("--config", help="Path to config.json")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    download_parser = subparsers.add_parser("download-all", help="Fetch every data type")
    download_parser.add_argument("--max-concurrency", type=int, help="Parallel fetches (default 5)")

    refresh_parser = subparsers.add_parser("refresh", help="Refresh core and active data types")
    refresh_parser.add_argument("--active", nargs="*", default=[], metavar="KEY",
                                help="Extra data types to refresh")

    load_parser = subparsers.add_parser("load", help="Fetch one data type")
    load_parser.add_argument("key", help="Data type cache key (see 'ic-sync types')")

    status_parser = subparsers.add_parser("status", help="Show cache status")
    status_parser.add_argument("--all", action="store_true", help="Include data types not cached")

    subparsers.add_parser("cleanup", help="Remove expired cache entries")

    invalidate_parser = subparsers.add_parser("invalidate", help="Drop cached data")
    invalidate_parser.add_argument("key", nargs="?", help="Data type (default: all)")

    subparsers.add_parser("types", help="List known data types")

    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if args.command is None:
        parser.print_help()
        return 0

    try:
        settings = load_settings(args.config)
    except ValueError as e:
        print_error(f"Invalid configuration: {e}")
        return 1
    if args.tenant:
        settings = settings.model_copy(update={"tenant_id": args.tenant})

    commands = {
        "download-all": cmd_download_all,
        "refresh": cmd_refresh,
        "load": cmd_load,
        "status": cmd_status,
        "cleanup": cmd_cleanup,
        "invalidate": cmd_invalidate,
        "types": cmd_types,
    }

    try:
        return commands[args.command](args, settings)
    except (KeyError, ValueError) as e:
        print_error(str(e).strip("'\""))
        return 1


if __name__ == "__main__":
    sys.exit(main())

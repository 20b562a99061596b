"""
Encrypted, TTL-aware cache store for tenant collections.

One row per (tenant, data type) holds a Fernet-encrypted JSON array of
items plus the metadata needed to answer "how old / how many" without
decrypting anything. Expired, undecryptable and drifted entries all read
as a miss and are deleted on the way out.
"""

import sqlite3
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import structlog
from cryptography.fernet import Fernet, InvalidToken

from intune_commander.errors import CacheError
from intune_commander.keys import StoreKey
from intune_commander.protector import Protector
from intune_commander.serialization import TypeRegistry, registry as default_registry

logger = structlog.get_logger(__name__)

T = TypeVar("T")

Clock = Callable[[], datetime]

DEFAULT_TTL = timedelta(hours=24)

DB_FILENAME = "cache.db"
KEY_FILENAME = "cache-key.bin"

# Files SQLite may create beside the database in WAL or rollback mode.
SQLITE_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")

_CANARY_NAME = "canary"
_CANARY_VALUE = b"intune-commander-cache"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    tenant_id   TEXT    NOT NULL,
    data_type   TEXT    NOT NULL,
    payload     BLOB    NOT NULL,
    cached_at   REAL    NOT NULL,
    expires_at  REAL    NOT NULL,
    item_count  INTEGER NOT NULL,
    PRIMARY KEY (tenant_id, data_type)
);
CREATE INDEX IF NOT EXISTS idx_cache_entries_expires ON cache_entries (expires_at);
CREATE TABLE IF NOT EXISTS store_meta (
    name   TEXT PRIMARY KEY,
    value  BLOB NOT NULL
);
"""


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


@dataclass(frozen=True)
class CacheMetadata:
    """Age and size of a cached collection."""
    cached_at: datetime
    item_count: int
    expires_at: datetime


class CacheStore:
    """
    Thread-safe encrypted cache keyed by (tenant id, data type).

    Features:
    - Per-entry TTL (default 24h, overridable per write)
    - Runtime-type serialization with polymorphic decoding
    - Self-healing when the key sidecar or store cannot be read
    - Safe for concurrent use from worker threads

    Example:
        store = CacheStore(FernetProtector(key), base_path="~/.intune-commander")

        store.set("tenant-a", "DeviceConfigurations", configs)
        configs = store.get("tenant-a", "DeviceConfigurations", DeviceConfiguration)
    """

    def __init__(
        self,
        protector: Protector,
        base_path: str | Path | None = None,
        default_ttl: timedelta = DEFAULT_TTL,
        clock: Clock | None = None,
        type_registry: TypeRegistry | None = None,
    ):
        """
        Open (or create) the store.

        Args:
            protector: Wraps the store secret kept in the key sidecar
            base_path: Directory for the store files (None = ~/.intune-commander)
            default_ttl: TTL applied when ``set`` is called without one
            clock: Returns the current UTC time (injectable for tests)
            type_registry: Subtype registry used to decode items
        """
        if default_ttl <= timedelta(0):
            raise ValueError("default_ttl must be positive")

        if base_path is None:
            base_path = Path.home() / ".intune-commander"
        self.base_path = Path(base_path).expanduser()
        self.base_path.mkdir(parents=True, exist_ok=True)

        self.db_path = self.base_path / DB_FILENAME
        self.key_path = self.base_path / KEY_FILENAME
        self.default_ttl = default_ttl
        self.registry = type_registry or default_registry
        self._clock = clock or utc_now

        self._lock = threading.RLock()
        self._key = StoreKey(protector, self.key_path)
        self._log = logger.bind(store=str(self.db_path))

        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._conn, self._fernet = self._open()

    # -------------------------------------------------------------------------
    # Opening / recovery
    # -------------------------------------------------------------------------

    @property
    def store_files(self) -> list[Path]:
        """Every file this backend may create for the store (excluding the key)."""
        return [self.db_path] + [
            self.db_path.with_name(self.db_path.name + suffix)
            for suffix in SQLITE_SIDECAR_SUFFIXES
        ]

    def _open(self) -> tuple[sqlite3.Connection, Fernet]:
        secret = self._key.load_or_create(self.store_files)
        fernet = Fernet(secret)

        conn = None
        try:
            conn = self._connect()
            if self._check_canary(conn, fernet):
                return conn, fernet
        except sqlite3.DatabaseError as e:
            self._log.warning("Cache database unreadable", error=str(e))
        if conn is not None:
            conn.close()

        # The store on disk does not belong to this key. Replace both.
        self._key.discard(self.store_files)
        fernet = Fernet(self._key.create())
        conn = self._connect()
        self._check_canary(conn, fernet)
        return conn, fernet

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        except sqlite3.Error:
            conn.close()
            raise
        return conn

    def _check_canary(self, conn: sqlite3.Connection, fernet: Fernet) -> bool:
        """Verify the store was written under ``fernet``; stamp new stores."""
        row = conn.execute(
            "SELECT value FROM store_meta WHERE name = ?", (_CANARY_NAME,)
        ).fetchone()

        if row is None:
            with conn:
                conn.execute(
                    "INSERT INTO store_meta (name, value) VALUES (?, ?)",
                    (_CANARY_NAME, fernet.encrypt(_CANARY_VALUE)),
                )
            return True

        try:
            return fernet.decrypt(row[0]) == _CANARY_VALUE
        except InvalidToken:
            self._log.warning("Cache key does not match store")
            return False

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def get(
        self,
        tenant_id: str,
        data_type: str,
        item_type: type[T] | None = None,
    ) -> list[T] | None:
        """
        Read a cached collection.

        Returns None if the entry is missing, expired, cannot be decrypted,
        or no longer decodes as ``item_type``; in the last three cases the
        entry is deleted. With ``item_type=None`` the raw JSON values are
        returned.
        """
        now = self._clock().timestamp()
        log = self._log.bind(tenant_id=tenant_id, data_type=data_type)

        with self._lock:
            row = self._execute(
                "SELECT payload, expires_at FROM cache_entries "
                "WHERE tenant_id = ? AND data_type = ?",
                (tenant_id, data_type),
            ).fetchone()

            if row is None:
                self._misses += 1
                return None

            payload, expires_at = row
            if now > expires_at:
                self._delete(tenant_id, data_type)
                self._misses += 1
                self._evictions += 1
                log.debug("Cache entry expired")
                return None

        try:
            items = self.registry.loads(self._fernet.decrypt(payload), item_type or object)
        except (InvalidToken, ValueError) as e:
            log.warning("Discarding unreadable cache entry", error=str(e))
            with self._lock:
                self._delete(tenant_id, data_type)
                self._misses += 1
                self._evictions += 1
            return None

        with self._lock:
            self._hits += 1
        log.debug("Cache hit", count=len(items))
        return items

    def set(
        self,
        tenant_id: str,
        data_type: str,
        items: Iterable[Any],
        ttl: timedelta | None = None,
    ) -> None:
        """
        Store a collection, replacing any previous entry for the key.

        Each item is serialized with its runtime type.
        """
        effective_ttl = ttl if ttl is not None else self.default_ttl
        if effective_ttl <= timedelta(0):
            raise ValueError("ttl must be positive")

        items = list(items)
        token = self._fernet.encrypt(self.registry.dumps(items))
        now = self._clock()

        with self._lock:
            with self._conn:
                self._execute(
                    "INSERT OR REPLACE INTO cache_entries "
                    "(tenant_id, data_type, payload, cached_at, expires_at, item_count) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        tenant_id,
                        data_type,
                        token,
                        now.timestamp(),
                        (now + effective_ttl).timestamp(),
                        len(items),
                    ),
                )

        self._log.debug(
            "Cached collection",
            tenant_id=tenant_id,
            data_type=data_type,
            count=len(items),
        )

    def invalidate(self, tenant_id: str, data_type: str | None = None) -> int:
        """
        Remove one entry, or every entry for the tenant when ``data_type``
        is None. Returns the number of entries removed.
        """
        with self._lock:
            if data_type is not None:
                removed = self._delete(tenant_id, data_type)
            else:
                with self._conn:
                    removed = self._execute(
                        "DELETE FROM cache_entries WHERE tenant_id = ?", (tenant_id,)
                    ).rowcount

        self._log.debug("Invalidated cache", tenant_id=tenant_id, data_type=data_type, removed=removed)
        return removed

    def cleanup_expired(self) -> int:
        """Remove all entries whose expiry has passed. Returns the count removed."""
        now = self._clock().timestamp()
        with self._lock:
            with self._conn:
                removed = self._execute(
                    "DELETE FROM cache_entries WHERE expires_at < ?", (now,)
                ).rowcount
            self._evictions += removed

        if removed:
            self._log.info("Removed expired cache entries", count=removed)
        return removed

    def get_metadata(self, tenant_id: str, data_type: str) -> CacheMetadata | None:
        """Age and item count of an entry, without decrypting the payload."""
        now = self._clock().timestamp()
        with self._lock:
            row = self._execute(
                "SELECT cached_at, expires_at, item_count FROM cache_entries "
                "WHERE tenant_id = ? AND data_type = ?",
                (tenant_id, data_type),
            ).fetchone()

            if row is None:
                return None

            cached_at, expires_at, item_count = row
            if now > expires_at:
                self._delete(tenant_id, data_type)
                self._evictions += 1
                return None

        return CacheMetadata(
            cached_at=_from_ts(cached_at),
            item_count=item_count,
            expires_at=_from_ts(expires_at),
        )

    def close(self) -> None:
        """Close the underlying database connection."""
        with self._lock:
            self._conn.close()

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics for monitoring."""
        with self._lock:
            entries = self._execute("SELECT COUNT(*) FROM cache_entries").fetchone()[0]
            total = self._hits + self._misses
            return {
                "entries": entries,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": round(self._hits / total, 4) if total else 0.0,
                "evictions": self._evictions,
            }

    # -------------------------------------------------------------------------
    # Internals (callers hold self._lock)
    # -------------------------------------------------------------------------

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise CacheError(f"Cache store operation failed: {e}") from e

    def _delete(self, tenant_id: str, data_type: str) -> int:
        with self._conn:
            return self._execute(
                "DELETE FROM cache_entries WHERE tenant_id = ? AND data_type = ?",
                (tenant_id, data_type),
            ).rowcount

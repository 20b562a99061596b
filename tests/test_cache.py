"""
Tests for the encrypted cache store.
"""

import os
import threading
from datetime import timedelta
from pathlib import Path

import pytest
from cryptography.fernet import Fernet

from intune_commander.cache import CacheStore
from intune_commander.keys import StoreKey
from intune_commander.models import (
    DeviceCompliancePolicy,
    GraphEntity,
    IosCompliancePolicy,
    Windows10CompliancePolicy,
)
from intune_commander.protector import FernetProtector
from intune_commander.serialization import registry


class TestTTL:
    """Expiry behaviour."""

    def test_fresh_entry_is_returned(self, store):
        store.set("tenant-A", "widgets", [{"id": "a"}, {"id": "b"}, {"id": "c"}], ttl=timedelta(hours=1))

        items = store.get("tenant-A", "widgets")
        assert items is not None
        assert {item["id"] for item in items} == {"a", "b", "c"}

    def test_expired_entry_reads_as_missing(self, store, clock):
        store.set("tenant-A", "widgets", [{"id": "a"}], ttl=timedelta(hours=1))
        clock.advance(hours=2)

        assert store.get("tenant-A", "widgets") is None
        assert store.get_metadata("tenant-A", "widgets") is None
        assert store.get_stats()["entries"] == 0

    def test_entry_valid_until_exact_expiry(self, store, clock):
        store.set("tenant-A", "widgets", [{"id": "a"}], ttl=timedelta(hours=1))
        clock.advance(hours=1)

        assert store.get("tenant-A", "widgets") == [{"id": "a"}]

    def test_default_ttl_is_24_hours(self, store, clock):
        store.set("tenant-A", "widgets", [{"id": "a"}])

        meta = store.get_metadata("tenant-A", "widgets")
        assert meta.expires_at - meta.cached_at == timedelta(hours=24)

    def test_non_positive_ttl_rejected(self, store):
        with pytest.raises(ValueError):
            store.set("tenant-A", "widgets", [], ttl=timedelta(0))

    def test_cleanup_scenario(self, store, clock):
        """Three widgets cached for an hour, swept only once stale."""
        store.set("tenant-A", "widgets", [{"id": "1"}, {"id": "2"}, {"id": "3"}], ttl=timedelta(hours=1))

        assert len(store.get("tenant-A", "widgets")) == 3
        assert store.cleanup_expired() == 0

        clock.advance(hours=2)
        assert store.cleanup_expired() == 1
        assert store.get("tenant-A", "widgets") is None


class TestUpsert:
    """One live entry per key."""

    def test_second_set_replaces_first(self, store):
        store.set("tenant-A", "widgets", [{"v": 1}])
        store.set("tenant-A", "widgets", [{"v": 2}, {"v": 3}])

        assert store.get("tenant-A", "widgets") == [{"v": 2}, {"v": 3}]
        assert store.get_stats()["entries"] == 1
        assert store.get_metadata("tenant-A", "widgets").item_count == 2

    def test_tenants_are_separate(self, store):
        store.set("tenant-A", "widgets", [{"v": "a"}])
        store.set("tenant-B", "widgets", [{"v": "b"}])

        assert store.get("tenant-A", "widgets") == [{"v": "a"}]
        assert store.get("tenant-B", "widgets") == [{"v": "b"}]


class TestPolymorphicRoundTrip:
    """Runtime types survive a trip through the store."""

    def test_graph_payload_round_trip(self, store, sample_compliance_policies):
        policies = registry.decode_many(sample_compliance_policies, DeviceCompliancePolicy)
        store.set("tenant-A", "CompliancePolicies", policies)

        cached = store.get("tenant-A", "CompliancePolicies", DeviceCompliancePolicy)

        by_id = {p.id: p for p in cached}
        assert isinstance(by_id["cp-win"], Windows10CompliancePolicy)
        assert by_id["cp-win"].bit_locker_enabled is True
        assert by_id["cp-win"].os_minimum_version == "10.0.19045"
        assert isinstance(by_id["cp-ios"], IosCompliancePolicy)
        assert by_id["cp-ios"].passcode_required is True
        assert type(by_id["cp-mac"]) is DeviceCompliancePolicy

    def test_locally_built_subtype_keeps_fields(self, store):
        """An instance with no discriminator is stamped from its class."""
        policy = Windows10CompliancePolicy(id="local", bit_locker_enabled=True)
        store.set("tenant-A", "CompliancePolicies", [policy])

        [cached] = store.get("tenant-A", "CompliancePolicies", DeviceCompliancePolicy)
        assert isinstance(cached, Windows10CompliancePolicy)
        assert cached.bit_locker_enabled is True

    def test_schema_drift_reads_as_miss(self, store):
        store.set("tenant-A", "widgets", [{"displayName": ["not", "a", "string"]}])

        assert store.get("tenant-A", "widgets", GraphEntity) is None
        assert store.get_metadata("tenant-A", "widgets") is None


class TestInvalidate:
    """Explicit removal."""

    def test_invalidate_single_type(self, store):
        store.set("tenant-A", "one", [1])
        store.set("tenant-A", "two", [2])

        assert store.invalidate("tenant-A", "one") == 1
        assert store.get("tenant-A", "one") is None
        assert store.get("tenant-A", "two") == [2]

    def test_invalidate_whole_tenant(self, store):
        store.set("tenant-A", "one", [1])
        store.set("tenant-A", "two", [2])
        store.set("tenant-B", "one", [3])

        assert store.invalidate("tenant-A") == 2
        assert store.get("tenant-B", "one") == [3]

    def test_invalidate_missing_is_zero(self, store):
        assert store.invalidate("tenant-A", "nothing") == 0


class TestMetadata:
    def test_metadata_without_payload(self, store, clock):
        store.set("tenant-A", "widgets", [{"id": "a"}, {"id": "b"}], ttl=timedelta(hours=2))

        meta = store.get_metadata("tenant-A", "widgets")
        assert meta.cached_at == clock.now
        assert meta.item_count == 2
        assert meta.expires_at == clock.now + timedelta(hours=2)

    def test_missing_metadata(self, store):
        assert store.get_metadata("tenant-A", "widgets") is None


class TestKeyRecovery:
    """A store whose key cannot be recovered is replaced, never served."""

    def test_wrong_protector_yields_empty_store(self, store_dir, clock):
        with CacheStore(FernetProtector(Fernet.generate_key()), base_path=store_dir, clock=clock) as first:
            first.set("tenant-A", "widgets", [{"id": "a"}])
            old_key = first.key_path.read_bytes()

        other = FernetProtector(Fernet.generate_key())
        with CacheStore(other, base_path=store_dir, clock=clock) as second:
            assert second.get("tenant-A", "widgets") is None
            assert second.get_stats()["entries"] == 0
            assert second.key_path.read_bytes() != old_key

            second.set("tenant-A", "widgets", [{"id": "b"}])
            assert second.get("tenant-A", "widgets") == [{"id": "b"}]

    def test_replaced_key_sidecar_wipes_store(self, protector, store_dir, clock):
        """A readable key that did not write the store fails the canary."""
        with CacheStore(protector, base_path=store_dir, clock=clock) as first:
            first.set("tenant-A", "widgets", [{"id": "a"}])
            key_path = first.key_path

        StoreKey(protector, key_path).create()

        with CacheStore(protector, base_path=store_dir, clock=clock) as second:
            assert second.get("tenant-A", "widgets") is None
            assert second.get_stats()["entries"] == 0

    def test_corrupt_database_file(self, protector, store_dir, clock):
        """A database that SQLite cannot read is replaced by an empty store."""
        with CacheStore(protector, base_path=store_dir, clock=clock) as first:
            first.set("tenant-A", "widgets", [{"id": "a"}])
            db_path = first.db_path
        for path in db_path.parent.glob("cache.db*"):
            path.unlink()
        db_path.write_bytes(b"this is not a database" * 100)

        with CacheStore(protector, base_path=store_dir, clock=clock) as cache:
            assert cache.get("tenant-A", "widgets") is None
            cache.set("tenant-A", "widgets", [{"id": "b"}])
            assert cache.get("tenant-A", "widgets") == [{"id": "b"}]

            fd_dir = Path("/proc/self/fd")
            if fd_dir.exists():
                open_files = []
                for fd in fd_dir.iterdir():
                    try:
                        open_files.append(os.readlink(fd))
                    except OSError:
                        continue
                assert not any(name.endswith("(deleted)") and "cache.db" in name for name in open_files)

    def test_corrupt_key_sidecar(self, protector, store_dir, clock):
        store_dir.mkdir(parents=True)
        (store_dir / "cache-key.bin").write_bytes(b"not a protected key")

        with CacheStore(protector, base_path=store_dir, clock=clock) as cache:
            cache.set("tenant-A", "widgets", [1, 2])
            assert cache.get("tenant-A", "widgets") == [1, 2]

    def test_reopen_with_same_protector_keeps_data(self, protector, store_dir, clock):
        with CacheStore(protector, base_path=store_dir, clock=clock) as first:
            first.set("tenant-A", "widgets", [{"id": "a"}])

        with CacheStore(protector, base_path=store_dir, clock=clock) as second:
            assert second.get("tenant-A", "widgets") == [{"id": "a"}]

    def test_store_files_cover_sqlite_sidecars(self, store):
        names = {p.name for p in store.store_files}
        assert names == {"cache.db", "cache.db-wal", "cache.db-shm", "cache.db-journal"}


class TestConcurrency:
    def test_parallel_writes_to_distinct_keys(self, store):
        def write(n: int) -> None:
            store.set("tenant-A", f"type-{n}", [{"n": n}] * n)

        threads = [threading.Thread(target=write, args=(n,)) for n in range(1, 21)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for n in range(1, 21):
            assert len(store.get("tenant-A", f"type-{n}")) == n

    def test_stats_track_hits_and_misses(self, store):
        store.set("tenant-A", "widgets", [1])
        store.get("tenant-A", "widgets")
        store.get("tenant-A", "missing")

        stats = store.get_stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5

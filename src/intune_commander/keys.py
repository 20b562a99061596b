"""
Store secret lifecycle.

The cache store is encrypted with a random Fernet key. That key is wrapped
by a caller-supplied protector and kept in a sidecar file next to the
store. A key and the data it unlocks are always replaced together: if the
sidecar cannot be unwrapped, every file belonging to the store is deleted
before a new key is written.
"""

import os
from collections.abc import Iterable
from pathlib import Path

import structlog
from cryptography.fernet import Fernet

from intune_commander.protector import Protector

logger = structlog.get_logger(__name__)


def remove_files(paths: Iterable[Path]) -> list[Path]:
    """
    Delete each path, best effort.

    Missing files are skipped and files that cannot be removed (locked,
    permission denied) are logged and skipped. Returns the paths that
    were actually deleted.
    """
    removed = []
    for path in paths:
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Could not delete cache file", path=str(path), error=str(e))
    return removed


def is_valid_secret(secret: bytes) -> bool:
    """True if ``secret`` is usable as a Fernet key."""
    try:
        Fernet(secret)
    except (ValueError, TypeError):
        return False
    return True


class StoreKey:
    """
    Loads or creates the protected store secret.

    Example:
        key = StoreKey(protector, cache_dir / "cache-key.bin")
        secret = key.load_or_create(store_files=[db_path, wal_path])
    """

    def __init__(self, protector: Protector, key_path: str | Path):
        self.protector = protector
        self.key_path = Path(key_path)
        self._log = logger.bind(key_path=str(self.key_path))

    def load(self) -> bytes | None:
        """
        Unwrap the existing secret.

        Returns None when there is no sidecar or it cannot be unwrapped;
        never raises for an unreadable key.
        """
        if not self.key_path.exists():
            return None

        try:
            secret = self.protector.unprotect(self.key_path.read_bytes())
        except Exception as e:
            self._log.warning("Cache key could not be unprotected", error=str(e))
            return None

        if not is_valid_secret(secret):
            self._log.warning("Cache key sidecar holds an invalid secret")
            return None
        return secret

    def create(self) -> bytes:
        """Generate, protect and persist a new secret."""
        secret = Fernet.generate_key()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)

        temp_file = self.key_path.with_suffix(".tmp")
        temp_file.write_bytes(self.protector.protect(secret))
        os.chmod(temp_file, 0o600)
        temp_file.replace(self.key_path)

        self._log.info("Generated new cache key")
        return secret

    def load_or_create(self, store_files: Iterable[Path]) -> bytes:
        """
        Return the store secret, regenerating it (and wiping the store) if
        the existing sidecar is unusable.
        """
        existed = self.key_path.exists()
        secret = self.load()
        if secret is not None:
            return secret

        if existed:
            self.discard(store_files)
        return self.create()

    def discard(self, store_files: Iterable[Path]) -> None:
        """Delete the key sidecar together with every store file it protects."""
        removed = remove_files([*store_files, self.key_path])
        self._log.warning(
            "Discarded unreadable cache and key",
            removed=[p.name for p in removed],
        )

"""
Secret protectors for the cache key sidecar.

A protector wraps the random store secret before it touches disk. Callers
may supply any object with ``protect``/``unprotect``; the two
implementations here use Fernet, either with a raw key or with a key
derived from a passphrase via PBKDF2-HMAC-SHA256.
"""

import base64
import os
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class UnprotectError(Exception):
    """Raised when protected data cannot be recovered."""
    pass


class Protector(Protocol):
    """Anything that can wrap and unwrap a small secret."""

    def protect(self, plaintext: bytes) -> bytes:
        ...

    def unprotect(self, ciphertext: bytes) -> bytes:
        ...


class FernetProtector:
    """
    Protector backed by a Fernet key.

    Example:
        protector = FernetProtector(Fernet.generate_key())
        blob = protector.protect(b"secret")
        assert protector.unprotect(blob) == b"secret"
    """

    def __init__(self, key: bytes | str):
        self._fernet = Fernet(key)

    def protect(self, plaintext: bytes) -> bytes:
        return self._fernet.encrypt(plaintext)

    def unprotect(self, ciphertext: bytes) -> bytes:
        try:
            return self._fernet.decrypt(ciphertext)
        except (InvalidToken, ValueError, TypeError) as e:
            raise UnprotectError("Protected data could not be decrypted") from e


class PassphraseProtector(FernetProtector):
    """
    Fernet protector whose key is derived from a passphrase and salt.

    Use :meth:`from_salt_file` to keep a per-installation salt next to the
    store; the salt is created on first use.
    """

    PBKDF2_ITERATIONS = 600000
    KEY_LENGTH = 32
    SALT_LENGTH = 16

    def __init__(self, passphrase: str, salt: bytes):
        if not passphrase:
            raise ValueError("Passphrase must be a non-empty string")
        if len(salt) < self.SALT_LENGTH:
            raise ValueError(f"Salt must be at least {self.SALT_LENGTH} bytes")
        super().__init__(self._derive_key(passphrase, salt))

    @classmethod
    def _derive_key(cls, passphrase: str, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=cls.KEY_LENGTH,
            salt=salt,
            iterations=cls.PBKDF2_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(passphrase.encode("utf-8")))

    @classmethod
    def from_salt_file(cls, passphrase: str, salt_path: str | Path) -> "PassphraseProtector":
        """Load the salt from ``salt_path``, creating it if missing."""
        salt_path = Path(salt_path)
        if salt_path.exists():
            salt = salt_path.read_bytes()
        else:
            salt_path.parent.mkdir(parents=True, exist_ok=True)
            salt = os.urandom(cls.SALT_LENGTH)
            salt_path.write_bytes(salt)
            os.chmod(salt_path, 0o600)
        return cls(passphrase, salt)

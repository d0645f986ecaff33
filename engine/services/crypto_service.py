"""Password-derived symmetric encryption for credentials and sync snapshots."""

from __future__ import annotations

import base64
import hashlib
import logging
import os
from enum import StrEnum

import bcrypt
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from engine.exceptions import LockedError

logger = logging.getLogger(__name__)

SALT_BYTES = 16
DEFAULT_ITERATIONS = 600_000
_SYNC_TOKEN_SUFFIX = ":sync-auth-token"
_SEAL_SEPARATOR = "$"


def generate_salt() -> str:
    """Return a fresh random salt as URL-safe base64 text."""
    return base64.urlsafe_b64encode(os.urandom(SALT_BYTES)).decode()


def _derive_key(password: str, salt: str, iterations: int) -> bytes:
    """Derive a Fernet key from a password and salt with PBKDF2-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt.encode(),
        iterations=iterations,
    )
    return base64.urlsafe_b64encode(kdf.derive(password.encode()))


def encrypt_value(plaintext: str, key: bytes) -> str:
    """Encrypt a string and return the ciphertext as a URL-safe string."""
    f = Fernet(key)
    return f.encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str, key: bytes) -> str:
    """Decrypt a ciphertext string. Raises ValueError on failure."""
    f = Fernet(key)
    try:
        return f.decrypt(ciphertext.encode()).decode()
    except (InvalidToken, UnicodeDecodeError) as exc:
        raise ValueError("Failed to decrypt data") from exc


def derive_sync_token(password: str) -> str:
    """Token sent to the sync server in place of the password."""
    return hashlib.sha256((password + _SYNC_TOKEN_SUFFIX).encode()).hexdigest()


def seal(salt: str, token: str) -> str:
    """Prefix a ciphertext with the salt its key was derived from."""
    return f"{salt}{_SEAL_SEPARATOR}{token}"


def unseal(data: str) -> tuple[str | None, str]:
    """Split sealed data into (salt, ciphertext). Unsalted data yields None."""
    salt, sep, token = data.partition(_SEAL_SEPARATOR)
    if not sep:
        return None, data
    return salt, token


def hash_password(password: str) -> str:
    """Hash the master password for offline verification."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


class VaultState(StrEnum):
    UNSET = "unset"
    UNLOCKED = "unlocked"
    LOCKED = "locked"


class Vault:
    """Holds the derived encryption key for the lifetime of an unlocked session.

    Lifecycle is unset -> unlocked -> locked (and back to unlocked on the next
    unlock). Every encrypt/decrypt while not unlocked raises LockedError.
    Key derivation is CPU bound; async callers run ``unlock`` in a thread.
    """

    def __init__(self, iterations: int = DEFAULT_ITERATIONS) -> None:
        self._iterations = iterations
        self._key: bytes | None = None
        self._salt: str | None = None
        self._state = VaultState.UNSET

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return self._state is VaultState.UNLOCKED

    @property
    def salt(self) -> str | None:
        return self._salt

    def unlock(self, password: str, salt: str) -> None:
        self._key = _derive_key(password, salt, self._iterations)
        self._salt = salt
        self._state = VaultState.UNLOCKED

    def lock(self) -> None:
        self._key = None
        if self._state is VaultState.UNLOCKED:
            self._state = VaultState.LOCKED

    def _require_key(self) -> bytes:
        if self._key is None or self._state is not VaultState.UNLOCKED:
            raise LockedError("Vault is locked")
        return self._key

    def encrypt(self, plaintext: str) -> str:
        return encrypt_value(plaintext, self._require_key())

    def decrypt(self, ciphertext: str) -> str:
        return decrypt_value(ciphertext, self._require_key())

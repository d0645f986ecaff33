"""Engine exception types.

Convention:
- ``NotFoundError`` subclasses for absent entities (account, saved addon, rule).
- ``LockedError`` when an operation needs the vault key and the vault is not
  unlocked. Callers check ``Vault.is_unlocked`` first when they can.
- ``BadCredentialError`` for a rejected auth gate, ``CorruptRemoteStateError``
  for a payload that passed the gate but cannot be decrypted or parsed.
- Bulk operations never raise per-account errors; they return a
  ``BulkResult`` listing successes and failures.
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all engine errors."""


class NotFoundError(EngineError):
    """Raised when a referenced entity does not exist."""


class AccountNotFoundError(NotFoundError):
    """Raised for an unknown local account id or an unknown remote sync id."""


class SavedAddonNotFoundError(NotFoundError):
    """Raised for an unknown library entry id."""


class RuleNotFoundError(NotFoundError):
    """Raised for an unknown failover rule id."""


class LockedError(EngineError):
    """Raised when the vault key is required but the vault is not unlocked."""


class BadCredentialError(EngineError):
    """Raised when the remote store rejects the sync token."""


class CorruptRemoteStateError(EngineError):
    """Raised when a remote payload is present but undecryptable or unparseable."""


class ProtectedError(EngineError):
    """Raised when a mutation targets an addon whose protection flag is set."""


class SerializationError(EngineError):
    """Raised when a snapshot serializes to a placeholder instead of structured data."""


class RemoteServiceError(EngineError):
    """Raised for transport or non-auth HTTP failures of a remote service."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

"""SyncCoordinator: encrypted snapshot pull/push with per-domain conflict resolution."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from engine.events import StateChanged
from engine.exceptions import (
    AccountNotFoundError,
    BadCredentialError,
    CorruptRemoteStateError,
    EngineError,
    LockedError,
    SerializationError,
)
from engine.schemas.snapshot import SyncSession, SyncSnapshot
from engine.services.crypto_service import (
    derive_sync_token,
    generate_salt,
    hash_password,
    seal,
    unseal,
    verify_password,
)
from engine.services.datetime_service import now_utc, parse_timestamp
from engine.services.import_service import ImportMode, parse_import
from engine.storage import StorageKey, is_corrupt

if TYPE_CHECKING:
    from datetime import datetime

    from engine.clients.sync_api import HttpSyncApi
    from engine.services.crypto_service import Vault
    from engine.storage import KeyValueStore
    from engine.stores.account_store import AccountStateStore
    from engine.stores.failover_engine import FailoverEngine
    from engine.stores.library_store import LibraryStore

logger = logging.getLogger(__name__)


class SyncState(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    PULLING = "pulling"
    IDLE = "idle"
    PUSHING = "pushing"


class Freshness(StrEnum):
    LOCAL_NEWER = "local-newer"
    EQUAL = "equal"
    REMOTE_NEWER = "remote-newer"


def compare_clocks(local: datetime | None, remote: datetime | None) -> Freshness:
    """Compare last-write clocks. A missing clock counts as the epoch."""
    local_ts = local.timestamp() if local else 0.0
    remote_ts = remote.timestamp() if remote else 0.0
    if local_ts > remote_ts:
        return Freshness.LOCAL_NEWER
    if local_ts < remote_ts:
        return Freshness.REMOTE_NEWER
    return Freshness.EQUAL


class SyncCoordinator:
    """Moves the composite snapshot between this device and the sync server.

    The derived sync token lives in memory only; the password itself is
    never stored. Automatic pushes are debounced through one owned timer and
    are refused until a pull has succeeded in this session.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        vault: Vault,
        api: HttpSyncApi,
        accounts: AccountStateStore,
        library: LibraryStore,
        failover: FailoverEngine,
        *,
        debounce_seconds: float = 1.5,
        anti_wipe_delay_seconds: float = 1.5,
        local_newer_delay_seconds: float = 2.0,
    ) -> None:
        self._storage = storage
        self._vault = vault
        self._api = api
        self._accounts = accounts
        self._library = library
        self._failover = failover
        self._debounce_seconds = debounce_seconds
        self._anti_wipe_delay = anti_wipe_delay_seconds
        self._local_newer_delay = local_newer_delay_seconds

        self._session: SyncSession | None = None
        self._token: str | None = None
        self._state = SyncState.UNAUTHENTICATED
        self._has_pulled = False
        self._timer: asyncio.TimerHandle | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._push_lock = asyncio.Lock()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def session(self) -> SyncSession | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and self._token is not None

    @property
    def has_pulled(self) -> bool:
        return self._has_pulled

    @property
    def push_pending(self) -> bool:
        return self._timer is not None

    def credentials(self) -> tuple[str, str] | None:
        """(sync_id, token) while authenticated, for the failover authority."""
        if self._session is None or self._token is None:
            return None
        return self._session.sync_id, self._token

    async def load(self) -> None:
        raw = await self._storage.get(StorageKey.SYNC_SESSION)
        if raw is None:
            return
        try:
            self._session = SyncSession.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding invalid sync session", exc_info=True)
            await self._storage.delete(StorageKey.SYNC_SESSION)

    async def _save_session(self) -> None:
        if self._session is not None:
            await self._storage.set(StorageKey.SYNC_SESSION, self._session.to_json_dict())

    # Local unlock

    async def _remember_password(self, password: str, salt: str) -> None:
        await self._storage.set(StorageKey.USER_SALT, salt)
        hashed = await asyncio.to_thread(hash_password, password)
        await self._storage.set(StorageKey.PASSWORD_HASH, hashed)

    async def _unlock_vault(self, password: str, salt: str) -> None:
        """Unlock under ``salt``, re-keying local credentials sealed under another salt."""
        if self._vault.is_unlocked and self._vault.salt == salt:
            return
        local_salt = await self._storage.get(StorageKey.USER_SALT)
        if (
            not self._vault.is_unlocked
            and self._accounts.accounts
            and isinstance(local_salt, str)
            and local_salt != salt
        ):
            await asyncio.to_thread(self._vault.unlock, password, local_salt)
        revealed = self._accounts.reveal_credentials() if self._vault.is_unlocked else {}

        await asyncio.to_thread(self._vault.unlock, password, salt)
        await self._remember_password(password, salt)
        if revealed:
            logger.info("Re-keying %d local accounts to the sync salt", len(revealed))
            await self._accounts.reseal_credentials(revealed)

    async def unlock(self, password: str) -> None:
        """Unlock the vault offline from the stored salt and password hash.

        The first unlock on a fresh device sets the master password.
        """
        salt = await self._storage.get(StorageKey.USER_SALT)
        hashed = await self._storage.get(StorageKey.PASSWORD_HASH)
        if not isinstance(salt, str) or not isinstance(hashed, str):
            salt = generate_salt()
            await asyncio.to_thread(self._vault.unlock, password, salt)
            await self._remember_password(password, salt)
            logger.info("Master password set")
            return
        if not await asyncio.to_thread(verify_password, password, hashed):
            raise BadCredentialError("Incorrect master password")
        await asyncio.to_thread(self._vault.unlock, password, salt)

    def lock(self) -> None:
        self._vault.lock()

    # Push scheduling

    def handle_state_changed(self, event: StateChanged) -> None:
        """Turn a local mutation into a debounced automatic push."""
        if self._state is SyncState.PULLING or not self.is_authenticated:
            return
        logger.debug("Local %s changed, scheduling push", event.domain)
        self.schedule_push()

    def schedule_push(self, delay: float | None = None) -> None:
        """(Re)arm the single push timer. A pending timer is superseded."""
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        wait = self._debounce_seconds if delay is None else delay
        self._timer = loop.call_later(wait, self._fire_push)

    def cancel_pending_push(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire_push(self) -> None:
        self._timer = None
        self._push_task = asyncio.get_running_loop().create_task(self._background_push())

    async def _background_push(self) -> None:
        try:
            await self.push(manual=False)
        except EngineError as exc:
            logger.warning("Background push failed: %s", exc)

    async def wait_idle(self) -> None:
        """Wait for an in-flight background push to finish."""
        if self._push_task is not None:
            await self._push_task

    # Push

    async def _collect_snapshot(self) -> dict[str, Any]:
        snapshot = SyncSnapshot(
            accounts=self._accounts.accounts,
            saved_addons=self._library.saved_addons,
            failover_rules=self._failover.rules,
            webhook=self._failover.webhook,
            salt=self._vault.salt,
            name=self._session.name if self._session else None,
            synced_at=now_utc(),
        )
        payload = snapshot.to_payload()
        profiles = await self._storage.get(StorageKey.PROFILES)
        payload["profiles"] = profiles if isinstance(profiles, list) else []
        return payload

    async def push(self, manual: bool = True) -> datetime | None:
        """Encrypt and store the full snapshot. Returns the server's clock.

        Manual pushes run immediately and supersede a pending automatic one.
        Automatic pushes are skipped until a pull has succeeded.
        """
        if manual:
            self.cancel_pending_push()
        if not self.is_authenticated:
            if manual:
                raise BadCredentialError("Not signed in to a sync account")
            return None
        if not manual and not self._has_pulled:
            logger.info("Skipping automatic push: no successful pull yet")
            return None
        credentials = self.credentials()
        if credentials is None:
            return None
        if not self._vault.is_unlocked or self._vault.salt is None:
            raise LockedError("Vault must be unlocked to push")
        sync_id, token = credentials

        async with self._push_lock:
            previous_state = self._state
            self._state = SyncState.PUSHING
            try:
                text = json.dumps(await self._collect_snapshot(), separators=(",", ":"))
                if is_corrupt(text):
                    raise SerializationError("Snapshot serialized to a placeholder")
                sealed = seal(self._vault.salt, self._vault.encrypt(text))
                raw_synced_at = await self._api.store_snapshot(
                    sync_id, token, {"data": sealed, "isEncrypted": True}
                )
                server_time = parse_timestamp(raw_synced_at)
                if server_time is None:
                    logger.warning("Sync server returned no syncedAt; using local clock")
                    server_time = now_utc()
                if self._session is not None:
                    self._session = self._session.model_copy(update={"last_synced_at": server_time})
                    await self._save_session()
                logger.info("Pushed snapshot for %s at %s", sync_id, server_time)
                return server_time
            finally:
                self._state = previous_state

    # Pull

    async def _decode(self, body: dict[str, Any], password: str | None) -> dict[str, Any]:
        """Turn the server body into a plaintext payload, unlocking on the way."""
        local_salt = await self._storage.get(StorageKey.USER_SALT)
        local_salt = local_salt if isinstance(local_salt, str) else None

        if body.get("isEncrypted"):
            data = body.get("data")
            if not isinstance(data, str) or not data or is_corrupt(data):
                raise CorruptRemoteStateError("Remote snapshot is empty or corrupted")
            salt, ciphertext = unseal(data)
            salt = salt or local_salt
            if salt is None:
                raise CorruptRemoteStateError("Remote snapshot carries no salt")
            if password is not None:
                await self._unlock_vault(password, salt)
            elif not self._vault.is_unlocked or self._vault.salt != salt:
                raise LockedError("Password required to decrypt the remote snapshot")
            try:
                text = self._vault.decrypt(ciphertext)
            except ValueError as exc:
                raise CorruptRemoteStateError("Failed to decrypt remote snapshot") from exc
            if not text.strip() or is_corrupt(text):
                raise CorruptRemoteStateError("Decrypted snapshot is empty or corrupted")
            try:
                payload = json.loads(text)
            except json.JSONDecodeError as exc:
                raise CorruptRemoteStateError("Decrypted snapshot is not valid JSON") from exc
        else:
            logger.info("Remote snapshot is a legacy plaintext payload")
            payload = {k: v for k, v in body.items() if k not in ("isEncrypted", "data")}
            if password is not None:
                salt = payload.get("salt") if isinstance(payload.get("salt"), str) else None
                await self._unlock_vault(password, salt or local_salt or generate_salt())

        if not isinstance(payload, dict):
            raise CorruptRemoteStateError("Remote snapshot is not an object")
        return payload

    def _resolve(
        self, domain: str, local_count: int, remote_count: int, freshness: Freshness
    ) -> tuple[ImportMode, float | None]:
        """Pick the import mode for one sub-domain and an optional push-back delay."""
        if remote_count == 0 and local_count > 0:
            logger.warning("Remote %s is empty, keeping local and pushing", domain)
            return ImportMode.MERGE, self._anti_wipe_delay
        if freshness is Freshness.LOCAL_NEWER:
            logger.info("Local %s is newer, merging and pushing", domain)
            return ImportMode.MERGE, self._local_newer_delay
        if freshness is Freshness.EQUAL:
            return ImportMode.MERGE, None
        return ImportMode.MIRROR, None

    async def pull(
        self, password: str | None = None, sync_id: str | None = None, manual: bool = True
    ) -> Freshness:
        """Fetch, decrypt and reconcile the remote snapshot.

        Without ``password`` the in-memory token and an unlocked vault are
        used. Background pulls (``manual=False``) log failures and return the
        equal verdict instead of raising.
        """
        try:
            return await self._pull(password, sync_id)
        except EngineError:
            if manual:
                raise
            logger.warning("Background pull failed", exc_info=True)
            return Freshness.EQUAL

    async def _pull(self, password: str | None, sync_id: str | None) -> Freshness:
        sync_id = sync_id or (self._session.sync_id if self._session else None)
        if not sync_id:
            raise AccountNotFoundError("No sync account configured")
        token = derive_sync_token(password) if password is not None else self._token
        if token is None:
            raise BadCredentialError("Password required")

        # Holding the push lock keeps a debounced push from snapshotting a
        # half-applied import.
        async with self._push_lock:
            previous_state = self._state
            self._state = SyncState.PULLING
            try:
                body = await self._api.fetch_snapshot(sync_id, token)
                payload = await self._decode(body, password)
                remote_time = parse_timestamp(body.get("syncedAt")) or parse_timestamp(
                    payload.get("syncedAt")
                )
                same_account = self._session is not None and self._session.sync_id == sync_id
                local_time = (
                    self._session.last_synced_at if same_account and self._session else None
                )
                freshness = compare_clocks(local_time, remote_time)
                delays = await self._apply(
                    payload, freshness, encrypted=bool(body.get("isEncrypted"))
                )
            finally:
                self._state = previous_state

            name = payload.get("name") if isinstance(payload.get("name"), str) else None
            self._session = SyncSession(
                sync_id=sync_id,
                name=name or (self._session.name if same_account and self._session else None),
                last_synced_at=remote_time or now_utc(),
            )
            self._token = token
            self._has_pulled = True
            self._state = SyncState.IDLE
            await self._save_session()
        logger.info("Pulled snapshot for %s (%s)", sync_id, freshness)

        if delays:
            self.schedule_push(max(delays))
        return freshness

    async def _apply(
        self, payload: dict[str, Any], freshness: Freshness, *, encrypted: bool
    ) -> list[float]:
        """Reconcile each sub-domain. Returns the requested push-back delays."""
        bundle = parse_import(payload, self._accounts.accounts)
        delays: list[float] = []

        remote_accounts = bundle.accounts or []
        mode, delay = self._resolve(
            "accounts", len(self._accounts.accounts), len(remote_accounts), freshness
        )
        await self._accounts.import_accounts(remote_accounts, mode, encrypted=encrypted)
        if delay is not None:
            delays.append(delay)

        remote_library = bundle.saved_addons or []
        mode, delay = self._resolve(
            "library", len(self._library.saved_addons), len(remote_library), freshness
        )
        await self._library.replace_all(remote_library, mode)
        if delay is not None:
            delays.append(delay)

        remote_rules = bundle.rules or []
        mode, delay = self._resolve(
            "failover", len(self._failover.rules), len(remote_rules), freshness
        )
        await self._failover.import_rules(remote_rules, bundle.webhook, mode)
        if delay is not None:
            delays.append(delay)

        if bundle.profiles is not None:
            await self._storage.set(StorageKey.PROFILES, bundle.profiles)
        return delays

    # Session lifecycle

    async def register(self, password: str, name: str | None = None) -> SyncSession:
        """Claim a new sync id and push the current state as its first snapshot."""
        stored_hash = await self._storage.get(StorageKey.PASSWORD_HASH)
        if self._vault.is_unlocked and self._vault.salt is not None:
            if isinstance(stored_hash, str) and not await asyncio.to_thread(
                verify_password, password, stored_hash
            ):
                raise BadCredentialError("Sync password must match the master password")
            salt = self._vault.salt
        else:
            stored_salt = await self._storage.get(StorageKey.USER_SALT)
            salt = stored_salt if isinstance(stored_salt, str) else generate_salt()
            await asyncio.to_thread(self._vault.unlock, password, salt)
        await self._remember_password(password, salt)

        self._session = SyncSession(sync_id=str(uuid.uuid4()), name=name)
        self._token = derive_sync_token(password)
        self._has_pulled = True
        self._state = SyncState.IDLE
        await self.push(manual=True)
        logger.info("Registered sync account %s", self._session.sync_id)
        return self._session

    async def logout(self) -> None:
        self.cancel_pending_push()
        self._session = None
        self._token = None
        self._has_pulled = False
        self._state = SyncState.UNAUTHENTICATED
        await self._storage.delete(StorageKey.SYNC_SESSION)
        self._vault.lock()
        logger.info("Signed out of sync")

    async def delete_remote_account(self) -> None:
        """Delete the remote snapshot, sign out and wipe local state."""
        credentials = self.credentials()
        if credentials is None:
            raise BadCredentialError("Not signed in to a sync account")
        sync_id, token = credentials
        await self._api.delete_snapshot(sync_id, token)
        await self.logout()
        self._accounts.reset()
        self._library.reset()
        self._failover.reset()
        await self._storage.clear()
        logger.info("Deleted sync account %s", sync_id)

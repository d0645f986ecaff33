"""AccountStateStore: accounts, their ordered addon lists, and remote consistency."""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Any, Literal

from pydantic import ValidationError

from engine.events import AccountRemoved, Domain, EventBus, ManualToggle, StateChanged
from engine.exceptions import (
    AccountNotFoundError,
    EngineError,
    NotFoundError,
    ProtectedError,
    RemoteServiceError,
)
from engine.schemas.addon import Account, AccountStatus, AddonMetadata, AddonRecord
from engine.schemas.library import BulkResult
from engine.services.addon_identity import is_broken_manifest, sanitize_manifest
from engine.services.datetime_service import now_utc
from engine.services.import_service import ImportMode, RawAccount
from engine.services.merge_service import merge_addon_lists, normalize_url
from engine.storage import StorageKey

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from engine.clients.addon_service import AddonService
    from engine.services.crypto_service import Vault
    from engine.services.manifest_cache import ManifestCache
    from engine.services.pending_removals import PendingRemovals
    from engine.storage import KeyValueStore

logger = logging.getLogger(__name__)


def _stamp(record: AddonRecord) -> AddonRecord:
    return record.model_copy(
        update={"metadata": record.metadata.model_copy(update={"last_updated": now_utc()})}
    )


class AccountStateStore:
    """Owns every account and keeps local lists consistent with the remote service.

    Mutations persist locally before returning and then publish
    ``StateChanged(accounts)``. Remote writes use ``AddonService.set_addons``;
    the service has no notion of reorder or remove, only set.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        vault: Vault,
        addon_service: AddonService,
        bus: EventBus,
        pending: PendingRemovals,
        manifest_cache: ManifestCache,
    ) -> None:
        self._storage = storage
        self._vault = vault
        self._service = addon_service
        self._bus = bus
        self._pending = pending
        self._manifest_cache = manifest_cache
        self._accounts: list[Account] = []

    @property
    def accounts(self) -> list[Account]:
        return list(self._accounts)

    async def load(self) -> None:
        raw = await self._storage.get(StorageKey.ACCOUNTS)
        accounts: list[Account] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                accounts.append(Account.model_validate(item))
            except ValidationError:
                logger.warning("Skipping invalid stored account", exc_info=True)
        self._accounts = accounts
        logger.debug("Loaded %d accounts", len(accounts))

    def reset(self) -> None:
        self._accounts = []
        self._pending.clear()

    def get_account(self, account_id: str) -> Account:
        for account in self._accounts:
            if account.id == account_id:
                return account
        raise AccountNotFoundError(f"Account {account_id} not found")

    def account_label(self, account_id: str) -> str:
        try:
            account = self.get_account(account_id)
        except AccountNotFoundError:
            return "Unknown"
        return account.email or account.name or account.id

    async def _persist(self) -> None:
        await self._storage.set(
            StorageKey.ACCOUNTS, [account.to_json_dict() for account in self._accounts]
        )
        await self._bus.publish(StateChanged(Domain.ACCOUNTS))

    def _replace(self, updated: Account) -> None:
        self._accounts = [updated if a.id == updated.id else a for a in self._accounts]

    def _auth_key(self, account: Account) -> str:
        return self._vault.decrypt(account.auth_key)

    def _locate(self, account: Account, url: str | None, index: int | None) -> list[int]:
        if index is not None:
            if not 0 <= index < len(account.addons):
                raise NotFoundError(f"No addon at index {index}")
            return [index]
        if url is None:
            raise ValueError("Either url or index is required")
        target = normalize_url(url)
        positions = [
            i
            for i, addon in enumerate(account.addons)
            if normalize_url(addon.transport_url) == target
        ]
        if not positions:
            raise NotFoundError(f"Addon {url} not found on account {account.id}")
        return positions

    def _without_pending(self, account_id: str, remote: list[AddonRecord]) -> list[AddonRecord]:
        return self._pending.filter(account_id, remote)

    # Account lifecycle

    def _is_duplicate_key(self, auth_key: str) -> bool:
        for account in self._accounts:
            try:
                if self._auth_key(account) == auth_key:
                    return True
            except ValueError:
                continue
        return False

    async def add_account_by_auth_key(self, auth_key: str, name: str | None = None) -> Account:
        if self._is_duplicate_key(auth_key):
            raise ValueError("An account with this auth key already exists")
        addons = await self._service.get_addons(auth_key)
        account = Account(
            id=str(uuid.uuid4()),
            name=name or f"Account {len(self._accounts) + 1}",
            auth_key=self._vault.encrypt(auth_key),
            addons=addons,
            last_sync=now_utc(),
        )
        self._accounts.append(account)
        await self._persist()
        logger.info("Added account %s", account.id)
        return account

    async def add_account_by_credentials(
        self, email: str, password: str, name: str | None = None
    ) -> Account:
        if any((a.email or "").lower() == email.lower() for a in self._accounts):
            raise ValueError(f"An account for {email} already exists")
        auth_key = await self._service.login(email, password)
        if self._is_duplicate_key(auth_key):
            raise ValueError("An account with this auth key already exists")
        addons = await self._service.get_addons(auth_key)
        account = Account(
            id=str(uuid.uuid4()),
            name=name or email,
            email=email,
            auth_key=self._vault.encrypt(auth_key),
            password=self._vault.encrypt(password),
            addons=addons,
            last_sync=now_utc(),
        )
        self._accounts.append(account)
        await self._persist()
        logger.info("Added account %s for %s", account.id, email)
        return account

    async def remove_account(self, account_id: str) -> None:
        self.get_account(account_id)
        await self._bus.publish(AccountRemoved(account_id))
        self._accounts = [a for a in self._accounts if a.id != account_id]
        await self._persist()
        logger.info("Removed account %s", account_id)

    async def update_account(
        self,
        account_id: str,
        name: str | None = None,
        auth_key: str | None = None,
        email: str | None = None,
        password: str | None = None,
    ) -> Account:
        """Rename an account, or re-key it from a new auth key or credentials."""
        account = self.get_account(account_id)
        update: dict[str, Any] = {}
        if name:
            update["name"] = name
        if not auth_key and email and password:
            auth_key = await self._service.login(email, password)
            update["email"] = email
            update["password"] = self._vault.encrypt(password)
        if auth_key:
            remote = await self._service.get_addons(auth_key)
            update["auth_key"] = self._vault.encrypt(auth_key)
            update["addons"] = merge_addon_lists(account.addons, remote)
            update["last_sync"] = now_utc()
            update["status"] = AccountStatus.ACTIVE
        updated = account.model_copy(update=update)
        self._replace(updated)
        await self._persist()
        return updated

    async def reorder_accounts(self, account_ids: list[str]) -> None:
        by_id = {a.id: a for a in self._accounts}
        ordered = [by_id.pop(i) for i in account_ids if i in by_id]
        self._accounts = ordered + [a for a in self._accounts if a.id in by_id]
        await self._persist()

    async def move_account(self, account_id: str, direction: Literal["up", "down"]) -> None:
        ids = [a.id for a in self._accounts]
        if account_id not in ids:
            raise AccountNotFoundError(f"Account {account_id} not found")
        index = ids.index(account_id)
        target = index - 1 if direction == "up" else index + 1
        if not 0 <= target < len(ids):
            return
        ids[index], ids[target] = ids[target], ids[index]
        await self.reorder_accounts(ids)

    # Remote reconciliation

    async def _repair_manifest(self, record: AddonRecord) -> AddonRecord:
        if not is_broken_manifest(record.manifest):
            return record
        manifest = self._manifest_cache.get(record.transport_url)
        if manifest is None:
            try:
                fetched = await self._service.fetch_manifest(record.transport_url)
            except RemoteServiceError as exc:
                logger.warning("Could not repair manifest for %s: %s", record.transport_url, exc)
                return record.model_copy(
                    update={"manifest": sanitize_manifest(record.transport_url, record.manifest)}
                )
            manifest = fetched.manifest
            self._manifest_cache.put(record.transport_url, manifest)
        return record.model_copy(update={"manifest": manifest.model_copy(deep=True)})

    async def sync_account(self, account_id: str, force_refresh: bool = False) -> Account:
        """Fetch the remote list and merge it in.

        With ``force_refresh`` broken manifests are re-derived and the result
        is written back to the remote service. On failure the account is
        marked ``error`` locally and the error propagates.
        """
        account = self.get_account(account_id)
        try:
            auth_key = self._auth_key(account)
            remote = self._without_pending(account_id, await self._service.get_addons(auth_key))
            merged = merge_addon_lists(account.addons, remote)
            if force_refresh:
                merged = [await self._repair_manifest(record) for record in merged]
                await self._service.set_addons(auth_key, merged)
        except EngineError:
            self._replace(account.model_copy(update={"status": AccountStatus.ERROR}))
            await self._persist()
            raise

        # A concurrent mutation may have replaced the account while we awaited.
        current = self.get_account(account_id)
        if current is not account:
            merged = merge_addon_lists(current.addons, remote)
        updated = current.model_copy(
            update={"addons": merged, "last_sync": now_utc(), "status": AccountStatus.ACTIVE}
        )
        self._replace(updated)
        await self._persist()
        return updated

    async def sync_all_accounts(self, force_refresh: bool = False) -> BulkResult:
        result = BulkResult()
        for account in list(self._accounts):
            try:
                await self.sync_account(account.id, force_refresh)
            except EngineError as exc:
                logger.warning("Sync failed for account %s: %s", account.id, exc)
                result.record_failure(account.id, str(exc))
            else:
                result.record_success(account.id)
        return result

    async def _commit_addons(
        self, account: Account, addons: list[AddonRecord], *, push: bool
    ) -> Account:
        """Persist a new list for ``account`` and optionally set it remotely.

        The local write happens first; a remote failure leaves it committed.
        """
        updated = account.model_copy(update={"addons": addons})
        self._replace(updated)
        await self._persist()
        if push:
            await self._service.set_addons(self._auth_key(updated), addons)
        return updated

    async def replace_addons(self, account_id: str, addons: list[AddonRecord]) -> Account:
        """Set an account's list remotely, then locally. Used by bulk operations."""
        account = self.get_account(account_id)
        await self._service.set_addons(self._auth_key(account), addons)
        updated = account.model_copy(update={"addons": addons, "last_sync": now_utc()})
        self._replace(updated)
        await self._persist()
        return updated

    async def push_addons(self, account_id: str) -> None:
        """Write the account's current local list to the remote service."""
        account = self.get_account(account_id)
        await self._service.set_addons(self._auth_key(account), account.addons)

    # Addon mutations

    async def install(self, account_id: str, url: str) -> AddonRecord:
        account = self.get_account(account_id)
        auth_key = self._auth_key(account)
        fresh = await self._service.fetch_manifest(url)
        remote = self._without_pending(account_id, await self._service.get_addons(auth_key))
        target = normalize_url(url)
        if not any(normalize_url(r.transport_url) == target for r in remote):
            remote.append(fresh)

        merged = merge_addon_lists(account.addons, remote)
        installed: AddonRecord | None = None
        for i, record in enumerate(merged):
            if normalize_url(record.transport_url) == target:
                if installed is None:
                    record = record.model_copy(update={"manifest": fresh.manifest})
                merged[i] = _stamp(record)
                installed = installed or merged[i]
        await self._service.set_addons(auth_key, merged)

        current = self.get_account(account_id)
        self._replace(current.model_copy(update={"addons": merged, "last_sync": now_utc()}))
        await self._persist()
        logger.info("Installed %s on account %s", url, account_id)
        if installed is None:
            raise NotFoundError(f"Addon {url} missing after install")
        return installed

    async def remove(
        self, account_id: str, url: str | None = None, index: int | None = None
    ) -> None:
        """Remove by URL (every equivalent entry) or by list index.

        The URL stays marked as pending removal until a grace window after
        completion so a stale in-flight fetch cannot revive it.
        """
        account = self.get_account(account_id)
        positions = self._locate(account, url, index)
        targets = [account.addons[i] for i in positions]
        for target in targets:
            if target.flags.protected:
                raise ProtectedError(
                    f'Addon "{target.manifest.name or target.transport_url}" is protected'
                )

        transport_url = targets[0].transport_url
        target = normalize_url(transport_url)
        remaining = [a for i, a in enumerate(account.addons) if i not in positions]
        survivors = sum(1 for a in remaining if normalize_url(a.transport_url) == target)
        self._pending.mark(account_id, transport_url, remaining=survivors)
        try:
            await self._service.set_addons(self._auth_key(account), remaining)
            current = self.get_account(account_id)
            if current is not account:
                remaining = self._pending.filter(
                    account_id, current.addons, keep=lambda a: a.flags.protected
                )
            self._replace(current.model_copy(update={"addons": remaining, "last_sync": now_utc()}))
            await self._persist()
        finally:
            self._pending.release_later(account_id, transport_url)
        logger.info("Removed %s from account %s", transport_url, account_id)

    async def reorder(self, account_id: str, new_order: list[AddonRecord]) -> Account:
        account = self.get_account(account_id)
        old_urls = [normalize_url(a.transport_url) for a in account.addons]
        stamped = [
            _stamp(record)
            if i >= len(old_urls) or normalize_url(record.transport_url) != old_urls[i]
            else record
            for i, record in enumerate(new_order)
        ]
        await self._service.set_addons(self._auth_key(account), stamped)
        updated = account.model_copy(update={"addons": stamped, "last_sync": now_utc()})
        self._replace(updated)
        await self._persist()
        return updated

    async def toggle_enabled(
        self,
        account_id: str,
        url: str,
        enabled: bool,
        *,
        silent: bool = False,
        is_autopilot: bool = False,
        index: int | None = None,
    ) -> None:
        """Flip ``flags.enabled``.

        ``silent`` skips the remote write. A toggle that is not from autopilot
        publishes ``ManualToggle`` so automation on that addon stands down.
        The failover engine itself goes through ``apply_enabled_flags``, which
        sets a whole chain in one write and never publishes.
        """
        account = self.get_account(account_id)
        positions = set(self._locate(account, url, index))
        addons = [
            _stamp(a.model_copy(update={"flags": a.flags.model_copy(update={"enabled": enabled})}))
            if i in positions
            else a
            for i, a in enumerate(account.addons)
        ]
        await self._commit_addons(account, addons, push=not silent)
        if not is_autopilot:
            await self._bus.publish(ManualToggle(account_id, url))

    async def toggle_protected(
        self,
        account_id: str,
        url: str,
        is_protected: bool,
        *,
        silent: bool = False,
        index: int | None = None,
    ) -> None:
        account = self.get_account(account_id)
        positions = set(self._locate(account, url, index))
        addons = [
            a.model_copy(update={"flags": a.flags.model_copy(update={"protected": is_protected})})
            if i in positions
            else a
            for i, a in enumerate(account.addons)
        ]
        await self._commit_addons(account, addons, push=not silent)

    async def apply_enabled_flags(self, account_id: str, assignment: Mapping[str, bool]) -> bool:
        """Apply an autopilot flag assignment with a single remote write.

        This is the autopilot path for both local and server decisions: the
        chain-wide form of ``toggle_enabled(..., is_autopilot=True)``. The write
        is never silent because the server authority holds no addon-service
        credentials. Returns True when any flag changed.
        """
        account = self.get_account(account_id)
        wanted = {normalize_url(url): enabled for url, enabled in assignment.items()}
        changed = False
        addons: list[AddonRecord] = []
        for addon in account.addons:
            enabled = wanted.get(normalize_url(addon.transport_url))
            if enabled is None or addon.flags.enabled == enabled:
                addons.append(addon)
                continue
            changed = True
            flags = addon.flags.model_copy(update={"enabled": enabled})
            addons.append(_stamp(addon.model_copy(update={"flags": flags})))
        if changed:
            await self._commit_addons(account, addons, push=True)
        return changed

    async def update_addon_settings(
        self,
        account_id: str,
        url: str,
        metadata: Mapping[str, Any] | None = None,
        catalog_overrides: dict[str, Any] | None = None,
        index: int | None = None,
    ) -> None:
        """Set local overrides. A ``None`` value in ``metadata`` clears that field."""
        account = self.get_account(account_id)
        positions = set(self._locate(account, url, index))
        addons: list[AddonRecord] = []
        for i, addon in enumerate(account.addons):
            if i not in positions:
                addons.append(addon)
                continue
            fields = addon.metadata.model_dump()
            if metadata:
                for key, value in metadata.items():
                    name = key if key in AddonMetadata.model_fields else _snake_field(key)
                    if name in AddonMetadata.model_fields:
                        fields[name] = value
            if catalog_overrides is not None:
                fields["catalog_overrides"] = catalog_overrides
            fields["last_updated"] = now_utc()
            addons.append(addon.model_copy(update={"metadata": AddonMetadata(**fields)}))
        await self._commit_addons(account, addons, push=True)

    async def bulk_protect(self, account_id: str, is_protected: bool) -> None:
        account = self.get_account(account_id)
        addons = [
            a.model_copy(update={"flags": a.flags.model_copy(update={"protected": is_protected})})
            for a in account.addons
        ]
        await self._commit_addons(account, addons, push=False)

    async def remove_local_addons(self, account_id: str, urls: Iterable[str]) -> int:
        """Drop entries from the local list only. Returns how many were removed."""
        account = self.get_account(account_id)
        targets = {normalize_url(url) for url in urls}
        addons = [a for a in account.addons if normalize_url(a.transport_url) not in targets]
        removed = len(account.addons) - len(addons)
        if removed:
            await self._commit_addons(account, addons, push=False)
        return removed

    async def replace_transport_url(self, account_id: str, old_url: str, new_url: str) -> None:
        """Point an entry at a new URL, keeping its local flags and metadata."""
        account = self.get_account(account_id)
        positions = set(self._locate(account, old_url, None))
        fresh = await self._service.fetch_manifest(new_url)
        addons = [
            _stamp(a.model_copy(update={"transport_url": new_url, "manifest": fresh.manifest}))
            if i in positions
            else a
            for i, a in enumerate(account.addons)
        ]
        await self._service.set_addons(self._auth_key(account), addons)
        await self._commit_addons(account, addons, push=False)

    # Import / export

    def _plain_key(self, value: str, encrypted: bool) -> str | None:
        if not value:
            return None
        if not encrypted:
            return value
        try:
            return self._vault.decrypt(value)
        except ValueError:
            return None

    def _sealed(self, value: str, encrypted: bool) -> str:
        return value if encrypted else self._vault.encrypt(value)

    async def import_accounts(
        self,
        incoming: list[RawAccount],
        mode: ImportMode = ImportMode.MERGE,
        *,
        encrypted: bool = False,
    ) -> int:
        """Reconcile imported accounts with local ones.

        Matching tries id, then decrypted auth key, then lowercase email.
        ``encrypted`` says credentials are already vault ciphertext (sync
        snapshots) rather than plaintext (export files). ``mirror`` keeps only
        the reconciled accounts; ``merge`` also keeps unmatched local ones.
        Returns the number of reconciled accounts.
        """
        current = list(self._accounts)
        local_keys: dict[str, str] = {}
        for account in current:
            key = self._plain_key(account.auth_key, encrypted=True)
            if key is not None:
                local_keys[key] = account.id

        reconciled: list[Account] = []
        matched_ids: set[str] = set()
        for raw in incoming:
            match = next((a for a in current if a.id == raw.id), None)
            plain_key = self._plain_key(raw.auth_key, encrypted)
            if match is None and plain_key is not None and plain_key in local_keys:
                match = next(a for a in current if a.id == local_keys[plain_key])
            if match is None and raw.email:
                match = next(
                    (a for a in current if (a.email or "").lower() == raw.email.lower()), None
                )

            if match is not None:
                matched_ids.add(match.id)
                reconciled.append(
                    match.model_copy(
                        update={
                            "name": raw.name or match.name,
                            "auth_key": self._sealed(raw.auth_key, encrypted)
                            if raw.auth_key
                            else match.auth_key,
                            "addons": merge_addon_lists(
                                match.addons, raw.addons, prefer_newer_policy=encrypted
                            ),
                            "last_sync": now_utc(),
                            "status": AccountStatus.ACTIVE,
                        }
                    )
                )
            elif raw.auth_key:
                reconciled.append(
                    Account(
                        id=raw.id,
                        name=raw.name,
                        email=raw.email,
                        auth_key=self._sealed(raw.auth_key, encrypted),
                        password=self._sealed(raw.password, encrypted) if raw.password else None,
                        addons=raw.addons,
                        last_sync=now_utc(),
                    )
                )
            else:
                logger.warning("Skipping imported account %s: no auth key", raw.id)

        if mode is ImportMode.MIRROR:
            self._accounts = reconciled
        else:
            self._accounts = [a for a in current if a.id not in matched_ids] + reconciled
        await self._persist()
        logger.info("Imported %d accounts (%s)", len(reconciled), mode)
        return len(reconciled)

    def export_accounts(self, include_credentials: bool = False) -> list[dict[str, Any]]:
        """Account entries for ``build_export``; credentials decrypted on request."""
        exported: list[dict[str, Any]] = []
        for account in self._accounts:
            entry: dict[str, Any] = {
                "id": account.id,
                "name": account.name,
                "email": account.email,
                "addons": account.addons,
            }
            if include_credentials:
                entry["authKey"] = self._auth_key(account)
                if account.password:
                    entry["password"] = self._vault.decrypt(account.password)
            exported.append(entry)
        return exported

    def reveal_credentials(self) -> dict[str, tuple[str, str | None]]:
        """Plaintext credentials per account id, for re-keying the vault."""
        revealed: dict[str, tuple[str, str | None]] = {}
        for account in self._accounts:
            try:
                password = self._vault.decrypt(account.password) if account.password else None
                revealed[account.id] = (self._auth_key(account), password)
            except ValueError:
                logger.warning("Credentials of account %s do not decrypt, leaving them", account.id)
        return revealed

    async def reseal_credentials(self, revealed: Mapping[str, tuple[str, str | None]]) -> None:
        """Encrypt revealed credentials under the current vault key and persist."""
        if not revealed:
            return
        resealed: list[Account] = []
        for account in self._accounts:
            if account.id not in revealed:
                resealed.append(account)
                continue
            auth_key, password = revealed[account.id]
            resealed.append(
                account.model_copy(
                    update={
                        "auth_key": self._vault.encrypt(auth_key),
                        "password": self._vault.encrypt(password) if password else None,
                    }
                )
            )
        self._accounts = resealed
        await self._persist()


def _snake_field(key: str) -> str:
    """Accept ``customName`` as well as ``custom_name``."""
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in key)


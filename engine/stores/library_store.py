"""LibraryStore: saved addon templates, tags, bulk application and health."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from engine.events import Domain, EventBus, StateChanged
from engine.exceptions import EngineError, RemoteServiceError, SavedAddonNotFoundError
from engine.schemas.addon import AddonManifest, AddonRecord
from engine.schemas.library import (
    BulkResult,
    MergeResult,
    SavedAddon,
    SavedAddonHealth,
    SourceType,
)
from engine.schemas.snapshot import LIBRARY_FORMAT_VERSION
from engine.services.datetime_service import format_iso, now_utc
from engine.services.import_service import (
    LIBRARY_PARSERS,
    ImportMode,
    coerce_saved_addons,
    first_match,
)
from engine.services.merge_service import normalize_url, plan_library_merge, remove_by_manifest_ids
from engine.storage import StorageKey

if TYPE_CHECKING:
    from collections.abc import Iterable

    from engine.clients.addon_service import AddonService
    from engine.services.health_service import HealthProbe
    from engine.storage import KeyValueStore
    from engine.stores.account_store import AccountStateStore

logger = logging.getLogger(__name__)


def normalize_tag(tag: str) -> str:
    """Collapse whitespace and lowercase so near-duplicate tags compare equal."""
    return " ".join(tag.split()).lower()


def _clean_tags(tags: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        cleaned = normalize_tag(tag)
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


class LibraryStore:
    """Saved addon templates, kept independent of any single account.

    Bulk operations fan out over accounts through the AccountStateStore and
    record per-account failures in a ``BulkResult`` instead of raising.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        accounts: AccountStateStore,
        addon_service: AddonService,
        probe: HealthProbe,
        bus: EventBus,
        *,
        health_batch_size: int = 5,
        health_cooldown_seconds: float = 180,
    ) -> None:
        self._storage = storage
        self._accounts = accounts
        self._service = addon_service
        self._probe = probe
        self._bus = bus
        self._health_batch_size = health_batch_size
        self._health_cooldown_seconds = health_cooldown_seconds
        self._library: dict[str, SavedAddon] = {}
        self._checking_health = False
        self._last_health_check: float | None = None

    @property
    def saved_addons(self) -> list[SavedAddon]:
        return list(self._library.values())

    async def load(self) -> None:
        raw = await self._storage.get(StorageKey.SAVED_ADDONS)
        library: dict[str, SavedAddon] = {}
        items = raw.values() if isinstance(raw, dict) else raw if isinstance(raw, list) else []
        for item in items:
            try:
                saved = SavedAddon.model_validate(item)
            except ValidationError:
                logger.warning("Skipping invalid stored saved addon", exc_info=True)
                continue
            library[saved.id] = saved
        self._library = library
        logger.debug("Loaded %d saved addons", len(library))

    def reset(self) -> None:
        self._library = {}
        self._last_health_check = None

    async def _persist(self) -> None:
        await self._storage.set(
            StorageKey.SAVED_ADDONS, [saved.to_json_dict() for saved in self._library.values()]
        )
        await self._bus.publish(StateChanged(Domain.LIBRARY))

    def get(self, saved_id: str) -> SavedAddon:
        try:
            return self._library[saved_id]
        except KeyError:
            raise SavedAddonNotFoundError(f"Saved addon {saved_id} not found") from None

    # CRUD

    async def create_saved_addon(
        self,
        name: str,
        install_url: str,
        tags: Iterable[str] = (),
        manifest: AddonManifest | None = None,
        profile_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> SavedAddon:
        if manifest is None:
            manifest = (await self._service.fetch_manifest(install_url)).manifest
        now = now_utc()
        saved = SavedAddon(
            id=str(uuid.uuid4()),
            name=name.strip() or manifest.name,
            install_url=install_url,
            manifest=manifest,
            tags=_clean_tags(tags),
            profile_id=profile_id,
            created_at=now,
            updated_at=now,
            metadata=metadata,
        )
        self._library[saved.id] = saved
        await self._persist()
        logger.info("Saved addon %s (%s)", saved.name, saved.id)
        return saved

    async def create_from_account(
        self, account_id: str, urls: Iterable[str], tags: Iterable[str] = ()
    ) -> list[SavedAddon]:
        """Save addons installed on an account, keeping their display overrides."""
        account = self._accounts.get_account(account_id)
        wanted = {normalize_url(url) for url in urls}
        now = now_utc()
        created: list[SavedAddon] = []
        for addon in account.addons:
            if normalize_url(addon.transport_url) not in wanted:
                continue
            overrides = addon.metadata.to_json_dict()
            overrides.pop("lastUpdated", None)
            saved = SavedAddon(
                id=str(uuid.uuid4()),
                name=addon.metadata.custom_name or addon.manifest.name,
                install_url=addon.transport_url,
                manifest=addon.manifest.model_copy(deep=True),
                tags=_clean_tags(tags),
                created_at=now,
                updated_at=now,
                source_type=SourceType.CLONED_FROM_ACCOUNT,
                source_account_id=account_id,
                metadata=overrides or None,
            )
            self._library[saved.id] = saved
            created.append(saved)
        if created:
            await self._persist()
        return created

    async def update_saved_addon(
        self,
        saved_id: str,
        name: str | None = None,
        tags: Iterable[str] | None = None,
        install_url: str | None = None,
        profile_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        refresh_manifest: bool = False,
    ) -> SavedAddon:
        saved = self.get(saved_id)
        update: dict[str, Any] = {"updated_at": now_utc()}
        if name is not None:
            update["name"] = name.strip() or saved.name
        if tags is not None:
            update["tags"] = _clean_tags(tags)
        if install_url is not None:
            update["install_url"] = install_url
        if profile_id is not None:
            update["profile_id"] = profile_id or None
        if metadata is not None:
            update["metadata"] = metadata or None
        if refresh_manifest or install_url is not None:
            fetched = await self._service.fetch_manifest(install_url or saved.install_url)
            update["manifest"] = fetched.manifest
        updated = saved.model_copy(update=update)
        self._library[saved_id] = updated
        await self._persist()
        return updated

    async def delete_saved_addon(self, saved_id: str) -> None:
        self.get(saved_id)
        del self._library[saved_id]
        await self._persist()

    async def mark_used(self, saved_id: str) -> None:
        saved = self.get(saved_id)
        self._library[saved_id] = saved.model_copy(update={"last_used": now_utc()})
        await self._persist()

    # Tags

    def get_by_tag(self, tag: str) -> list[SavedAddon]:
        wanted = normalize_tag(tag)
        return [s for s in self._library.values() if wanted in (normalize_tag(t) for t in s.tags)]

    def all_tags(self) -> list[str]:
        return sorted({normalize_tag(t) for s in self._library.values() for t in s.tags} - {""})

    async def rename_tag(self, old: str, new: str) -> int:
        """Rename a tag everywhere. Returns the number of saved addons touched."""
        target = normalize_tag(new)
        if not target:
            raise ValueError("Tag name cannot be empty")
        source = normalize_tag(old)
        touched = 0
        now = now_utc()
        for saved_id, saved in list(self._library.items()):
            if source not in (normalize_tag(t) for t in saved.tags):
                continue
            tags = _clean_tags(target if normalize_tag(t) == source else t for t in saved.tags)
            self._library[saved_id] = saved.model_copy(update={"tags": tags, "updated_at": now})
            touched += 1
        if touched:
            await self._persist()
        return touched

    # Bulk operations

    async def _fetch_manifests(
        self, templates: list[SavedAddon]
    ) -> dict[str, AddonManifest | None]:
        async def fetch(template: SavedAddon) -> AddonManifest | None:
            try:
                return (await self._service.fetch_manifest(template.install_url)).manifest
            except RemoteServiceError as exc:
                logger.warning("Manifest fetch failed for %s: %s", template.install_url, exc)
                return None

        results = await asyncio.gather(*(fetch(t) for t in templates))
        return {t.id: manifest for t, manifest in zip(templates, results, strict=True)}

    async def _apply_templates(
        self, templates: list[SavedAddon], account_ids: Iterable[str]
    ) -> BulkResult:
        manifests = await self._fetch_manifests(templates)
        result = BulkResult()
        for account_id in account_ids:
            try:
                account = self._accounts.get_account(account_id)
                addons, merge_result = plan_library_merge(account.addons, templates, manifests)
                await self._accounts.replace_addons(account_id, addons)
            except EngineError as exc:
                logger.warning("Bulk apply failed for account %s: %s", account_id, exc)
                result.record_failure(account_id, str(exc))
            else:
                result.record_success(account_id, merge_result)
        return result

    async def bulk_apply(self, saved_ids: Iterable[str], account_ids: Iterable[str]) -> BulkResult:
        templates = [self._library[i] for i in saved_ids if i in self._library]
        if not templates:
            raise SavedAddonNotFoundError("No valid saved addons found")
        result = await self._apply_templates(templates, account_ids)
        now = now_utc()
        for template in templates:
            self._library[template.id] = template.model_copy(update={"last_used": now})
        await self._persist()
        return result

    async def bulk_apply_tag(self, tag: str, account_ids: Iterable[str]) -> BulkResult:
        templates = self.get_by_tag(tag)
        if not templates:
            raise SavedAddonNotFoundError(f"No saved addons found with tag: {tag}")
        return await self.bulk_apply([t.id for t in templates], account_ids)

    async def bulk_remove(
        self, manifest_ids: Iterable[str], account_ids: Iterable[str]
    ) -> BulkResult:
        """Remove addons by manifest id from many accounts. Protected ones stay.

        Removed manifest ids are reported under ``updated`` in each detail.
        """
        ids = list(manifest_ids)
        result = BulkResult()
        for account_id in account_ids:
            try:
                account = self._accounts.get_account(account_id)
                kept, removed, protected = remove_by_manifest_ids(account.addons, ids)
                if removed:
                    await self._accounts.replace_addons(account_id, kept)
            except EngineError as exc:
                logger.warning("Bulk remove failed for account %s: %s", account_id, exc)
                result.record_failure(account_id, str(exc))
            else:
                result.record_success(
                    account_id, MergeResult(updated=removed, protected=protected)
                )
        return result

    async def bulk_remove_by_tag(self, tag: str, account_ids: Iterable[str]) -> BulkResult:
        templates = self.get_by_tag(tag)
        if not templates:
            raise SavedAddonNotFoundError(f"No saved addons found with tag: {tag}")
        return await self.bulk_remove([t.manifest.id for t in templates], account_ids)

    async def bulk_install_from_urls(
        self, urls: Iterable[str], account_ids: Iterable[str]
    ) -> BulkResult:
        """Install raw URLs as ad-hoc templates; nothing is saved to the library."""
        now = now_utc()
        templates = [
            SavedAddon(
                id=str(uuid.uuid4()), name=url, install_url=url, created_at=now, updated_at=now
            )
            for url in dict.fromkeys(u.strip() for u in urls)
            if url
        ]
        return await self._apply_templates(templates, account_ids)

    async def bulk_clone_account(
        self, source_id: str, target_ids: Iterable[str], overwrite: bool = False
    ) -> BulkResult:
        """Copy the source account's list, flags included, onto each target.

        Append mode keeps the target's entries and adds missing URLs.
        Overwrite mode mirrors the source exactly.
        """
        source = self._accounts.get_account(source_id)
        result = BulkResult()
        for target_id in target_ids:
            if target_id == source_id:
                continue
            try:
                target = self._accounts.get_account(target_id)
                addons: list[AddonRecord] = [] if overwrite else list(target.addons)
                existing = {normalize_url(a.transport_url) for a in addons}
                added: list[str] = []
                for addon in source.addons:
                    key = normalize_url(addon.transport_url)
                    if key in existing:
                        continue
                    addons.append(addon.model_copy(deep=True))
                    existing.add(key)
                    added.append(addon.manifest.id or addon.transport_url)
                await self._accounts.replace_addons(target_id, addons)
            except EngineError as exc:
                logger.warning("Clone onto account %s failed: %s", target_id, exc)
                result.record_failure(target_id, str(exc))
            else:
                result.record_success(target_id, MergeResult(added=added))
        return result

    # Import / export

    def export_library(self) -> dict[str, Any]:
        return {
            "version": LIBRARY_FORMAT_VERSION,
            "exportedAt": format_iso(now_utc()),
            "savedAddons": [saved.to_json_dict() for saved in self._library.values()],
        }

    async def import_library(self, data: Any, merge: bool = True) -> int:
        """Import saved addons from any recognized shape. Returns the count imported."""
        items = first_match(LIBRARY_PARSERS, data)
        if items is None:
            logger.warning("No saved addons found in import data")
            return 0
        manifests = data.get("manifests") if isinstance(data, dict) else None
        imported = coerce_saved_addons(items, manifests if isinstance(manifests, dict) else {})
        await self.replace_all(imported, ImportMode.MERGE if merge else ImportMode.MIRROR)
        return len(imported)

    async def replace_all(self, saved: list[SavedAddon], mode: ImportMode) -> None:
        """Merge by id or replace the library wholesale, then persist."""
        library = dict(self._library) if mode is ImportMode.MERGE else {}
        for item in saved:
            library[item.id] = item
        self._library = library
        await self._persist()
        logger.info("Library now holds %d saved addons (%s)", len(library), mode)

    # Health

    async def check_all_health(self, force: bool = False) -> dict[str, bool]:
        """Probe every install URL in batches. Returns saved id -> online.

        Skipped (empty result) while a check is running or within the
        cooldown after the last one, unless ``force``.
        """
        if self._checking_health:
            return {}
        now = now_utc().timestamp()
        if (
            not force
            and self._last_health_check is not None
            and now - self._last_health_check < self._health_cooldown_seconds
        ):
            logger.debug("Skipping health check: cooldown active")
            return {}

        self._checking_health = True
        try:
            saved = list(self._library.values())
            statuses: dict[str, bool] = {}
            for start in range(0, len(saved), self._health_batch_size):
                batch = saved[start : start + self._health_batch_size]
                results = await asyncio.gather(*(self._probe.check(s.install_url) for s in batch))
                statuses.update({s.id: ok for s, ok in zip(batch, results, strict=True)})

            checked_at = now_utc()
            for saved_id, online in statuses.items():
                if saved_id in self._library:
                    self._library[saved_id] = self._library[saved_id].model_copy(
                        update={
                            "health": SavedAddonHealth(is_online=online, last_checked=checked_at)
                        }
                    )
            self._last_health_check = checked_at.timestamp()
            if statuses:
                await self._persist()
            return statuses
        finally:
            self._checking_health = False

"""Engine assembly: builds every component and wires the event bus."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx

from engine.clients.addon_service import HttpAddonService
from engine.clients.sync_api import HttpSyncApi, SyncServerAuthority
from engine.events import AccountRemoved, EventBus, ManualToggle, StateChanged
from engine.services.crypto_service import Vault
from engine.services.health_service import HttpHealthProbe
from engine.services.import_service import ImportMode, build_export, parse_import
from engine.services.manifest_cache import ManifestCache
from engine.services.pending_removals import PendingRemovals
from engine.services.webhook_service import WebhookNotifier
from engine.storage import KeyValueStore, StorageKey
from engine.stores.account_store import AccountStateStore
from engine.stores.failover_engine import FailoverEngine
from engine.stores.library_store import LibraryStore
from engine.stores.sync_coordinator import SyncCoordinator

if TYPE_CHECKING:
    from engine.clients.addon_service import AddonService
    from engine.config import EngineSettings
    from engine.services.health_service import HealthProbe

logger = logging.getLogger(__name__)


@dataclass
class ImportSummary:
    accounts: int = 0
    saved_addons: int = 0
    rules: int = 0
    profiles: int = 0


@dataclass
class Engine:
    """Process-wide engine components, owned by whoever called ``build_engine``."""

    settings: EngineSettings
    storage: KeyValueStore
    vault: Vault
    bus: EventBus
    accounts: AccountStateStore
    library: LibraryStore
    failover: FailoverEngine
    sync: SyncCoordinator
    pending: PendingRemovals
    http_client: httpx.AsyncClient | None = None
    _owns_client: bool = field(default=False, repr=False)

    async def load(self) -> None:
        """Load every store from local storage. Accounts first: rules migrate against them."""
        await self.accounts.load()
        await self.library.load()
        await self.failover.load()
        await self.sync.load()

    async def close(self) -> None:
        await self.failover.stop()
        self.sync.cancel_pending_push()
        await self.sync.wait_idle()
        self.pending.clear()
        if self._owns_client and self.http_client is not None:
            await self.http_client.aclose()
        await self.storage.close()

    async def export_file(self, include_credentials: bool = False) -> dict[str, Any]:
        profiles = await self.storage.get(StorageKey.PROFILES)
        session = self.sync.session
        return build_export(
            self.accounts.export_accounts(include_credentials),
            self.library.saved_addons,
            self.failover.rules,
            self.failover.webhook,
            profiles if isinstance(profiles, list) else [],
            name=session.name if session else None,
        )

    async def import_file(self, data: Any, mode: ImportMode = ImportMode.MERGE) -> ImportSummary:
        """Apply every recognized section of an export document.

        Sections missing from ``data`` leave the matching local state alone.
        """
        bundle = parse_import(data, self.accounts.accounts)
        summary = ImportSummary()
        if bundle.accounts is not None:
            summary.accounts = await self.accounts.import_accounts(bundle.accounts, mode)
        if bundle.saved_addons is not None:
            await self.library.replace_all(bundle.saved_addons, mode)
            summary.saved_addons = len(bundle.saved_addons)
        if bundle.rules is not None:
            summary.rules = await self.failover.import_rules(bundle.rules, bundle.webhook, mode)
        if bundle.profiles is not None:
            await self.storage.set(StorageKey.PROFILES, bundle.profiles)
            summary.profiles = len(bundle.profiles)
        logger.info("Imported %s", summary)
        return summary


async def build_engine(
    settings: EngineSettings,
    *,
    storage: KeyValueStore | None = None,
    http_client: httpx.AsyncClient | None = None,
    addon_service: AddonService | None = None,
    probe: HealthProbe | None = None,
) -> Engine:
    """Construct the engine. Collaborators not given are built from ``settings``."""
    owns_client = http_client is None
    if http_client is None:
        http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    if storage is None:
        storage = await KeyValueStore.open(settings.storage_url, echo=settings.debug)
    if addon_service is None:
        addon_service = HttpAddonService(http_client, settings.addon_api_url)
    if probe is None:
        probe = HttpHealthProbe(http_client, settings.probe_timeout_seconds)

    vault = Vault(settings.pbkdf2_iterations)
    bus = EventBus()
    pending = PendingRemovals(settings.pending_removal_grace_seconds)
    sync_api = HttpSyncApi(http_client, settings.sync_server_url)

    accounts = AccountStateStore(
        storage,
        vault,
        addon_service,
        bus,
        pending,
        ManifestCache(settings.manifest_cache_ttl_seconds),
    )
    library = LibraryStore(
        storage,
        accounts,
        addon_service,
        probe,
        bus,
        health_batch_size=settings.health_batch_size,
        health_cooldown_seconds=settings.health_cooldown_seconds,
    )
    coordinator: SyncCoordinator | None = None

    def credentials() -> tuple[str, str] | None:
        return coordinator.credentials() if coordinator is not None else None

    failover = FailoverEngine(
        storage,
        accounts,
        probe,
        WebhookNotifier(http_client, settings.probe_timeout_seconds),
        bus,
        vault,
        authority=SyncServerAuthority(sync_api, credentials),
        interval_seconds=settings.failover_interval_seconds,
        history_limit=settings.failover_history_limit,
    )
    coordinator = SyncCoordinator(
        storage,
        vault,
        sync_api,
        accounts,
        library,
        failover,
        debounce_seconds=settings.push_debounce_seconds,
        anti_wipe_delay_seconds=settings.anti_wipe_push_delay_seconds,
        local_newer_delay_seconds=settings.local_newer_push_delay_seconds,
    )

    bus.subscribe(StateChanged, coordinator.handle_state_changed)
    bus.subscribe(ManualToggle, failover.handle_manual_toggle)
    bus.subscribe(AccountRemoved, failover.handle_account_removed)

    return Engine(
        settings=settings,
        storage=storage,
        vault=vault,
        bus=bus,
        accounts=accounts,
        library=library,
        failover=failover,
        sync=coordinator,
        pending=pending,
        http_client=http_client,
        _owns_client=owns_client,
    )

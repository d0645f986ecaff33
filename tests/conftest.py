"""Shared test fixtures: in-memory collaborators and store harnesses."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import pytest
from httpx import ASGITransport, AsyncClient

from backend.config import Settings
from backend.main import create_app
from engine.events import AccountRemoved, EventBus, ManualToggle, StateChanged
from engine.exceptions import AccountNotFoundError, BadCredentialError, RemoteServiceError
from engine.schemas.addon import AddonFlags, AddonManifest, AddonRecord
from engine.services.crypto_service import Vault
from engine.services.datetime_service import format_iso
from engine.services.manifest_cache import ManifestCache
from engine.services.pending_removals import PendingRemovals
from engine.storage import KeyValueStore
from engine.stores.account_store import AccountStateStore
from engine.stores.failover_engine import FailoverEngine
from engine.stores.library_store import LibraryStore
from engine.stores.sync_coordinator import SyncCoordinator

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator
    from pathlib import Path

    from engine.schemas.failover import WebhookConfig

TEST_ITERATIONS = 1_000
PASSWORD = "correct horse battery staple"


def make_addon(
    url: str,
    *,
    enabled: bool = True,
    protected: bool = False,
    name: str | None = None,
) -> AddonRecord:
    """An addon record whose manifest id is derived from the URL host."""
    host = urlsplit(url).hostname or url
    return AddonRecord(
        transport_url=url,
        transport_name="http",
        manifest=AddonManifest(
            id=f"org.test.{host}", name=name or host, version="1.0.0", resources=["stream"]
        ),
        flags=AddonFlags(enabled=enabled, protected=protected),
    )


def make_manifest(url: str, version: str = "1.0.0") -> AddonManifest:
    host = urlsplit(url).hostname or url
    return AddonManifest(id=f"org.test.{host}", name=host, version=version, resources=["stream"])


class FakeAddonService:
    """In-memory third-party service. Like the real one it drops disabled entries and flags."""

    def __init__(self) -> None:
        self.lists: dict[str, list[AddonRecord]] = {}
        self.logins: dict[tuple[str, str], str] = {}
        self.manifests: dict[str, AddonManifest] = {}
        self.failing_keys: set[str] = set()
        self.set_calls: list[tuple[str, list[str]]] = []
        self.get_calls = 0

    def _check(self, auth_key: str) -> None:
        if auth_key in self.failing_keys:
            raise RemoteServiceError("Service unavailable", 503)

    async def login(self, email: str, password: str) -> str:
        key = self.logins.get((email, password))
        if key is None:
            raise BadCredentialError("Invalid email or password")
        return key

    async def get_addons(self, auth_key: str) -> list[AddonRecord]:
        self._check(auth_key)
        self.get_calls += 1
        return [record.model_copy(deep=True) for record in self.lists.get(auth_key, [])]

    async def set_addons(self, auth_key: str, addons: list[AddonRecord]) -> None:
        self._check(auth_key)
        kept = [a for a in addons if a.flags.enabled]
        self.set_calls.append((auth_key, [a.transport_url for a in kept]))
        self.lists[auth_key] = [
            AddonRecord(
                transport_url=a.transport_url,
                transport_name=a.transport_name,
                manifest=a.manifest.model_copy(deep=True),
            )
            for a in kept
        ]

    async def fetch_manifest(self, transport_url: str) -> AddonRecord:
        manifest = self.manifests.get(transport_url)
        if manifest is None:
            raise RemoteServiceError(f"Manifest fetch failed for {transport_url}")
        return AddonRecord(transport_url=transport_url, manifest=manifest.model_copy(deep=True))


class FakeProbe:
    """Liveness answers from a dict; unknown URLs are down."""

    def __init__(self, health: dict[str, bool] | None = None) -> None:
        self.health = health or {}
        self.calls: list[str] = []

    async def check(self, transport_url: str) -> bool:
        self.calls.append(transport_url)
        return self.health.get(transport_url, False)


@dataclass
class FakeNotifier:
    sent: list[tuple[str, str, str, str]] = field(default_factory=list)

    async def notify(
        self,
        config: WebhookConfig,
        event: Any,
        primary_name: str,
        backup_name: str,
        account_label: str,
    ) -> bool:
        self.sent.append((str(event), primary_name, backup_name, account_label))
        return True


class FakeSyncApi:
    """Sync server stand-in with its own clock, one second per write."""

    def __init__(self) -> None:
        self.records: dict[str, tuple[str, dict[str, Any]]] = {}
        self.synced_at: dict[str, str] = {}
        self.posts: list[dict[str, Any]] = []
        self.clock = datetime(2026, 1, 1, tzinfo=UTC)

    def tick(self) -> str:
        self.clock += timedelta(seconds=1)
        return format_iso(self.clock)

    def _authorize(self, sync_id: str, token: str) -> dict[str, Any]:
        if sync_id not in self.records:
            raise AccountNotFoundError("Sync account not found")
        stored_token, body = self.records[sync_id]
        if stored_token != token:
            raise BadCredentialError("Incorrect password")
        return body

    async def fetch_snapshot(self, sync_id: str, token: str) -> dict[str, Any]:
        body = self._authorize(sync_id, token)
        return {**body, "syncedAt": self.synced_at[sync_id]}

    async def store_snapshot(self, sync_id: str, token: str, body: dict[str, Any]) -> str | None:
        if sync_id in self.records:
            self._authorize(sync_id, token)
        synced_at = self.tick()
        self.records[sync_id] = (token, dict(body))
        self.synced_at[sync_id] = synced_at
        self.posts.append(dict(body))
        return synced_at

    async def delete_snapshot(self, sync_id: str, token: str) -> None:
        self._authorize(sync_id, token)
        del self.records[sync_id]


@dataclass
class Harness:
    """One device: storage, vault and all four stores wired through a bus."""

    storage: KeyValueStore
    vault: Vault
    bus: EventBus
    service: FakeAddonService
    probe: FakeProbe
    notifier: FakeNotifier
    api: FakeSyncApi
    pending: PendingRemovals
    accounts: AccountStateStore
    library: LibraryStore
    failover: FailoverEngine
    sync: SyncCoordinator
    events: list[object] = field(default_factory=list)


async def build_harness(
    db_path: Path,
    service: FakeAddonService,
    api: FakeSyncApi,
    probe: FakeProbe | None = None,
    *,
    debounce_seconds: float = 0.05,
    anti_wipe_delay_seconds: float = 0.05,
    local_newer_delay_seconds: float = 0.05,
    grace_seconds: float = 0.0,
) -> Harness:
    storage = await KeyValueStore.open(f"sqlite+aiosqlite:///{db_path}")
    vault = Vault(TEST_ITERATIONS)
    bus = EventBus()
    probe = probe or FakeProbe()
    notifier = FakeNotifier()
    pending = PendingRemovals(grace_seconds)
    accounts = AccountStateStore(storage, vault, service, bus, pending, ManifestCache(60))
    library = LibraryStore(storage, accounts, service, probe, bus, health_batch_size=2)
    failover = FailoverEngine(
        storage, accounts, probe, notifier, bus, vault  # type: ignore[arg-type]
    )
    sync = SyncCoordinator(
        storage,
        vault,
        api,  # type: ignore[arg-type]
        accounts,
        library,
        failover,
        debounce_seconds=debounce_seconds,
        anti_wipe_delay_seconds=anti_wipe_delay_seconds,
        local_newer_delay_seconds=local_newer_delay_seconds,
    )
    harness = Harness(
        storage=storage,
        vault=vault,
        bus=bus,
        service=service,
        probe=probe,
        notifier=notifier,
        api=api,
        pending=pending,
        accounts=accounts,
        library=library,
        failover=failover,
        sync=sync,
    )
    bus.subscribe(StateChanged, sync.handle_state_changed)
    bus.subscribe(ManualToggle, failover.handle_manual_toggle)
    bus.subscribe(AccountRemoved, failover.handle_account_removed)
    for event_type in (StateChanged, ManualToggle, AccountRemoved):
        bus.subscribe(event_type, harness.events.append)
    return harness


async def close_harness(harness: Harness) -> None:
    harness.sync.cancel_pending_push()
    await harness.sync.wait_idle()
    await harness.failover.stop()
    harness.pending.clear()
    await harness.storage.close()


@pytest.fixture
def service() -> FakeAddonService:
    return FakeAddonService()


@pytest.fixture
def sync_api() -> FakeSyncApi:
    return FakeSyncApi()


@pytest.fixture
async def device(
    tmp_path: Path, service: FakeAddonService, sync_api: FakeSyncApi
) -> AsyncGenerator[Harness]:
    """A device whose vault is unlocked with ``PASSWORD``."""
    harness = await build_harness(tmp_path / "device.db", service, sync_api)
    await harness.sync.unlock(PASSWORD)
    yield harness
    await close_harness(harness)


@pytest.fixture
async def storage(tmp_path: Path) -> AsyncGenerator[KeyValueStore]:
    store = await KeyValueStore.open(f"sqlite+aiosqlite:///{tmp_path / 'kv.db'}")
    yield store
    await store.close()


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'server.db'}",
        debug=True,
        max_sync_payload_bytes=64 * 1024,
    )


@asynccontextmanager
async def create_test_client(settings: Settings) -> AsyncGenerator[AsyncClient]:
    """Create an HTTP test client with a fully initialized app.

    Manually performs the work of the application lifespan (DB schema)
    because ASGITransport does not trigger it. The autopilot loop is not
    started; tests drive ``evaluate_rules`` directly.
    """
    from backend.database import create_engine as create_db_engine
    from backend.models.base import Base

    app = create_app(settings)
    engine, session_factory = create_db_engine(settings)
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.settings = settings

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.app = app  # type: ignore[attr-defined]
        yield client

    await engine.dispose()


@pytest.fixture
async def client(test_settings: Settings) -> AsyncGenerator[AsyncClient]:
    async with create_test_client(test_settings) as ac:
        yield ac

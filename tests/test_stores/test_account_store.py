"""Tests for AccountStateStore against an in-memory addon service."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from engine.events import AccountRemoved, ManualToggle
from engine.exceptions import (
    AccountNotFoundError,
    BadCredentialError,
    NotFoundError,
    ProtectedError,
    RemoteServiceError,
)
from engine.schemas.addon import AccountStatus, AddonManifest, AddonRecord
from engine.services.import_service import ImportMode, RawAccount
from tests.conftest import PASSWORD, build_harness, close_harness, make_addon, make_manifest

if TYPE_CHECKING:
    from pathlib import Path

    from engine.schemas.addon import Account
    from tests.conftest import FakeAddonService, FakeSyncApi, Harness

A = "https://a.example.com/manifest.json"
B = "https://b.example.com/manifest.json"
C = "https://c.example.com/manifest.json"


def _urls(account: Account) -> list[str]:
    return [a.transport_url for a in account.addons]


async def _add(device: Harness, key: str, urls: list[str], name: str = "One") -> Account:
    device.service.lists[key] = [make_addon(url) for url in urls]
    return await device.accounts.add_account_by_auth_key(key, name)


class TestAccountLifecycle:
    async def test_add_by_auth_key_encrypts_the_key(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])

        assert account.auth_key != "key-1"
        assert device.vault.decrypt(account.auth_key) == "key-1"
        assert _urls(account) == [A, B]
        assert await device.storage.get("accounts") == [account.to_json_dict()]

    async def test_duplicate_auth_key_is_rejected(self, device: Harness) -> None:
        await _add(device, "key-1", [A])

        with pytest.raises(ValueError, match="already exists"):
            await device.accounts.add_account_by_auth_key("key-1")

    async def test_add_by_credentials(self, device: Harness) -> None:
        device.service.logins[("me@example.com", "pw")] = "key-9"
        device.service.lists["key-9"] = [make_addon(A)]

        account = await device.accounts.add_account_by_credentials("me@example.com", "pw")

        assert account.email == "me@example.com"
        assert account.password is not None
        assert device.vault.decrypt(account.password) == "pw"

        with pytest.raises(ValueError, match="already exists"):
            await device.accounts.add_account_by_credentials("ME@example.com", "pw")

    async def test_bad_credentials_propagate(self, device: Harness) -> None:
        with pytest.raises(BadCredentialError):
            await device.accounts.add_account_by_credentials("me@example.com", "wrong")
        assert device.accounts.accounts == []

    async def test_remove_account_publishes_event(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])

        await device.accounts.remove_account(account.id)

        assert device.accounts.accounts == []
        assert AccountRemoved(account.id) in device.events
        with pytest.raises(AccountNotFoundError):
            device.accounts.get_account(account.id)

    async def test_move_account(self, device: Harness) -> None:
        first = await _add(device, "key-1", [], "first")
        second = await _add(device, "key-2", [], "second")

        await device.accounts.move_account(second.id, "up")

        assert [a.id for a in device.accounts.accounts] == [second.id, first.id]

    async def test_update_account_rekeys_and_merges(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        device.service.lists["key-2"] = [make_addon(B)]

        updated = await device.accounts.update_account(account.id, name="Renamed", auth_key="key-2")

        assert updated.name == "Renamed"
        assert device.vault.decrypt(updated.auth_key) == "key-2"
        assert _urls(updated) == [B]

    async def test_state_survives_reload(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])

        await device.accounts.load()

        assert device.accounts.get_account(account.id) == account


class TestRemoteReconciliation:
    async def test_disabled_addon_survives_a_sync(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])
        await device.accounts.toggle_enabled(account.id, A, False)

        assert device.service.set_calls[-1] == ("key-1", [B])
        synced = await device.accounts.sync_account(account.id)

        assert _urls(synced) == [A, B]
        assert synced.addons[0].flags.enabled is False

    async def test_remote_only_addon_is_appended_and_enabled_absentee_dropped(
        self, device: Harness
    ) -> None:
        account = await _add(device, "key-1", [A])
        device.service.lists["key-1"] = [make_addon(B)]

        synced = await device.accounts.sync_account(account.id)

        assert _urls(synced) == [B]

    async def test_failed_sync_marks_account_and_raises(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        device.service.failing_keys.add("key-1")

        with pytest.raises(RemoteServiceError):
            await device.accounts.sync_account(account.id)

        assert device.accounts.get_account(account.id).status is AccountStatus.ERROR

    async def test_sync_all_reports_partial_failure(self, device: Harness) -> None:
        ok = await _add(device, "key-1", [A])
        bad = await _add(device, "key-2", [B], "Two")
        device.service.failing_keys.add("key-2")

        result = await device.accounts.sync_all_accounts()

        assert result.success == 1
        assert result.failed == 1
        assert result.errors[0].account_id == bad.id
        assert device.accounts.get_account(ok.id).status is AccountStatus.ACTIVE

    async def test_pending_removal_is_not_revived_by_a_fetch(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])
        device.pending.mark(account.id, A)

        synced = await device.accounts.sync_account(account.id)

        assert _urls(synced) == [B]

    async def test_force_refresh_repairs_broken_manifests(self, device: Harness) -> None:
        broken = AddonRecord(transport_url=C, manifest=AddonManifest(id="org.c", name="C"))
        device.service.lists["key-1"] = [broken]
        account = await device.accounts.add_account_by_auth_key("key-1")
        device.service.manifests[C] = make_manifest(C, version="4.0.0")

        synced = await device.accounts.sync_account(account.id, force_refresh=True)

        assert synced.addons[0].manifest.version == "4.0.0"
        assert device.service.lists["key-1"][0].manifest.version == "4.0.0"


class TestAddonMutations:
    async def test_install_appends_and_writes_remote(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        device.service.manifests[C] = make_manifest(C)

        installed = await device.accounts.install(account.id, C)

        assert installed.transport_url == C
        assert installed.metadata.last_updated is not None
        assert _urls(device.accounts.get_account(account.id)) == [A, C]
        assert [r.transport_url for r in device.service.lists["key-1"]] == [A, C]

    async def test_remove_by_url(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])

        await device.accounts.remove(account.id, url=A.upper())

        assert _urls(device.accounts.get_account(account.id)) == [B]
        assert device.service.set_calls[-1] == ("key-1", [B])
        assert not device.pending.is_pending(account.id, A)

    async def test_remove_by_index(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])

        await device.accounts.remove(account.id, index=1)

        assert _urls(device.accounts.get_account(account.id)) == [A]

    async def test_removing_one_duplicate_keeps_the_other_through_a_sync(
        self, tmp_path: Path, service: FakeAddonService, sync_api: FakeSyncApi
    ) -> None:
        device = await build_harness(tmp_path / "grace.db", service, sync_api, grace_seconds=5)
        try:
            await device.sync.unlock(PASSWORD)
            account = await _add(device, "key-1", [A, A, B])

            await device.accounts.remove(account.id, index=0)
            assert device.pending.pending_for(account.id) == {A: 1}

            synced = await device.accounts.sync_account(account.id)
            assert _urls(synced) == [A, B]

            # A stale fetch still listing both copies revives neither.
            service.lists["key-1"] = [make_addon(A), make_addon(A), make_addon(B)]
            synced = await device.accounts.sync_account(account.id)
            assert _urls(synced) == [A, B]
        finally:
            await close_harness(device)

    async def test_removing_by_url_hides_every_copy_during_grace(
        self, tmp_path: Path, service: FakeAddonService, sync_api: FakeSyncApi
    ) -> None:
        device = await build_harness(tmp_path / "grace.db", service, sync_api, grace_seconds=5)
        try:
            await device.sync.unlock(PASSWORD)
            account = await _add(device, "key-1", [A, A, B])

            await device.accounts.remove(account.id, url=A)
            service.lists["key-1"] = [make_addon(A), make_addon(A), make_addon(B)]

            synced = await device.accounts.sync_account(account.id)
            assert _urls(synced) == [B]
        finally:
            await close_harness(device)

    async def test_protected_addon_cannot_be_removed(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        await device.accounts.toggle_protected(account.id, A, True, silent=True)

        with pytest.raises(ProtectedError):
            await device.accounts.remove(account.id, url=A)

        assert _urls(device.accounts.get_account(account.id)) == [A]

    async def test_remove_unknown_addon(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])

        with pytest.raises(NotFoundError):
            await device.accounts.remove(account.id, url=C)

    async def test_reorder_stamps_moved_entries(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B, C])
        a, b, c = account.addons

        updated = await device.accounts.reorder(account.id, [a, c, b])

        assert _urls(updated) == [A, C, B]
        assert updated.addons[0].metadata.last_updated is None
        assert updated.addons[1].metadata.last_updated is not None
        assert [r.transport_url for r in device.service.lists["key-1"]] == [A, C, B]

    async def test_manual_toggle_is_published(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])

        await device.accounts.toggle_enabled(account.id, A, False)
        await device.accounts.toggle_enabled(account.id, A, True, is_autopilot=True)

        toggles = [e for e in device.events if isinstance(e, ManualToggle)]
        assert toggles == [ManualToggle(account.id, A)]

    async def test_silent_toggle_skips_remote_write(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        writes = len(device.service.set_calls)

        await device.accounts.toggle_enabled(account.id, A, False, silent=True)

        assert len(device.service.set_calls) == writes
        assert device.accounts.get_account(account.id).addons[0].flags.enabled is False

    async def test_apply_enabled_flags_writes_once_and_only_on_change(
        self, device: Harness
    ) -> None:
        account = await _add(device, "key-1", [A, B])
        writes = len(device.service.set_calls)

        assert not await device.accounts.apply_enabled_flags(account.id, {A: True, B: True})
        assert len(device.service.set_calls) == writes

        assert await device.accounts.apply_enabled_flags(account.id, {A: False, B: True})
        assert len(device.service.set_calls) == writes + 1
        assert not any(isinstance(e, ManualToggle) for e in device.events)

    async def test_update_addon_settings(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])

        await device.accounts.update_addon_settings(
            account.id, A, metadata={"customName": "Mine"}, catalog_overrides={"top": False}
        )

        metadata = device.accounts.get_account(account.id).addons[0].metadata
        assert metadata.custom_name == "Mine"
        assert metadata.catalog_overrides == {"top": False}
        assert metadata.last_updated is not None

    async def test_bulk_protect_is_local_only(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A, B])
        writes = len(device.service.set_calls)

        await device.accounts.bulk_protect(account.id, True)

        assert all(a.flags.protected for a in device.accounts.get_account(account.id).addons)
        assert len(device.service.set_calls) == writes

    async def test_replace_transport_url_keeps_flags(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        await device.accounts.toggle_protected(account.id, A, True, silent=True)
        device.service.manifests[C] = make_manifest(C)

        await device.accounts.replace_transport_url(account.id, A, C)

        (addon,) = device.accounts.get_account(account.id).addons
        assert addon.transport_url == C
        assert addon.flags.protected is True
        assert addon.manifest.id == "org.test.c.example.com"


class TestImportExport:
    async def test_import_matches_by_auth_key(self, device: Harness) -> None:
        account = await _add(device, "key-1", [A])
        incoming = RawAccount(
            id="other-id",
            name="Imported",
            email=None,
            auth_key="key-1",
            password=None,
            addons=[make_addon(B)],
        )

        count = await device.accounts.import_accounts([incoming])

        assert count == 1
        (merged,) = device.accounts.accounts
        assert merged.id == account.id
        assert merged.name == "Imported"
        assert _urls(merged) == [B]

    async def test_mirror_drops_unmatched_accounts_merge_keeps_them(self, device: Harness) -> None:
        await _add(device, "key-1", [A])
        incoming = RawAccount(
            id="new", name="New", email=None, auth_key="key-2", password=None, addons=[]
        )

        await device.accounts.import_accounts([incoming], ImportMode.MERGE)
        assert len(device.accounts.accounts) == 2

        await device.accounts.import_accounts([incoming], ImportMode.MIRROR)
        assert [a.id for a in device.accounts.accounts] == ["new"]
        assert device.vault.decrypt(device.accounts.accounts[0].auth_key) == "key-2"

    async def test_account_without_key_is_skipped(self, device: Harness) -> None:
        incoming = RawAccount(id="x", name="X", email=None, auth_key="", password=None)

        assert await device.accounts.import_accounts([incoming]) == 0

    async def test_export_with_and_without_credentials(self, device: Harness) -> None:
        await _add(device, "key-1", [A])

        (hidden,) = device.accounts.export_accounts()
        (shown,) = device.accounts.export_accounts(include_credentials=True)

        assert "authKey" not in hidden
        assert shown["authKey"] == "key-1"

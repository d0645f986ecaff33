"""Tests for FailoverEngine check cycles, self-healing and rule lifecycle."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest

from engine.exceptions import RemoteServiceError, RuleNotFoundError
from engine.schemas.failover import FailoverLogType, FailoverRule, RuleStatus
from engine.services.import_service import ImportMode
from engine.stores.failover_engine import FailoverEngine
from tests.conftest import make_addon

if TYPE_CHECKING:
    from engine.schemas.addon import Account, AddonRecord
    from tests.conftest import Harness

P = "https://primary.example.com/manifest.json"
Q = "https://backup.example.com/manifest.json"
R = "https://third.example.com/manifest.json"


async def _account(device: Harness, urls: list[str]) -> Account:
    device.service.lists["key-1"] = [make_addon(url) for url in urls]
    return await device.accounts.add_account_by_auth_key("key-1", "Living room")


def _enabled(device: Harness, account_id: str) -> dict[str, bool]:
    return {
        a.transport_url: a.flags.enabled for a in device.accounts.get_account(account_id).addons
    }


class FakeAuthority:
    def __init__(self) -> None:
        self.available = True
        self.decisions: dict[str, str | None] = {}
        self.registered: list[str] = []
        self.retracted: list[str] = []
        self.fail_fetch = False

    @property
    def is_available(self) -> bool:
        return self.available

    async def register(self, rule: FailoverRule, addons: list[AddonRecord]) -> None:
        self.registered.append(rule.id)

    async def fetch_decisions(self, account_id: str) -> dict[str, str | None]:
        if self.fail_fetch:
            raise RemoteServiceError("down", 503)
        return dict(self.decisions)

    async def retract(self, rule_id: str) -> None:
        self.retracted.append(rule_id)

    async def retract_account(self, account_id: str) -> None:
        self.retracted.append(f"account:{account_id}")


class TestCheckCycle:
    async def test_failed_primary_fails_over_to_healthy_backup(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        rule.set_active(P)
        device.probe.health = {P: False, Q: True}

        await device.failover.check_rules()

        assert rule.active_url == Q
        assert rule.status is RuleStatus.FAILED_OVER
        assert rule.last_failover is not None
        assert _enabled(device, account.id) == {P: False, Q: True}
        assert device.failover.history[0].type is FailoverLogType.FAILOVER
        assert device.notifier.sent == [
            ("failover", "primary.example.com", "backup.example.com", "Living room")
        ]

    async def test_recovery_returns_to_primary(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        rule.set_active(P)
        device.probe.health = {Q: True}
        await device.failover.check_rules()

        device.probe.health = {P: True, Q: True}
        await device.failover.check_rules()

        assert rule.status is RuleStatus.MONITORING
        assert _enabled(device, account.id) == {P: True, Q: False}
        assert [log.type for log in device.failover.history] == [
            FailoverLogType.RECOVERY,
            FailoverLogType.FAILOVER,
        ]

    async def test_first_check_enforces_exactly_one_enabled_member(self, device: Harness) -> None:
        account = await _account(device, [P, Q, R])
        rule = await device.failover.add_rule(account.id, [P, Q, R])
        device.probe.health = {P: True, Q: True, R: True}

        await device.failover.check_rules()

        assert rule.status is RuleStatus.MONITORING
        assert _enabled(device, account.id) == {P: True, Q: False, R: False}
        assert device.failover.history == []

    async def test_drift_while_monitoring_self_heals(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        device.probe.health = {P: True}
        await device.failover.check_rules()

        await device.accounts.toggle_enabled(account.id, Q, True, is_autopilot=True)
        await device.failover.check_rules()

        assert rule.is_active
        assert _enabled(device, account.id) == {P: True, Q: False}
        assert device.failover.history[0].type is FailoverLogType.SELF_HEALING

    async def test_all_members_down_changes_nothing(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        device.probe.health = {P: True}
        await device.failover.check_rules()

        device.probe.health = {}
        await device.failover.check_rules()

        assert rule.active_url == P
        assert _enabled(device, account.id) == {P: True, Q: False}
        assert device.failover.history == []

    async def test_locked_vault_skips_the_cycle(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        device.probe.health = {P: True}
        device.sync.lock()

        await device.failover.check_rules()

        assert device.probe.calls == []
        assert rule.last_check is None

    async def test_hidden_engine_skips_the_cycle(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        await device.failover.add_rule(account.id, [P, Q])
        device.failover.set_visible(False)

        await device.failover.check_rules()

        assert device.probe.calls == []

    async def test_polling_start_and_stop(self, device: Harness) -> None:
        device.failover.start()
        assert device.failover.is_running
        await asyncio.sleep(0)

        await device.failover.stop()

        assert not device.failover.is_running


class TestManualOverride:
    async def test_manual_toggle_deactivates_chained_rules(self, device: Harness) -> None:
        account = await _account(device, [P, Q, R])
        chained = await device.failover.add_rule(account.id, [P, Q])
        unrelated = await device.failover.add_rule(account.id, [R])

        await device.accounts.toggle_enabled(account.id, Q, False)

        assert not chained.is_active
        assert not chained.is_automatic
        assert unrelated.is_active

    async def test_deactivated_rule_is_not_enforced(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        await device.failover.add_rule(account.id, [P, Q])
        await device.accounts.toggle_enabled(account.id, Q, True)
        device.probe.health = {P: True}

        await device.failover.check_rules()

        assert _enabled(device, account.id) == {P: True, Q: True}

    async def test_reactivation_restores_automation(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        await device.accounts.toggle_enabled(account.id, Q, False)

        await device.failover.toggle_rule_active(rule.id, True)

        assert rule.is_active
        assert rule.is_automatic


class TestRuleLifecycle:
    async def test_add_rule_dedupes_chain(self, device: Harness) -> None:
        account = await _account(device, [P, Q])

        rule = await device.failover.add_rule(account.id, [P, P, "", Q])

        assert rule.priority_chain == [P, Q]
        with pytest.raises(ValueError, match="at least one"):
            await device.failover.add_rule(account.id, [])

    async def test_emptying_the_chain_deletes_the_rule(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])

        assert await device.failover.update_rule(rule.id, chain=[]) is None

        with pytest.raises(RuleNotFoundError):
            device.failover.get_rule(rule.id)

    async def test_chain_update_drops_stale_active_url(self, device: Harness) -> None:
        account = await _account(device, [P, Q, R])
        rule = await device.failover.add_rule(account.id, [P, Q])
        rule.set_active(Q)

        updated = await device.failover.update_rule(rule.id, chain=[P, R])

        assert updated is not None
        assert updated.active_url is None

    async def test_account_removal_removes_its_rules(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        await device.failover.add_rule(account.id, [P, Q])

        await device.accounts.remove_account(account.id)

        assert device.failover.rules == []

    async def test_import_merge_and_mirror(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        local = await device.failover.add_rule(account.id, [P])
        incoming = FailoverRule(id="remote", account_id=account.id, priority_chain=[Q])

        await device.failover.import_rules([incoming], mode=ImportMode.MERGE)
        assert {r.id for r in device.failover.rules} == {local.id, "remote"}

        await device.failover.import_rules([incoming], mode=ImportMode.MIRROR)
        assert [r.id for r in device.failover.rules] == ["remote"]

    async def test_rules_and_webhook_survive_reload(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        await device.failover.set_webhook(" https://hooks.example.com/x ", True)

        device.failover.reset()
        await device.failover.load()

        assert [r.id for r in device.failover.rules] == [rule.id]
        assert device.failover.webhook.url == "https://hooks.example.com/x"
        assert device.failover.webhook.enabled

    async def test_test_rule_probes_without_changes(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        rule = await device.failover.add_rule(account.id, [P, Q])
        device.probe.health = {Q: True}

        assert await device.failover.test_rule(rule.id) == {P: False, Q: True}
        assert rule.active_url is None

    async def test_history_is_capped_and_clearable(self, device: Harness) -> None:
        account = await _account(device, [P, Q])
        engine = FailoverEngine(
            device.storage,
            device.accounts,
            device.probe,
            device.notifier,  # type: ignore[arg-type]
            device.bus,
            device.vault,
            history_limit=2,
        )
        rule = await engine.add_rule(account.id, [P, Q])
        for healthy in ({Q: True}, {P: True}, {Q: True}):
            device.probe.health = healthy
            await engine.check_rules()

        assert len(engine.history) == 2
        assert rule.status is RuleStatus.FAILED_OVER

        await engine.clear_history()
        assert engine.history == []


class TestRemoteAuthority:
    async def _engine(self, device: Harness, authority: FakeAuthority) -> FailoverEngine:
        return FailoverEngine(
            device.storage,
            device.accounts,
            device.probe,
            device.notifier,  # type: ignore[arg-type]
            device.bus,
            device.vault,
            authority=authority,
        )

    async def test_rules_are_mirrored_and_retracted(self, device: Harness) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])

        rule = await engine.add_rule(account.id, [P, Q])
        await engine.remove_rule(rule.id)

        assert authority.registered == [rule.id]
        assert authority.retracted == [rule.id]

    async def test_authority_decision_is_enforced_without_probing(self, device: Harness) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])
        rule.set_active(P)
        authority.decisions = {rule.id: Q}

        await engine.check_rules()

        assert device.probe.calls == []
        assert rule.active_url == Q
        assert _enabled(device, account.id) == {P: False, Q: True}
        assert engine.history[0].type is FailoverLogType.FAILOVER

    async def test_authority_moving_an_idle_rule_to_a_backup_is_a_failover(
        self, device: Harness
    ) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])
        assert rule.active_url is None
        authority.decisions = {rule.id: Q}

        await engine.check_rules()

        assert rule.active_url == Q
        assert rule.last_failover is not None
        assert [entry.type for entry in engine.history] == [FailoverLogType.FAILOVER]
        assert device.notifier.sent[-1][0] == "failover"

    async def test_authority_confirming_the_primary_logs_nothing(self, device: Harness) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])
        authority.decisions = {rule.id: P}

        await engine.check_rules()

        assert rule.active_url == P
        assert engine.history == []

    async def test_unknown_rule_is_registered_again(self, device: Harness) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])

        await engine.check_rules()

        assert authority.registered == [rule.id, rule.id]
        assert rule.active_url is None

    async def test_decision_outside_the_chain_is_ignored(self, device: Harness) -> None:
        authority = FakeAuthority()
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])
        authority.decisions = {rule.id: R}

        await engine.check_rules()

        assert rule.active_url is None
        assert _enabled(device, account.id) == {P: True, Q: True}

    async def test_unreachable_authority_skips_rather_than_probing(self, device: Harness) -> None:
        authority = FakeAuthority()
        authority.fail_fetch = True
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        await engine.add_rule(account.id, [P, Q])

        await engine.check_rules()

        assert device.probe.calls == []

    async def test_unavailable_authority_falls_back_to_local_probes(
        self, device: Harness
    ) -> None:
        authority = FakeAuthority()
        authority.available = False
        engine = await self._engine(device, authority)
        account = await _account(device, [P, Q])
        rule = await engine.add_rule(account.id, [P, Q])
        device.probe.health = {P: True}

        await engine.check_rules()

        assert authority.registered == []
        assert rule.status is RuleStatus.MONITORING

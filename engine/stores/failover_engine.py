"""FailoverEngine: per-rule priority chains, health checks and self-healing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import TYPE_CHECKING

from pydantic import ValidationError

from engine.events import AccountRemoved, Domain, EventBus, ManualToggle, StateChanged
from engine.exceptions import AccountNotFoundError, EngineError, RuleNotFoundError
from engine.schemas.failover import (
    FailoverLog,
    FailoverLogType,
    FailoverRule,
    RuleStatus,
    WebhookConfig,
)
from engine.services.datetime_service import now_utc
from engine.services.failover_policy import ChainDecision, decide_active_url
from engine.services.health_service import probe_all
from engine.services.import_service import ImportMode, coerce_rules, coerce_webhook
from engine.services.merge_service import normalize_url
from engine.storage import StorageKey

if TYPE_CHECKING:
    from engine.clients.sync_api import RemoteAuthority
    from engine.schemas.addon import Account
    from engine.services.crypto_service import Vault
    from engine.services.health_service import HealthProbe
    from engine.services.webhook_service import WebhookNotifier
    from engine.storage import KeyValueStore
    from engine.stores.account_store import AccountStateStore

logger = logging.getLogger(__name__)


def _classify(rule: FailoverRule, target: str | None) -> FailoverLogType | None:
    """Name the switch an authority decision represents for ``rule``.

    An unset or foreign active member counts as chain[0], as in local decisions.
    """
    if target is None or not rule.priority_chain:
        return None
    primary = rule.priority_chain[0]
    current = rule.active_url if rule.active_url in rule.priority_chain else primary
    if target == current:
        return None
    if target == primary:
        return FailoverLogType.RECOVERY
    return FailoverLogType.FAILOVER


class FailoverEngine:
    """Keeps exactly one member of each rule's chain enabled.

    Decisions come from local probes, or from the remote authority while one
    is available, in which case the engine only reconciles local flags with
    the authority's ``activeUrl``. Flag changes go through
    ``AccountStateStore.apply_enabled_flags`` so they do not count as manual
    toggles.
    """

    def __init__(
        self,
        storage: KeyValueStore,
        accounts: AccountStateStore,
        probe: HealthProbe,
        notifier: WebhookNotifier,
        bus: EventBus,
        vault: Vault,
        *,
        authority: RemoteAuthority | None = None,
        interval_seconds: float = 60,
        history_limit: int = 200,
    ) -> None:
        self._storage = storage
        self._accounts = accounts
        self._probe = probe
        self._notifier = notifier
        self._bus = bus
        self._vault = vault
        self._authority = authority
        self._interval_seconds = interval_seconds
        self._history_limit = history_limit
        self._rules: dict[str, FailoverRule] = {}
        self._webhook = WebhookConfig()
        self._history: list[FailoverLog] = []
        self._is_checking = False
        self._visible = True
        self._task: asyncio.Task[None] | None = None

    @property
    def rules(self) -> list[FailoverRule]:
        return list(self._rules.values())

    @property
    def webhook(self) -> WebhookConfig:
        return self._webhook

    @property
    def history(self) -> list[FailoverLog]:
        return list(self._history)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def load(self) -> None:
        raw_rules = await self._storage.get(StorageKey.FAILOVER_RULES)
        rules = coerce_rules(
            raw_rules if isinstance(raw_rules, list) else [], self._accounts.accounts
        )
        self._rules = {rule.id: rule for rule in rules}
        raw_webhook = await self._storage.get(StorageKey.FAILOVER_WEBHOOK)
        self._webhook = coerce_webhook(raw_webhook) or WebhookConfig()
        raw_history = await self._storage.get(StorageKey.FAILOVER_HISTORY)
        history: list[FailoverLog] = []
        for item in raw_history if isinstance(raw_history, list) else []:
            try:
                history.append(FailoverLog.model_validate(item))
            except ValidationError:
                logger.debug("Dropping invalid failover log entry")
        self._history = history[: self._history_limit]

    def reset(self) -> None:
        self._rules = {}
        self._webhook = WebhookConfig()
        self._history = []

    async def _save_rules(self) -> None:
        await self._storage.set(
            StorageKey.FAILOVER_RULES, [rule.to_json_dict() for rule in self._rules.values()]
        )

    async def _persist(self) -> None:
        await self._save_rules()
        await self._bus.publish(StateChanged(Domain.FAILOVER))

    def get_rule(self, rule_id: str) -> FailoverRule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise RuleNotFoundError(f"Failover rule {rule_id} not found") from None

    # Remote authority mirroring. Failures here never undo local changes.

    def _live_authority(self) -> RemoteAuthority | None:
        if self._authority is not None and self._authority.is_available:
            return self._authority
        return None

    async def _mirror(self, rule: FailoverRule) -> None:
        authority = self._live_authority()
        if authority is None:
            return
        try:
            addons = self._accounts.get_account(rule.account_id).addons
            await authority.register(rule, addons)
        except EngineError as exc:
            logger.warning("Could not register rule %s with the authority: %s", rule.id, exc)

    async def _retract(self, rule_id: str) -> None:
        authority = self._live_authority()
        if authority is None:
            return
        try:
            await authority.retract(rule_id)
        except EngineError as exc:
            logger.warning("Could not retract rule %s: %s", rule_id, exc)

    # Rule CRUD

    async def add_rule(
        self, account_id: str, chain: list[str], is_automatic: bool = True
    ) -> FailoverRule:
        self._accounts.get_account(account_id)
        members = list(dict.fromkeys(url for url in chain if url))
        if not members:
            raise ValueError("A failover rule needs at least one chain member")
        rule = FailoverRule(
            id=str(uuid.uuid4()),
            account_id=account_id,
            priority_chain=members,
            is_automatic=is_automatic,
        )
        self._rules[rule.id] = rule
        await self._persist()
        await self._mirror(rule)
        logger.info("Added failover rule %s for account %s", rule.id, account_id)
        return rule

    async def update_rule(
        self,
        rule_id: str,
        chain: list[str] | None = None,
        is_automatic: bool | None = None,
    ) -> FailoverRule | None:
        """Update a rule. Emptying the chain deletes the rule and returns None."""
        rule = self.get_rule(rule_id)
        if chain is not None:
            members = list(dict.fromkeys(url for url in chain if url))
            if not members:
                await self.remove_rule(rule_id)
                return None
            rule.set_chain(members)
        if is_automatic is not None:
            rule.is_automatic = is_automatic
        await self._persist()
        await self._mirror(rule)
        return rule

    async def remove_rule(self, rule_id: str) -> None:
        self.get_rule(rule_id)
        del self._rules[rule_id]
        await self._persist()
        await self._retract(rule_id)

    async def toggle_rule_active(self, rule_id: str, is_active: bool) -> FailoverRule:
        rule = self.get_rule(rule_id)
        rule.is_active = is_active
        if is_active:
            rule.is_automatic = True
        await self._persist()
        await self._mirror(rule)
        return rule

    async def remove_rules_for_account(self, account_id: str) -> int:
        doomed = [r.id for r in self._rules.values() if r.account_id == account_id]
        if not doomed:
            return 0
        for rule_id in doomed:
            del self._rules[rule_id]
        await self._persist()
        authority = self._live_authority()
        if authority is not None:
            try:
                await authority.retract_account(account_id)
            except EngineError:
                logger.warning(
                    "Account retraction failed, retracting %d rules one by one", len(doomed)
                )
                for rule_id in doomed:
                    await self._retract(rule_id)
        return len(doomed)

    async def handle_account_removed(self, event: AccountRemoved) -> None:
        await self.remove_rules_for_account(event.account_id)

    async def handle_manual_toggle(self, event: ManualToggle) -> None:
        """The user took control of an addon: stand down every rule that chains it."""
        target = normalize_url(event.transport_url)
        touched: list[FailoverRule] = []
        for rule in self._rules.values():
            if rule.account_id != event.account_id or not (rule.is_active and rule.is_automatic):
                continue
            if any(normalize_url(url) == target for url in rule.priority_chain):
                rule.is_active = False
                rule.is_automatic = False
                touched.append(rule)
        if not touched:
            return
        logger.info("Manual toggle on %s deactivated %d rules", event.transport_url, len(touched))
        await self._persist()
        for rule in touched:
            await self._mirror(rule)

    async def set_webhook(self, url: str, enabled: bool) -> WebhookConfig:
        self._webhook = WebhookConfig(url=url.strip(), enabled=enabled)
        await self._storage.set(StorageKey.FAILOVER_WEBHOOK, self._webhook.to_json_dict())
        await self._bus.publish(StateChanged(Domain.FAILOVER))
        return self._webhook

    async def test_rule(self, rule_id: str) -> dict[str, bool]:
        """Probe every chain member without changing anything."""
        rule = self.get_rule(rule_id)
        return await probe_all(self._probe, rule.priority_chain)

    async def import_rules(
        self,
        rules: list[FailoverRule],
        webhook: WebhookConfig | None = None,
        mode: ImportMode = ImportMode.MERGE,
    ) -> int:
        kept = [rule for rule in rules if rule.priority_chain]
        merged = {} if mode is ImportMode.MIRROR else dict(self._rules)
        for rule in kept:
            merged[rule.id] = rule
        self._rules = merged
        if webhook is not None:
            self._webhook = webhook
            await self._storage.set(StorageKey.FAILOVER_WEBHOOK, webhook.to_json_dict())
        await self._persist()
        return len(kept)

    # History

    async def _log(
        self, rule: FailoverRule, kind: FailoverLogType, primary: str, backup: str, message: str
    ) -> None:
        entry = FailoverLog(
            id=str(uuid.uuid4()),
            timestamp=now_utc(),
            type=kind,
            rule_id=rule.id,
            primary_name=primary,
            backup_name=backup,
            message=message,
        )
        self._history = [entry, *self._history][: self._history_limit]
        await self._storage.set(
            StorageKey.FAILOVER_HISTORY, [log.to_json_dict() for log in self._history]
        )

    async def clear_history(self) -> None:
        self._history = []
        await self._storage.delete(StorageKey.FAILOVER_HISTORY)

    # Check cycle

    def _skip_reason(self) -> str | None:
        if self._is_checking:
            return "a check is already running"
        if not self._visible:
            return "not visible"
        if not self._vault.is_unlocked:
            return "vault is locked"
        return None

    async def check_rules(self) -> None:
        """Run one check cycle over every automated rule."""
        reason = self._skip_reason()
        if reason is not None:
            logger.debug("Skipping failover check: %s", reason)
            return

        self._is_checking = True
        changed = False
        try:
            authority = self._live_authority()
            decisions: dict[str, dict[str, str | None] | None] = {}
            for rule in list(self._rules.values()):
                if not (rule.is_active and rule.is_automatic) or not rule.priority_chain:
                    continue
                try:
                    account = self._accounts.get_account(rule.account_id)
                except AccountNotFoundError:
                    logger.warning("Rule %s references a missing account", rule.id)
                    continue

                if authority is not None:
                    decision = await self._remote_decision(authority, rule, decisions)
                else:
                    health = await probe_all(self._probe, rule.priority_chain)
                    decision = decide_active_url(rule.priority_chain, rule.active_url, health)
                if decision is None:
                    continue
                changed = await self._enforce(rule, account, decision) or changed
            if changed:
                await self._persist()
            else:
                await self._save_rules()
        finally:
            self._is_checking = False

    async def _remote_decision(
        self,
        authority: RemoteAuthority,
        rule: FailoverRule,
        cache: dict[str, dict[str, str | None] | None],
    ) -> ChainDecision | None:
        if rule.account_id not in cache:
            try:
                cache[rule.account_id] = await authority.fetch_decisions(rule.account_id)
            except EngineError as exc:
                logger.warning("Authority state unavailable for %s: %s", rule.account_id, exc)
                cache[rule.account_id] = None
        decisions = cache[rule.account_id]
        if decisions is None:
            return None
        if rule.id not in decisions:
            await self._mirror(rule)
            return None
        target = decisions[rule.id]
        if target is not None and target not in rule.priority_chain:
            logger.warning("Authority chose %s outside the chain of rule %s", target, rule.id)
            return None
        return ChainDecision(active_url=target, transition=_classify(rule, target))

    def _name_for(self, account: Account, url: str | None) -> str:
        if url is None:
            return "none"
        key = normalize_url(url)
        for addon in account.addons:
            if normalize_url(addon.transport_url) == key:
                return addon.metadata.custom_name or addon.manifest.name or url
        return url

    async def _enforce(self, rule: FailoverRule, account: Account, decision: ChainDecision) -> bool:
        """Make local flags match the decision. Returns True if state changed."""
        now = now_utc()
        rule.last_check = now
        previous = rule.active_url
        was_monitoring = rule.status is RuleStatus.MONITORING
        target = decision.active_url

        flags_changed = False
        if target is not None:
            assignment = {url: url == target for url in rule.priority_chain}
            try:
                flags_changed = await self._accounts.apply_enabled_flags(account.id, assignment)
            except EngineError as exc:
                rule.last_message = f"Failed to apply flags: {exc}"
                logger.warning("Rule %s: %s", rule.id, rule.last_message)
        rule.set_active(target)

        primary = self._name_for(account, rule.priority_chain[0])
        label = self._accounts.account_label(account.id)
        if decision.transition is FailoverLogType.FAILOVER:
            backup = self._name_for(account, target)
            rule.last_failover = now
            rule.last_message = f'Switched from "{self._name_for(account, previous)}" to "{backup}"'
            logger.warning("Rule %s failed over: %s", rule.id, rule.last_message)
            await self._log(
                rule,
                FailoverLogType.FAILOVER,
                primary,
                backup,
                f'Primary addon "{primary}" failed health check. Switched to backup "{backup}".',
            )
            await self._notifier.notify(
                self._webhook, FailoverLogType.FAILOVER, primary, backup, label
            )
        elif decision.transition is FailoverLogType.RECOVERY:
            backup = self._name_for(account, previous)
            rule.last_message = f'Primary "{primary}" recovered'
            logger.info("Rule %s recovered to its primary", rule.id)
            await self._log(
                rule,
                FailoverLogType.RECOVERY,
                primary,
                backup,
                f'Primary addon "{primary}" is back online. Switched back from "{backup}".',
            )
            await self._notifier.notify(
                self._webhook, FailoverLogType.RECOVERY, primary, backup, label
            )
        elif flags_changed and was_monitoring:
            rule.last_message = "Restored nominal state after a manual change"
            logger.info("Rule %s self-healed", rule.id)
            await self._log(
                rule,
                FailoverLogType.SELF_HEALING,
                primary,
                self._name_for(account, target),
                "Detected inconsistent state. Reset to exactly one enabled chain member.",
            )
        return flags_changed or previous != target

    # Polling

    def set_visible(self, visible: bool) -> None:
        self._visible = visible

    async def _run(self) -> None:
        while True:
            try:
                await self.check_rules()
            except Exception:
                logger.exception("Failover check cycle failed")
            await asyncio.sleep(self._interval_seconds)

    def start(self) -> None:
        if self.is_running:
            return
        logger.info("Starting failover polling every %ss", self._interval_seconds)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

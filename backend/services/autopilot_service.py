"""Server-side failover authority: rule storage and periodic evaluation.

Decisions use the same chain policy and liveness probe as the client engine,
so a device that defers to the server sees the choice it would have made.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select

from backend.models.autopilot import AutopilotRule
from engine.schemas.failover import RuleStatus
from engine.services.datetime_service import format_iso, now_utc
from engine.services.failover_policy import decide_active_url
from engine.services.health_service import probe_all

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from backend.schemas.autopilot import AutopilotRulePayload
    from engine.services.health_service import HealthProbe

logger = logging.getLogger(__name__)


def chain_of(rule: AutopilotRule) -> list[str]:
    try:
        chain = json.loads(rule.priority_chain)
    except json.JSONDecodeError:
        logger.warning("Rule %s has an unreadable chain", rule.rule_id)
        return []
    return [str(url) for url in chain] if isinstance(chain, list) else []


def rule_status(rule: AutopilotRule) -> RuleStatus:
    chain = chain_of(rule)
    if not rule.active_url or not chain:
        return RuleStatus.IDLE
    if rule.active_url == chain[0]:
        return RuleStatus.MONITORING
    return RuleStatus.FAILED_OVER


async def upsert_rule(
    session: AsyncSession,
    sync_id: str,
    payload: AutopilotRulePayload,
    addons: list[dict[str, Any]],
) -> AutopilotRule:
    """Register a rule or replace its chain, active member and addon snapshot."""
    chain = payload.priority_chain
    if not chain:
        raise ValueError("Priority chain must not be empty")
    active_url = payload.active_url if payload.active_url in chain else chain[0]
    now = format_iso(now_utc())

    rule = await session.get(AutopilotRule, (sync_id, payload.id))
    if rule is None:
        rule = AutopilotRule(sync_id=sync_id, rule_id=payload.id)
        session.add(rule)
    rule.account_id = payload.account_id
    rule.priority_chain = json.dumps(chain)
    rule.active_url = active_url
    rule.is_active = payload.is_active and payload.is_automatic
    rule.addons = json.dumps(addons, separators=(",", ":"))
    rule.updated_at = now
    await session.commit()
    await session.refresh(rule)
    return rule


async def get_account_rules(
    session: AsyncSession, sync_id: str, account_id: str
) -> list[AutopilotRule]:
    stmt = (
        select(AutopilotRule)
        .where(AutopilotRule.sync_id == sync_id, AutopilotRule.account_id == account_id)
        .order_by(AutopilotRule.rule_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def delete_rule(session: AsyncSession, sync_id: str, rule_id: str) -> int:
    result = await session.execute(
        delete(AutopilotRule).where(
            AutopilotRule.sync_id == sync_id, AutopilotRule.rule_id == rule_id
        )
    )
    await session.commit()
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


async def delete_account_rules(session: AsyncSession, sync_id: str, account_id: str) -> int:
    result = await session.execute(
        delete(AutopilotRule).where(
            AutopilotRule.sync_id == sync_id, AutopilotRule.account_id == account_id
        )
    )
    await session.commit()
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


async def delete_sync_rules(session: AsyncSession, sync_id: str) -> int:
    result = await session.execute(delete(AutopilotRule).where(AutopilotRule.sync_id == sync_id))
    await session.commit()
    return int(result.rowcount or 0)  # type: ignore[attr-defined]


async def evaluate_rules(
    session_factory: async_sessionmaker[AsyncSession], probe: HealthProbe
) -> int:
    """Run one evaluation pass over every active rule. Returns how many switched."""
    async with session_factory() as session:
        stmt = select(AutopilotRule).where(AutopilotRule.is_active.is_(True))
        result = await session.execute(stmt)
        rules = list(result.scalars().all())

        switched = 0
        for rule in rules:
            chain = chain_of(rule)
            if not chain:
                continue
            health = await probe_all(probe, chain)
            decision = decide_active_url(chain, rule.active_url, health)
            rule.last_check = format_iso(now_utc())
            if decision.transition is not None:
                logger.info(
                    "Autopilot %s for rule %s: %s -> %s",
                    decision.transition,
                    rule.rule_id,
                    rule.active_url,
                    decision.active_url,
                )
                rule.active_url = decision.active_url
                switched += 1
        await session.commit()
    return switched

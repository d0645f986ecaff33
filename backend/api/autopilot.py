"""Failover authority endpoints, scoped by sync id and token."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session, require_autopilot_owner
from backend.models.autopilot import AutopilotRule
from backend.schemas.autopilot import (
    AutopilotDeleteResponse,
    AutopilotStateResponse,
    AutopilotSyncRequest,
    AutopilotSyncResponse,
    RuleDecision,
)
from backend.services.autopilot_service import (
    delete_account_rules,
    delete_rule,
    get_account_rules,
    rule_status,
    upsert_rule,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/autopilot", tags=["autopilot"])


def _decision(rule: AutopilotRule) -> RuleDecision:
    return RuleDecision(
        rule_id=rule.rule_id,
        active_url=rule.active_url,
        status=str(rule_status(rule)),
        is_active=rule.is_active,
        last_check=rule.last_check,
    )


@router.post("/sync", response_model=AutopilotSyncResponse)
async def sync_rule(
    body: AutopilotSyncRequest,
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_id: Annotated[str, Depends(require_autopilot_owner)],
) -> AutopilotSyncResponse:
    """Register or update a rule with the account's current addon list."""
    rule = await upsert_rule(session, sync_id, body.rule, body.addons)
    logger.info("Autopilot rule %s registered for %s", rule.rule_id, sync_id)
    return AutopilotSyncResponse(rule=_decision(rule))


@router.get("/state/{account_id}", response_model=AutopilotStateResponse)
async def account_state(
    account_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_id: Annotated[str, Depends(require_autopilot_owner)],
) -> AutopilotStateResponse:
    rules = await get_account_rules(session, sync_id, account_id)
    return AutopilotStateResponse(account_id=account_id, rules=[_decision(r) for r in rules])


@router.delete("/account/{account_id}", response_model=AutopilotDeleteResponse)
async def retract_account(
    account_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_id: Annotated[str, Depends(require_autopilot_owner)],
) -> AutopilotDeleteResponse:
    removed = await delete_account_rules(session, sync_id, account_id)
    return AutopilotDeleteResponse(removed=removed)


@router.delete("/{rule_id}", response_model=AutopilotDeleteResponse)
async def retract_rule(
    rule_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_id: Annotated[str, Depends(require_autopilot_owner)],
) -> AutopilotDeleteResponse:
    removed = await delete_rule(session, sync_id, rule_id)
    return AutopilotDeleteResponse(removed=removed)

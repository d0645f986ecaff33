"""Liveness of the sync server: database reachability and the autopilot loop."""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_session
from backend.models.autopilot import AutopilotRule

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])

SERVER_VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str
    database: str
    autopilot: str


def _autopilot_state(request: Request) -> str:
    task = getattr(request.app.state, "autopilot_task", None)
    if task is None:
        return "stopped"
    return "failed" if task.done() else "running"


@router.get("/api/health", response_model=HealthResponse)
async def health_check(
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
) -> HealthResponse:
    """Report whether snapshots can be served and rules are being evaluated.

    A dead autopilot loop does not degrade the status: snapshot storage keeps
    working and clients fall back to local failover decisions.
    """
    database = "ok"
    try:
        await session.execute(select(func.count()).select_from(AutopilotRule))
    except SQLAlchemyError:
        logger.warning("Health check database query failed", exc_info=True)
        database = "error"

    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=SERVER_VERSION,
        database=database,
        autopilot=_autopilot_state(request),
    )

"""Snapshot store endpoints: one opaque body per sync id."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import authorize_record, get_session, get_settings, require_sync_token
from backend.config import Settings
from backend.schemas.sync import SyncDeleteResponse, SyncPushResponse
from backend.services.autopilot_service import delete_sync_rules
from backend.services.sync_store_service import (
    delete_record,
    get_record,
    read_snapshot,
    save_snapshot,
    token_matches,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])

# Serialize writes so a claim cannot race an update of the same id.
_sync_lock = asyncio.Lock()


async def _read_body(request: Request, limit: int) -> dict[str, Any]:
    """Read a JSON object body no larger than ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Snapshot too large"
        )
    raw = await request.body()
    if len(raw) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="Snapshot too large"
        )
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError("Request body must be JSON") from exc
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


@router.get("/{sync_id}")
async def fetch_snapshot(
    sync_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    token: Annotated[str, Depends(require_sync_token)],
) -> dict[str, Any]:
    """Return the stored body plus the server's ``syncedAt`` for it."""
    record = await authorize_record(session, sync_id, token)
    body = read_snapshot(record)
    body["syncedAt"] = record.updated_at
    return body


@router.post("/{sync_id}", response_model=SyncPushResponse)
async def store_snapshot(
    sync_id: str,
    request: Request,
    session: Annotated[AsyncSession, Depends(get_session)],
    settings: Annotated[Settings, Depends(get_settings)],
    token: Annotated[str, Depends(require_sync_token)],
) -> SyncPushResponse:
    """Claim a new sync id or update an existing one after the token check."""
    body = await _read_body(request, settings.max_sync_payload_bytes)
    async with _sync_lock:
        record = await get_record(session, sync_id)
        if record is not None and not token_matches(record, token):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized: Password mismatch",
            )
        synced_at = await save_snapshot(session, sync_id, token, body, record)
    return SyncPushResponse(synced_at=synced_at)


@router.delete("/{sync_id}", response_model=SyncDeleteResponse)
async def delete_snapshot(
    sync_id: str,
    session: Annotated[AsyncSession, Depends(get_session)],
    token: Annotated[str, Depends(require_sync_token)],
) -> SyncDeleteResponse:
    """Delete a snapshot together with every autopilot rule of the sync id."""
    logger.info("Received DELETE request for sync id %s", sync_id)
    async with _sync_lock:
        record = await authorize_record(session, sync_id, token)
        rules_removed = await delete_sync_rules(session, sync_id)
        await delete_record(session, record)
    return SyncDeleteResponse(rules_removed=rules_removed)

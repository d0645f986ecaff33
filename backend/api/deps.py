"""Shared API dependencies: settings, DB session and the sync-token gate."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.config import Settings
from backend.models.sync import SyncRecord
from backend.services.sync_store_service import get_record, token_matches
from engine.clients.sync_api import SYNC_ID_HEADER, SYNC_TOKEN_HEADER


def get_settings(request: Request) -> Settings:
    """Get application settings from app state."""
    settings: Settings = request.app.state.settings
    return settings


async def get_session(request: Request) -> AsyncGenerator[AsyncSession]:
    """Get a database session."""
    session_factory = request.app.state.session_factory
    async with session_factory() as session:
        yield session


def require_sync_token(
    token: Annotated[str | None, Header(alias=SYNC_TOKEN_HEADER)] = None,
) -> str:
    """Require the sync token header. Raises 400 if it is missing."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing ID or Password header",
        )
    return token


def require_sync_id(
    sync_id: Annotated[str | None, Header(alias=SYNC_ID_HEADER)] = None,
) -> str:
    """Require the sync id header used by the autopilot routes."""
    if not sync_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing ID or Password header",
        )
    return sync_id


async def authorize_record(session: AsyncSession, sync_id: str, token: str) -> SyncRecord:
    """Load a sync record and check the token. Raises 404 or 401."""
    record = await get_record(session, sync_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    if not token_matches(record, token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized: Invalid Password",
        )
    return record


async def require_autopilot_owner(
    session: Annotated[AsyncSession, Depends(get_session)],
    sync_id: Annotated[str, Depends(require_sync_id)],
    token: Annotated[str, Depends(require_sync_token)],
) -> str:
    """Authorize an autopilot request against its sync record. Returns the sync id."""
    await authorize_record(session, sync_id, token)
    return sync_id

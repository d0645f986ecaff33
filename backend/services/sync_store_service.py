"""Snapshot store: opaque per-sync-id bodies guarded by a hashed access token."""

from __future__ import annotations

import hashlib
import json
import logging
import secrets
from typing import TYPE_CHECKING, Any

from backend.exceptions import InternalServerError
from backend.models.sync import SyncRecord
from engine.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


def hash_sync_token(token: str) -> str:
    """Hash a sync token (SHA-256) for safe storage."""
    return hashlib.sha256(token.encode()).hexdigest()


def token_matches(record: SyncRecord, token: str) -> bool:
    return secrets.compare_digest(record.token_hash, hash_sync_token(token))


async def get_record(session: AsyncSession, sync_id: str) -> SyncRecord | None:
    return await session.get(SyncRecord, sync_id)


def read_snapshot(record: SyncRecord) -> dict[str, Any]:
    """Decode the stored body. A broken value raises InternalServerError."""
    try:
        body = json.loads(record.value)
    except json.JSONDecodeError as exc:
        raise InternalServerError(f"Stored snapshot for {record.sync_id} is unreadable") from exc
    if not isinstance(body, dict):
        raise InternalServerError(f"Stored snapshot for {record.sync_id} is not an object")
    return body


async def save_snapshot(
    session: AsyncSession,
    sync_id: str,
    token: str,
    body: dict[str, Any],
    record: SyncRecord | None = None,
) -> str:
    """Claim ``sync_id`` or overwrite its snapshot. Returns the server timestamp.

    The caller has already checked the token against an existing ``record``.
    """
    synced_at = format_iso(now_utc())
    stored = dict(body)
    stored.pop("syncedAt", None)
    value = json.dumps(stored, separators=(",", ":"))
    if record is None:
        session.add(
            SyncRecord(
                sync_id=sync_id,
                token_hash=hash_sync_token(token),
                value=value,
                created_at=synced_at,
                updated_at=synced_at,
            )
        )
        logger.info("Claimed sync id %s", sync_id)
    else:
        record.value = value
        record.updated_at = synced_at
    await session.commit()
    return synced_at


async def delete_record(session: AsyncSession, record: SyncRecord) -> None:
    await session.delete(record)
    await session.commit()
    logger.info("Deleted sync id %s", record.sync_id)

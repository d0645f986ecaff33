"""Local durable key-value storage backed by SQLAlchemy async."""

from __future__ import annotations

import json
import logging
from enum import StrEnum
from pathlib import Path
from typing import Any

from sqlalchemy import Text, delete, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from engine.exceptions import SerializationError
from engine.services.datetime_service import format_iso, now_utc

logger = logging.getLogger(__name__)

# Placeholder a broken serializer once wrote in place of real data; never load it.
CORRUPTION_SENTINEL = "[object Object]"


class StorageKey(StrEnum):
    ACCOUNTS = "accounts"
    SAVED_ADDONS = "saved-addons"
    FAILOVER_RULES = "failover-rules"
    FAILOVER_WEBHOOK = "failover-webhook"
    FAILOVER_HISTORY = "failover-history"
    USER_SALT = "user-salt"
    PASSWORD_HASH = "password-hash"
    SYNC_SESSION = "sync-session"
    PROFILES = "profiles"


class Base(DeclarativeBase):
    pass


class StoredValue(Base):
    """One JSON value under a well-known key."""

    __tablename__ = "kv_store"

    key: Mapped[str] = mapped_column(Text, primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)


def is_corrupt(raw: str) -> bool:
    """True when a stored or received text is the placeholder, bare or JSON-quoted."""
    text = raw.strip()
    return text in (CORRUPTION_SENTINEL, json.dumps(CORRUPTION_SENTINEL))


def _ensure_sqlite_parent(url: str) -> None:
    if url.startswith("sqlite") and "///" in url:
        db_path = url.split("///", 1)[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)


class KeyValueStore:
    """Process-wide local store. Values are JSON text; corrupt values read as absent."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    async def open(cls, url: str, echo: bool = False) -> KeyValueStore:
        """Create the engine and schema for ``url``."""
        _ensure_sqlite_parent(url)
        engine = create_async_engine(url, echo=echo)
        store = cls(engine)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        return store

    async def close(self) -> None:
        await self._engine.dispose()

    async def get(self, key: StorageKey | str) -> Any | None:
        async with self._session_factory() as session:
            row = await session.get(StoredValue, str(key))
            if row is None:
                return None
            raw = row.value

        if is_corrupt(raw):
            logger.warning("Discarding corrupted value under %s", key)
            await self.delete(key)
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unparseable value under %s", key, exc_info=True)
            await self.delete(key)
            return None

    async def set(self, key: StorageKey | str, value: Any) -> None:
        raw = json.dumps(value, separators=(",", ":"))
        if is_corrupt(raw):
            msg = f"Refusing to persist placeholder value under {key}"
            raise SerializationError(msg)
        async with self._session_factory() as session:
            await session.merge(
                StoredValue(key=str(key), value=raw, updated_at=format_iso(now_utc()))
            )
            await session.commit()

    async def delete(self, key: StorageKey | str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(StoredValue).where(StoredValue.key == str(key)))
            await session.commit()

    async def keys(self) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(StoredValue.key).order_by(StoredValue.key))
            return list(result.scalars().all())

    async def clear(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(StoredValue))
            await session.commit()

"""Server-side failover rules evaluated by the autopilot loop."""

from __future__ import annotations

from sqlalchemy import Boolean, Index, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.models.base import Base


class AutopilotRule(Base):
    """A failover rule mirrored from a client, scoped by sync id."""

    __tablename__ = "autopilot_rules"
    __table_args__ = (Index("ix_autopilot_rules_account", "sync_id", "account_id"),)

    sync_id: Mapped[str] = mapped_column(Text, primary_key=True)
    rule_id: Mapped[str] = mapped_column(Text, primary_key=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    priority_chain: Mapped[str] = mapped_column(Text, nullable=False)
    active_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    addons: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    last_check: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[str] = mapped_column(Text, nullable=False)

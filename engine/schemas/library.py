"""Saved addon templates and bulk operation results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import Field

from engine.schemas.addon import AddonManifest, CamelModel


class SourceType(StrEnum):
    MANUAL = "manual"
    CLONED_FROM_ACCOUNT = "cloned-from-account"


class SavedAddonHealth(CamelModel):
    is_online: bool
    last_checked: datetime


class SavedAddon(CamelModel):
    """A reusable addon template, independent of any account."""

    id: str
    name: str
    install_url: str
    manifest: AddonManifest = Field(default_factory=AddonManifest)
    tags: list[str] = Field(default_factory=list)
    profile_id: str | None = None
    created_at: datetime
    updated_at: datetime
    last_used: datetime | None = None
    source_type: SourceType = SourceType.MANUAL
    source_account_id: str | None = None
    metadata: dict[str, Any] | None = None
    health: SavedAddonHealth | None = None


@dataclass
class SkippedAddon:
    """An addon a merge declined to apply, with the reason."""

    addon_id: str
    reason: str


@dataclass
class MergeResult:
    """Per-account outcome of layering templates onto an addon list."""

    added: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[SkippedAddon] = field(default_factory=list)
    protected: list[str] = field(default_factory=list)


@dataclass
class BulkError:
    account_id: str
    error: str


@dataclass
class BulkDetail:
    account_id: str
    result: MergeResult


@dataclass
class BulkResult:
    """Outcome of a fan-out operation across many accounts.

    A non-zero ``failed`` with a non-zero ``success`` is a partial failure;
    nothing is raised for it.
    """

    success: int = 0
    failed: int = 0
    errors: list[BulkError] = field(default_factory=list)
    details: list[BulkDetail] = field(default_factory=list)

    def record_success(self, account_id: str, result: MergeResult | None = None) -> None:
        self.success += 1
        if result is not None:
            self.details.append(BulkDetail(account_id=account_id, result=result))

    def record_failure(self, account_id: str, error: str) -> None:
        self.failed += 1
        self.errors.append(BulkError(account_id=account_id, error=error))

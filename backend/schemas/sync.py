"""Snapshot store response schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class SyncPushResponse(BaseModel):
    """Acknowledgement of a stored snapshot, carrying the server clock."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    synced_at: str


class SyncDeleteResponse(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    success: bool = True
    rules_removed: int = 0

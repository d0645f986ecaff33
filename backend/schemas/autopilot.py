"""Failover authority (autopilot) schemas.

Clients speak camelCase; models accept either spelling and answer in
camelCase.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AutopilotRulePayload(_CamelModel):
    """A client's failover rule as mirrored to the server."""

    id: str = Field(min_length=1, max_length=200)
    account_id: str = Field(min_length=1, max_length=200)
    priority_chain: list[str] = Field(default_factory=list)
    active_url: str | None = None
    is_active: bool = True
    is_automatic: bool = True

    @field_validator("priority_chain")
    @classmethod
    def chain_must_be_unique(cls, v: list[str]) -> list[str]:
        """Drop blank and repeated chain members, keeping first occurrences."""
        _ = cls
        return list(dict.fromkeys(url.strip() for url in v if url.strip()))


class AutopilotSyncRequest(_CamelModel):
    rule: AutopilotRulePayload
    addons: list[dict[str, Any]] = Field(default_factory=list)


class RuleDecision(_CamelModel):
    """The authority's current choice for one rule."""

    rule_id: str
    active_url: str | None = None
    status: str
    is_active: bool = True
    last_check: str | None = None


class AutopilotStateResponse(_CamelModel):
    account_id: str
    rules: list[RuleDecision] = Field(default_factory=list)


class AutopilotSyncResponse(_CamelModel):
    success: bool = True
    rule: RuleDecision


class AutopilotDeleteResponse(_CamelModel):
    success: bool = True
    removed: int = 0

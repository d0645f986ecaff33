"""Failover rules, webhook config and the failover history log."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from pydantic import Field, computed_field, model_validator

from engine.schemas.addon import CamelModel


class RuleStatus(StrEnum):
    IDLE = "idle"
    MONITORING = "monitoring"
    FAILED_OVER = "failed-over"


class FailoverLogType(StrEnum):
    FAILOVER = "failover"
    RECOVERY = "recovery"
    SELF_HEALING = "self-healing"


class FailoverRule(CamelModel):
    """A priority chain of interchangeable addons on one account.

    ``status`` is derived from ``active_url`` and never stored independently.
    Use ``set_active`` and ``set_chain`` to mutate; both keep ``active_url``
    a member of ``priority_chain`` or empty.
    """

    id: str
    account_id: str
    priority_chain: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_automatic: bool = True
    active_url: str | None = None
    last_check: datetime | None = None
    last_failover: datetime | None = None
    last_message: str | None = None

    @model_validator(mode="after")
    def _drop_foreign_active_url(self) -> FailoverRule:
        if self.active_url is not None and self.active_url not in self.priority_chain:
            self.active_url = None
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def status(self) -> RuleStatus:
        if not self.active_url or not self.priority_chain:
            return RuleStatus.IDLE
        if self.active_url == self.priority_chain[0]:
            return RuleStatus.MONITORING
        return RuleStatus.FAILED_OVER

    def set_active(self, url: str | None) -> None:
        if url is not None and url not in self.priority_chain:
            msg = f"{url} is not a member of the priority chain of rule {self.id}"
            raise ValueError(msg)
        self.active_url = url

    def set_chain(self, chain: list[str]) -> None:
        self.priority_chain = list(chain)
        if self.active_url is not None and self.active_url not in self.priority_chain:
            self.active_url = None


class WebhookConfig(CamelModel):
    url: str = ""
    enabled: bool = False


class FailoverLog(CamelModel):
    id: str
    timestamp: datetime
    type: FailoverLogType
    rule_id: str
    primary_name: str = ""
    backup_name: str = ""
    message: str

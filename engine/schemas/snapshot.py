"""Composite sync snapshot and the persisted sync session."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field

from engine.schemas.addon import Account, CamelModel
from engine.schemas.failover import FailoverRule, WebhookConfig
from engine.schemas.library import SavedAddon

LIBRARY_FORMAT_VERSION = "1.0"


class SyncSnapshot(CamelModel):
    """Everything a device pushes to the remote store, before encryption."""

    accounts: list[Account] = Field(default_factory=list)
    saved_addons: list[SavedAddon] = Field(default_factory=list)
    failover_rules: list[FailoverRule] = Field(default_factory=list)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    salt: str | None = None
    name: str | None = None
    synced_at: datetime | None = None

    def to_payload(self) -> dict[str, object]:
        """Build the wire shape stored (encrypted) on the sync server."""
        return {
            "accounts": [account.to_json_dict() for account in self.accounts],
            "addons": {
                "version": LIBRARY_FORMAT_VERSION,
                "savedAddons": [saved.to_json_dict() for saved in self.saved_addons],
            },
            "failover": {
                "rules": [rule.to_json_dict() for rule in self.failover_rules],
                "webhook": self.webhook.to_json_dict(),
            },
            "salt": self.salt,
            "name": self.name,
            "syncedAt": self.synced_at.isoformat() if self.synced_at else None,
        }


class SyncSession(CamelModel):
    """Device-local sync session. The password is never part of it."""

    sync_id: str
    name: str | None = None
    last_synced_at: datetime | None = None

"""Discord-style webhook notifications for failover events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import httpx

from engine.schemas.failover import FailoverLogType
from engine.services.datetime_service import format_iso, now_utc

if TYPE_CHECKING:
    from engine.schemas.failover import WebhookConfig

logger = logging.getLogger(__name__)

WEBHOOK_USERNAME = "Addon Failover"

_EMBED_STYLE: dict[FailoverLogType, tuple[str, int, str]] = {
    FailoverLogType.FAILOVER: (
        "Failover Triggered",
        15158332,
        "Active addon failed its health check. Switched to the next healthy addon.",
    ),
    FailoverLogType.RECOVERY: (
        "Failover Recovery",
        3066993,
        "Primary addon is back online. Switched back from backup.",
    ),
    FailoverLogType.SELF_HEALING: (
        "Failover Self-Healing",
        15105570,
        "Enabled flags drifted from the active addon. Restored the expected state.",
    ),
}


def build_embed_payload(
    event: FailoverLogType, primary_name: str, backup_name: str, account_label: str
) -> dict[str, object]:
    title, color, summary = _EMBED_STYLE[event]
    return {
        "username": WEBHOOK_USERNAME,
        "embeds": [
            {
                "title": title,
                "color": color,
                "description": (
                    f"**Primary:** {primary_name}\n"
                    f"**Backup:** {backup_name}\n"
                    f"**Account:** {account_label or 'Unknown'}\n\n{summary}"
                ),
                "timestamp": format_iso(now_utc()),
            }
        ],
    }


class WebhookNotifier:
    """Posts failover events to the configured webhook. Never raises."""

    def __init__(self, client: httpx.AsyncClient, timeout: float = 10.0) -> None:
        self._client = client
        self._timeout = timeout

    async def notify(
        self,
        config: WebhookConfig,
        event: FailoverLogType,
        primary_name: str,
        backup_name: str,
        account_label: str,
    ) -> bool:
        if not config.enabled or not config.url:
            return False
        payload = build_embed_payload(event, primary_name, backup_name, account_label)
        try:
            resp = await self._client.post(config.url, json=payload, timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("Webhook delivery failed: %s", exc)
            return False
        if not resp.is_success:
            logger.warning("Webhook returned %d", resp.status_code)
            return False
        return True

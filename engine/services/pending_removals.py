"""Short-lived record of addon URLs whose removal is in flight."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from engine.services.merge_service import normalize_url

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from engine.schemas.addon import AddonRecord

logger = logging.getLogger(__name__)


class PendingRemovals:
    """Track URLs being removed per account so stale fetches cannot revive them.

    Each mark records how many occurrences of the URL the account keeps
    after the removal: zero when every equivalent entry went, more when one
    duplicate was removed by index. Fetched lists are capped to that count.
    A URL is marked before the remote write is issued and released a grace
    window after it completes. Release timers are owned here and cancelled
    by ``clear``.
    """

    def __init__(self, grace_seconds: float) -> None:
        self._grace_seconds = grace_seconds
        self._pending: dict[str, dict[str, int]] = {}
        self._timers: dict[tuple[str, str], asyncio.TimerHandle] = {}

    def mark(self, account_id: str, url: str, remaining: int = 0) -> None:
        key = normalize_url(url)
        self._pending.setdefault(account_id, {})[key] = max(remaining, 0)
        timer = self._timers.pop((account_id, key), None)
        if timer is not None:
            timer.cancel()

    def is_pending(self, account_id: str, url: str) -> bool:
        return normalize_url(url) in self._pending.get(account_id, {})

    def pending_for(self, account_id: str) -> dict[str, int]:
        """Normalized URL -> occurrences still allowed, for one account."""
        return dict(self._pending.get(account_id, {}))

    def filter(
        self,
        account_id: str,
        records: Iterable[AddonRecord],
        keep: Callable[[AddonRecord], bool] | None = None,
    ) -> list[AddonRecord]:
        """Drop occurrences of pending URLs beyond their allowed count.

        Earlier occurrences win. Records matching ``keep`` always survive and
        do not use up the allowance.
        """
        allowed = self.pending_for(account_id)
        if not allowed:
            return list(records)
        kept: list[AddonRecord] = []
        for record in records:
            key = normalize_url(record.transport_url)
            if key in allowed and not (keep is not None and keep(record)):
                if allowed[key] <= 0:
                    logger.debug("Skipping %s: removal in flight", record.transport_url)
                    continue
                allowed[key] -= 1
            kept.append(record)
        return kept

    def release(self, account_id: str, url: str) -> None:
        key = normalize_url(url)
        self._timers.pop((account_id, key), None)
        urls = self._pending.get(account_id)
        if urls is None:
            return
        urls.pop(key, None)
        if not urls:
            del self._pending[account_id]

    def release_later(self, account_id: str, url: str) -> None:
        """Release the mark after the grace window."""
        key = normalize_url(url)
        if self._grace_seconds <= 0:
            self.release(account_id, url)
            return
        loop = asyncio.get_running_loop()
        previous = self._timers.pop((account_id, key), None)
        if previous is not None:
            previous.cancel()
        self._timers[(account_id, key)] = loop.call_later(
            self._grace_seconds, self.release, account_id, url
        )

    def clear(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._pending.clear()

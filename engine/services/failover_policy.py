"""Pure priority-chain decision shared by the local engine and the server authority."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from engine.schemas.failover import FailoverLogType

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


@dataclass
class ChainDecision:
    """Which member should be active, and what kind of switch that is.

    ``transition`` is None when the active member does not change.
    """

    active_url: str | None
    transition: FailoverLogType | None = None


def _first_healthy(chain: Sequence[str], health: Mapping[str, bool], start: int) -> str | None:
    for url in chain[start:]:
        if health.get(url, False):
            return url
    return None


def decide_active_url(
    chain: Sequence[str], current: str | None, health: Mapping[str, bool]
) -> ChainDecision:
    """Decide the active chain member from probe results.

    - An empty chain has no active member.
    - An unset or foreign ``current`` is treated as chain[0].
    - While chain[0] is active and healthy, nothing changes.
    - When the active member is down, the first healthy lower-priority member
      takes over. With no healthy candidate the current member stays.
    - While failed over, a healthy chain[0] always wins back.
    """
    if not chain:
        return ChainDecision(active_url=None)

    primary = chain[0]
    active = current if current in chain else primary

    if active == primary:
        if health.get(primary, False):
            return ChainDecision(active_url=primary)
        candidate = _first_healthy(chain, health, 1)
        if candidate is None:
            return ChainDecision(active_url=primary)
        return ChainDecision(active_url=candidate, transition=FailoverLogType.FAILOVER)

    if health.get(primary, False):
        return ChainDecision(active_url=primary, transition=FailoverLogType.RECOVERY)
    if health.get(active, False):
        return ChainDecision(active_url=active)
    candidate = _first_healthy(chain, health, 1)
    if candidate is None or candidate == active:
        return ChainDecision(active_url=active)
    return ChainDecision(active_url=candidate, transition=FailoverLogType.FAILOVER)

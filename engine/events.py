"""Typed events and the bus that carries cross-store side effects.

Stores never call each other for side effects. They publish an event; the
mediator (``engine.app.build_engine``) subscribes the interested component.
"""

from __future__ import annotations

import inspect
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class Domain(StrEnum):
    ACCOUNTS = "accounts"
    LIBRARY = "library"
    FAILOVER = "failover"


@dataclass(frozen=True)
class StateChanged:
    """A sub-domain was mutated and persisted locally."""

    domain: Domain


@dataclass(frozen=True)
class ManualToggle:
    """The user flipped an addon's enabled flag by hand."""

    account_id: str
    transport_url: str


@dataclass(frozen=True)
class AccountRemoved:
    account_id: str


Handler = Callable[[Any], Awaitable[None] | None]


class EventBus:
    """In-process publish/subscribe, delivered in subscription order.

    Handlers run to completion before ``publish`` returns. A failing handler
    is logged and does not stop delivery to the rest.
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: type, handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: object) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Event handler failed for %s", type(event).__name__)

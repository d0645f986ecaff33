"""Bounded-time liveness probes for addon transport URLs."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import httpx

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

MANIFEST_SUFFIX = "manifest.json"


def manifest_url_for(transport_url: str) -> str:
    """Return the manifest endpoint for a transport URL."""
    base = transport_url.strip()
    if base.endswith(MANIFEST_SUFFIX):
        return base
    return f"{base.rstrip('/')}/{MANIFEST_SUFFIX}"


@runtime_checkable
class HealthProbe(Protocol):
    """Anything that can answer "is this addon alive?" without raising."""

    async def check(self, transport_url: str) -> bool: ...


async def check_addon_health(
    client: httpx.AsyncClient, transport_url: str, timeout: float
) -> bool:
    """Probe an addon's manifest endpoint.

    Healthy means a 2xx response whose JSON body is an object with an ``id``
    within ``timeout`` seconds. A timeout, transport error or bad body is
    unhealthy; nothing is raised.
    """
    url = manifest_url_for(transport_url)
    try:
        async with asyncio.timeout(timeout):
            resp = await client.get(url, timeout=timeout)
    except TimeoutError:
        logger.info("Health probe timed out for %s", url)
        return False
    except httpx.HTTPError as exc:
        logger.info("Health probe failed for %s: %s", url, exc)
        return False

    if not resp.is_success:
        logger.info("Health probe for %s returned %d", url, resp.status_code)
        return False
    try:
        data = resp.json()
    except ValueError:
        logger.info("Health probe for %s returned a non-JSON body", url)
        return False
    return isinstance(data, dict) and bool(data.get("id"))


class HttpHealthProbe:
    """HealthProbe over a shared httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient, timeout: float) -> None:
        self._client = client
        self._timeout = timeout

    async def check(self, transport_url: str) -> bool:
        return await check_addon_health(self._client, transport_url, self._timeout)


async def probe_all(probe: HealthProbe, urls: Iterable[str]) -> dict[str, bool]:
    """Probe several URLs concurrently; duplicates are probed once."""
    unique = list(dict.fromkeys(urls))
    results = await asyncio.gather(*(probe.check(url) for url in unique))
    return dict(zip(unique, results, strict=True))

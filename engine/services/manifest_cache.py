"""In-memory TTL cache for fetched addon manifests. State is lost on restart."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from engine.schemas.addon import AddonManifest


class ManifestCache:
    """Cache manifests by transport URL for a fixed TTL.

    Thread-safety: safe under asyncio's single-threaded cooperative model.
    Reads and writes are synchronous with no await points between them.
    """

    def __init__(self, ttl_seconds: int) -> None:
        self._ttl_seconds = ttl_seconds
        self._entries: dict[str, tuple[float, AddonManifest]] = {}

    def get(self, url: str) -> AddonManifest | None:
        """Return the cached manifest, evicting it if expired."""
        entry = self._entries.get(url)
        if entry is None:
            return None
        stored_at, manifest = entry
        if datetime.now(UTC).timestamp() - stored_at >= self._ttl_seconds:
            del self._entries[url]
            return None
        return manifest

    def put(self, url: str, manifest: AddonManifest) -> None:
        self._entries[url] = (datetime.now(UTC).timestamp(), manifest)

    def invalidate(self, url: str) -> None:
        self._entries.pop(url, None)

    def clear(self) -> None:
        self._entries.clear()

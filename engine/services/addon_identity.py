"""Manifest sanitization and identification of well-known addons."""

from __future__ import annotations

import re
from typing import Any
from urllib.parse import urlsplit

from engine.schemas.addon import AddonManifest

UNKNOWN_ADDON_NAME = "Unknown Addon"
DEFAULT_VERSION = "0.0.0"

OFFICIAL_ADDONS: dict[str, dict[str, str]] = {
    "cinemeta": {
        "name": "Cinemeta",
        "logo": "https://v3-cinemeta.strem.io/logo.png",
        "description": "Official Movie and Series directory",
    },
    "watchhub": {
        "name": "WatchHub",
        "logo": "https://watchhub.strem.io/logo.png",
        "description": "Find where to watch movies & series",
    },
    "youtube": {
        "name": "YouTube",
        "logo": "https://v3-channels.strem.io/logo.png",
        "description": "Official YouTube addon",
    },
    "opensubtitles": {
        "name": "OpenSubtitles",
        "logo": "https://opensubtitles-v3.strem.io/logo.png",
        "description": "Official subtitle provider",
    },
    "local": {
        "name": "Local Files",
        "description": "Files from your local computer",
    },
}

_URL_PATTERNS: tuple[tuple[str, str], ...] = (
    ("v3-cinemeta.strem.io", "cinemeta"),
    ("watchhub.strem.io", "watchhub"),
    ("v3-channels.strem.io", "youtube"),
    ("opensubtitles-v3.strem.io", "opensubtitles"),
    ("127.0.0.1:11470/local-addon", "local"),
    ("localhost:11470/local-addon", "local"),
)


def hostname_identifier(transport_url: str) -> str:
    """Derive a readable name from the URL host.

    ``torrentio.strem.fun`` becomes ``Torrentio Strem``.
    """
    try:
        hostname = urlsplit(transport_url).hostname
    except ValueError:
        hostname = None
    if not hostname:
        return UNKNOWN_ADDON_NAME
    hostname = re.sub(r"^www\.", "", hostname)
    hostname = re.sub(r"\.[^.]+$", "", hostname)
    words = [word for word in re.split(r"[.-]", hostname) if word]
    return " ".join(word[:1].upper() + word[1:] for word in words) or UNKNOWN_ADDON_NAME


def _official_key(transport_url: str, manifest_id: str, name: str) -> str | None:
    lowered_id = manifest_id.lower()
    lowered_name = name.lower()
    for key, meta in OFFICIAL_ADDONS.items():
        if key in lowered_id or (lowered_name and lowered_name == meta["name"].lower()):
            return key
    url = transport_url.lower()
    for pattern, key in _URL_PATTERNS:
        if pattern in url:
            return key
    return None


def identify_addon(transport_url: str, raw: dict[str, Any] | None) -> AddonManifest:
    """Fill the identity fields of a partial manifest without dropping other keys."""
    data: dict[str, Any] = dict(raw or {})
    manifest_id = str(data.get("id") or "")
    name = str(data.get("name") or "")
    unknown_name = not name or name == UNKNOWN_ADDON_NAME

    key = _official_key(transport_url, manifest_id, name)
    meta = OFFICIAL_ADDONS.get(key, {}) if key else {}

    data["id"] = manifest_id or key or "unknown"
    if unknown_name:
        data["name"] = meta.get("name") or hostname_identifier(transport_url)
    data["logo"] = data.get("logo") or meta.get("logo")
    data["description"] = data.get("description") or meta.get("description")
    data["version"] = data.get("version") or DEFAULT_VERSION
    data["types"] = data.get("types") or []
    return AddonManifest.model_validate(data)


def sanitize_manifest(
    transport_url: str, raw: dict[str, Any] | AddonManifest | None
) -> AddonManifest:
    """Normalize whatever the remote service returned into a usable manifest."""
    if isinstance(raw, AddonManifest):
        raw = raw.to_json_dict()
    if raw is not None and not isinstance(raw, dict):
        raw = None
    return identify_addon(transport_url, raw)


def is_broken_manifest(manifest: AddonManifest | None) -> bool:
    """A manifest is broken when name, version or resources are missing."""
    if manifest is None:
        return True
    if not manifest.name or manifest.name == UNKNOWN_ADDON_NAME:
        return True
    if manifest.version in ("", DEFAULT_VERSION):
        return True
    return not manifest.resources

"""Thin client for the third-party addon service (collection get/set, login, manifests)."""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from engine.exceptions import BadCredentialError, RemoteServiceError
from engine.schemas.addon import AddonRecord
from engine.services.addon_identity import sanitize_manifest
from engine.services.health_service import manifest_url_for

logger = logging.getLogger(__name__)


@runtime_checkable
class AddonService(Protocol):
    """Operations the account store needs from the third-party service."""

    async def login(self, email: str, password: str) -> str:
        """Return an auth key for the credentials."""
        ...

    async def get_addons(self, auth_key: str) -> list[AddonRecord]:
        """Return the remote collection. Records carry default local flags."""
        ...

    async def set_addons(self, auth_key: str, addons: list[AddonRecord]) -> None:
        """Replace the remote collection verbatim."""
        ...

    async def fetch_manifest(self, transport_url: str) -> AddonRecord:
        """Fetch and sanitize the manifest behind a transport URL."""
        ...


def prepare_for_push(addons: list[AddonRecord]) -> list[dict[str, Any]]:
    """Shape a local list for the remote service.

    Disabled addons are left out and local name/logo/description overrides
    are written into the manifest copy that is sent. Local flags and
    metadata never leave the device.
    """
    prepared: list[dict[str, Any]] = []
    for addon in addons:
        if not addon.flags.enabled:
            continue
        manifest = addon.manifest.to_json_dict()
        manifest.setdefault("types", [])
        manifest.setdefault("resources", [])
        meta = addon.metadata
        if meta.custom_name:
            manifest["name"] = meta.custom_name
        if meta.custom_logo:
            manifest["logo"] = meta.custom_logo
        if meta.custom_description:
            manifest["description"] = meta.custom_description
        entry: dict[str, Any] = {"transportUrl": addon.transport_url, "manifest": manifest}
        if addon.transport_name:
            entry["transportName"] = addon.transport_name
        prepared.append(entry)
    return prepared


def _error_message(error: object, fallback: str) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return fallback


class HttpAddonService:
    """AddonService over the service's JSON-RPC style HTTP API."""

    def __init__(self, client: httpx.AsyncClient, api_url: str) -> None:
        self._client = client
        self._api_url = api_url.rstrip("/")

    async def _call(self, method: str, body: dict[str, Any], fallback: str) -> dict[str, Any]:
        try:
            resp = await self._client.post(f"{self._api_url}/api/{method}", json=body)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"{fallback}: {exc}") from exc
        if resp.status_code == 401:
            raise BadCredentialError("Invalid or expired auth key")
        if not resp.is_success:
            raise RemoteServiceError(f"{fallback} ({resp.status_code})", resp.status_code)
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteServiceError(f"{fallback}: invalid JSON response") from exc
        if not isinstance(data, dict):
            raise RemoteServiceError(f"{fallback}: unexpected response shape")
        if data.get("error"):
            raise RemoteServiceError(_error_message(data["error"], fallback))
        result = data.get("result")
        return result if isinstance(result, dict) else {}

    async def login(self, email: str, password: str) -> str:
        result = await self._call(
            "login", {"type": "Auth", "email": email, "password": password}, "Login failed"
        )
        auth_key = result.get("authKey")
        if not auth_key:
            raise BadCredentialError("Login failed: no auth key returned")
        return str(auth_key)

    async def get_addons(self, auth_key: str) -> list[AddonRecord]:
        result = await self._call(
            "addonCollectionGet",
            {"type": "AddonCollectionGet", "authKey": auth_key, "update": True},
            "Failed to get addon collection",
        )
        records: list[AddonRecord] = []
        for raw in result.get("addons") or []:
            if not isinstance(raw, dict) or not raw.get("transportUrl"):
                logger.warning("Skipping malformed addon entry in collection")
                continue
            url = str(raw["transportUrl"])
            records.append(
                AddonRecord(
                    transport_url=url,
                    transport_name=str(raw.get("transportName") or ""),
                    manifest=sanitize_manifest(url, raw.get("manifest")),
                )
            )
        return records

    async def set_addons(self, auth_key: str, addons: list[AddonRecord]) -> None:
        await self._call(
            "addonCollectionSet",
            {"type": "AddonCollectionSet", "authKey": auth_key, "addons": prepare_for_push(addons)},
            "Failed to update addon collection",
        )

    async def fetch_manifest(self, transport_url: str) -> AddonRecord:
        url = manifest_url_for(transport_url)
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"Failed to fetch manifest from {url}: {exc}") from exc
        if resp.status_code == 404:
            raise RemoteServiceError("Addon manifest not found at this URL", 404)
        if not resp.is_success:
            raise RemoteServiceError(
                f"Addon server responded with {resp.status_code}", resp.status_code
            )
        try:
            data = resp.json()
        except ValueError as exc:
            raise RemoteServiceError("Addon manifest is not valid JSON") from exc
        if not isinstance(data, dict) or not all(data.get(k) for k in ("id", "name", "version")):
            raise RemoteServiceError("Invalid addon manifest - missing required fields")
        return AddonRecord(
            transport_url=transport_url, manifest=sanitize_manifest(transport_url, data)
        )

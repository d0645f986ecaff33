"""Client for the sync server: encrypted snapshot storage and the failover authority."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import httpx

from engine.exceptions import AccountNotFoundError, BadCredentialError, RemoteServiceError

if TYPE_CHECKING:
    from engine.schemas.addon import AddonRecord
    from engine.schemas.failover import FailoverRule

logger = logging.getLogger(__name__)

SYNC_TOKEN_HEADER = "x-sync-password"
SYNC_ID_HEADER = "x-sync-id"


def _raise_for_status(resp: httpx.Response, action: str) -> None:
    """Map the server's auth gate onto the engine taxonomy."""
    if resp.status_code == 404:
        raise AccountNotFoundError("Sync account not found")
    if resp.status_code == 401:
        raise BadCredentialError("Incorrect password")
    if not resp.is_success:
        raise RemoteServiceError(f"{action} failed ({resp.status_code})", resp.status_code)


def _json_body(resp: httpx.Response, action: str) -> Any:
    try:
        return resp.json()
    except ValueError as exc:
        raise RemoteServiceError(f"{action}: invalid JSON response") from exc


class HttpSyncApi:
    """Snapshot and autopilot endpoints of the sync server."""

    def __init__(self, client: httpx.AsyncClient, server_url: str) -> None:
        self._client = client
        self._server_url = server_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        action: str,
        sync_id: str | None = None,
        json: Any = None,
    ) -> httpx.Response:
        headers = {SYNC_TOKEN_HEADER: token}
        if sync_id is not None:
            headers[SYNC_ID_HEADER] = sync_id
        try:
            resp = await self._client.request(
                method, f"{self._server_url}{path}", headers=headers, json=json
            )
        except httpx.HTTPError as exc:
            raise RemoteServiceError(f"{action} failed: {exc}") from exc
        _raise_for_status(resp, action)
        return resp

    # Snapshot store

    async def fetch_snapshot(self, sync_id: str, token: str) -> dict[str, Any]:
        resp = await self._request("GET", f"/api/sync/{sync_id}", token, "Sync pull")
        body = _json_body(resp, "Sync pull")
        if not isinstance(body, dict):
            raise RemoteServiceError("Sync pull: unexpected response shape")
        return body

    async def store_snapshot(self, sync_id: str, token: str, body: dict[str, Any]) -> str | None:
        """Store a snapshot and return the server's ``syncedAt`` (raw)."""
        resp = await self._request("POST", f"/api/sync/{sync_id}", token, "Sync push", json=body)
        result = _json_body(resp, "Sync push")
        if isinstance(result, dict) and result.get("syncedAt"):
            return str(result["syncedAt"])
        return None

    async def delete_snapshot(self, sync_id: str, token: str) -> None:
        await self._request("DELETE", f"/api/sync/{sync_id}", token, "Sync delete")

    # Failover authority

    async def register_rule(
        self, sync_id: str, token: str, rule: FailoverRule, addons: list[AddonRecord]
    ) -> None:
        body = {
            "rule": rule.to_json_dict(),
            "addons": [addon.to_json_dict() for addon in addons],
        }
        await self._request(
            "POST", "/api/autopilot/sync", token, "Autopilot sync", sync_id=sync_id, json=body
        )

    async def fetch_decisions(
        self, sync_id: str, token: str, account_id: str
    ) -> dict[str, str | None]:
        resp = await self._request(
            "GET", f"/api/autopilot/state/{account_id}", token, "Autopilot state", sync_id=sync_id
        )
        body = _json_body(resp, "Autopilot state")
        decisions: dict[str, str | None] = {}
        for item in body.get("rules", []) if isinstance(body, dict) else []:
            if isinstance(item, dict) and item.get("ruleId"):
                active = item.get("activeUrl")
                decisions[str(item["ruleId"])] = str(active) if active else None
        return decisions

    async def delete_rule(self, sync_id: str, token: str, rule_id: str) -> None:
        await self._request(
            "DELETE", f"/api/autopilot/{rule_id}", token, "Autopilot delete", sync_id=sync_id
        )

    async def delete_account_rules(self, sync_id: str, token: str, account_id: str) -> None:
        await self._request(
            "DELETE",
            f"/api/autopilot/account/{account_id}",
            token,
            "Autopilot delete",
            sync_id=sync_id,
        )


@runtime_checkable
class RemoteAuthority(Protocol):
    """What the failover engine needs from a remote decision authority."""

    @property
    def is_available(self) -> bool: ...

    async def register(self, rule: FailoverRule, addons: list[AddonRecord]) -> None: ...

    async def fetch_decisions(self, account_id: str) -> dict[str, str | None]: ...

    async def retract(self, rule_id: str) -> None: ...

    async def retract_account(self, account_id: str) -> None: ...


class SyncServerAuthority:
    """RemoteAuthority bound to the current sync session's credentials.

    ``credentials`` returns (sync_id, token) while a session is authenticated
    and None otherwise; the authority is unavailable without a session.
    """

    def __init__(
        self, api: HttpSyncApi, credentials: Callable[[], tuple[str, str] | None]
    ) -> None:
        self._api = api
        self._credentials = credentials

    @property
    def is_available(self) -> bool:
        return self._credentials() is not None

    def _require(self) -> tuple[str, str]:
        creds = self._credentials()
        if creds is None:
            raise BadCredentialError("No authenticated sync session")
        return creds

    async def register(self, rule: FailoverRule, addons: list[AddonRecord]) -> None:
        sync_id, token = self._require()
        await self._api.register_rule(sync_id, token, rule, addons)

    async def fetch_decisions(self, account_id: str) -> dict[str, str | None]:
        sync_id, token = self._require()
        return await self._api.fetch_decisions(sync_id, token, account_id)

    async def retract(self, rule_id: str) -> None:
        sync_id, token = self._require()
        await self._api.delete_rule(sync_id, token, rule_id)

    async def retract_account(self, account_id: str) -> None:
        sync_id, token = self._require()
        await self._api.delete_account_rules(sync_id, token, account_id)

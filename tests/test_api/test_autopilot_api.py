"""Tests for the failover authority endpoints, the evaluation pass and health."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from backend.services.autopilot_service import evaluate_rules
from engine.clients.sync_api import SYNC_ID_HEADER, SYNC_TOKEN_HEADER
from tests.conftest import FakeProbe

if TYPE_CHECKING:
    from httpx import AsyncClient

SYNC_ID = "owner"
TOKEN = "t" * 64
P = "https://primary.example.com/manifest.json"
S = "https://secondary.example.com/manifest.json"
T = "https://tertiary.example.com/manifest.json"

HEADERS = {SYNC_TOKEN_HEADER: TOKEN, SYNC_ID_HEADER: SYNC_ID}


@pytest.fixture
async def owner(client: AsyncClient) -> AsyncClient:
    """A client whose sync id has been claimed."""
    resp = await client.post(
        f"/api/sync/{SYNC_ID}", json={"data": "x", "isEncrypted": True}, headers=HEADERS
    )
    assert resp.status_code == 200
    return client


async def _register(client: AsyncClient, **rule: Any) -> dict[str, Any]:
    payload = {"id": "r1", "accountId": "acc", "priorityChain": [P, S, T], **rule}
    resp = await client.post("/api/autopilot/sync", json={"rule": payload}, headers=HEADERS)
    assert resp.status_code == 200
    decision: dict[str, Any] = resp.json()["rule"]
    return decision


async def _state(client: AsyncClient, account_id: str = "acc") -> list[dict[str, Any]]:
    resp = await client.get(f"/api/autopilot/state/{account_id}", headers=HEADERS)
    assert resp.status_code == 200
    rules: list[dict[str, Any]] = resp.json()["rules"]
    return rules


class TestRegistration:
    async def test_new_rule_starts_on_primary(self, owner: AsyncClient) -> None:
        decision = await _register(owner)

        assert decision["ruleId"] == "r1"
        assert decision["activeUrl"] == P
        assert decision["status"] == "monitoring"

    async def test_known_active_member_is_kept(self, owner: AsyncClient) -> None:
        decision = await _register(owner, activeUrl=S)

        assert decision["activeUrl"] == S
        assert decision["status"] == "failed-over"

    async def test_chain_is_deduplicated(self, owner: AsyncClient) -> None:
        decision = await _register(owner, priorityChain=[f" {S} ", S, "", P], activeUrl=P)

        assert decision["status"] == "failed-over"

    async def test_empty_chain_is_rejected(self, owner: AsyncClient) -> None:
        resp = await owner.post(
            "/api/autopilot/sync",
            json={"rule": {"id": "r1", "accountId": "acc", "priorityChain": []}},
            headers=HEADERS,
        )

        assert resp.status_code == 422
        assert resp.json()["detail"] == "Priority chain must not be empty"

    async def test_manual_rules_are_not_evaluated(self, owner: AsyncClient) -> None:
        decision = await _register(owner, isAutomatic=False)

        assert decision["isActive"] is False

    async def test_requires_both_headers(self, owner: AsyncClient) -> None:
        resp = await owner.get("/api/autopilot/state/acc", headers={SYNC_TOKEN_HEADER: TOKEN})

        assert resp.status_code == 400

    async def test_requires_a_claimed_id(self, client: AsyncClient) -> None:
        resp = await client.get("/api/autopilot/state/acc", headers=HEADERS)

        assert resp.status_code == 404

    async def test_rules_are_scoped_by_account(self, owner: AsyncClient) -> None:
        await _register(owner)
        await _register(owner, id="r2", accountId="other")

        assert [r["ruleId"] for r in await _state(owner)] == ["r1"]
        assert [r["ruleId"] for r in await _state(owner, "other")] == ["r2"]


class TestRetraction:
    async def test_retract_rule(self, owner: AsyncClient) -> None:
        await _register(owner)

        resp = await owner.delete("/api/autopilot/r1", headers=HEADERS)

        assert resp.json() == {"success": True, "removed": 1}
        assert await _state(owner) == []

    async def test_retract_account(self, owner: AsyncClient) -> None:
        await _register(owner)
        await _register(owner, id="r2")

        resp = await owner.delete("/api/autopilot/account/acc", headers=HEADERS)

        assert resp.json()["removed"] == 2


class TestEvaluation:
    async def test_failover_and_recovery(self, owner: AsyncClient) -> None:
        await _register(owner)
        session_factory = owner.app.state.session_factory  # type: ignore[attr-defined]

        switched = await evaluate_rules(session_factory, FakeProbe({S: True, T: True}))

        assert switched == 1
        (rule,) = await _state(owner)
        assert rule["activeUrl"] == S
        assert rule["status"] == "failed-over"
        assert rule["lastCheck"] is not None

        assert await evaluate_rules(session_factory, FakeProbe({P: True, S: True})) == 1
        (rule,) = await _state(owner)
        assert rule["activeUrl"] == P

    async def test_all_down_keeps_the_active_member(self, owner: AsyncClient) -> None:
        await _register(owner, activeUrl=S)
        session_factory = owner.app.state.session_factory  # type: ignore[attr-defined]

        assert await evaluate_rules(session_factory, FakeProbe()) == 0
        (rule,) = await _state(owner)
        assert rule["activeUrl"] == S

    async def test_inactive_rules_are_skipped(self, owner: AsyncClient) -> None:
        await _register(owner, isActive=False)
        probe = FakeProbe({S: True})

        switched = await evaluate_rules(
            owner.app.state.session_factory, probe  # type: ignore[attr-defined]
        )

        assert switched == 0
        assert probe.calls == []


class TestHealth:
    async def test_health(self, client: AsyncClient) -> None:
        resp = await client.get("/api/health")

        assert resp.status_code == 200
        assert resp.json() == {
            "status": "ok",
            "version": "0.1.0",
            "database": "ok",
            "autopilot": "stopped",
        }

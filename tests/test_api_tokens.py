"""
tests/test_api_tokens.py -- Integration tests for the token and protected-resource routes.

These tests exercise the full stack: FastAPI routing -> bearer dependency ->
TokenService -> TokenStore -> response model serialization -> error envelope.

Coverage:
  - 401 with one uniform body for missing, malformed, wrong, expired and revoked credentials
  - Token creation (wildcard and scoped), listing, statistics, check-ability
  - Revocation: one, all, all-but-current; 404 on other owners' tokens
  - PATCH abilities with ownership check
  - Ability-gated sample routes: 403 vs 200

Fixtures used (from conftest.py):
  - api_client: module-scoped TestClient with isolated in-memory stores
  - api_owner:  a fresh user with one wildcard token (per test)
  - make_api_owner: factory for additional users
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

_UNAUTHORIZED = {"error": {"code": "unauthorized", "message": "Authentication required."}}


def _bearer(plaintext: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {plaintext}"}


def _create(client: TestClient, owner, name: str = "cli", **body) -> dict:
    path = "/api/v1/tokens/create-with-abilities" if "abilities" in body else "/api/v1/tokens/create"
    resp = client.post(path, json={"name": name, **body}, headers=owner.headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


class TestUnauthorized:
    """Every authentication failure looks the same to the client."""

    def test_missing_header(self, api_client: TestClient) -> None:
        resp = api_client.get("/api/v1/tokens")
        assert resp.status_code == 401
        assert resp.json() == _UNAUTHORIZED
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.parametrize(
        "header",
        ["Bearer", "Bearer ", "Basic dXNlcjpwYXNz", "Bearer not-a-token", "Bearer 0|abc", "Bearer x|abc"],
    )
    def test_malformed(self, api_client: TestClient, header: str) -> None:
        resp = api_client.get("/api/v1/tokens", headers={"Authorization": header})
        assert resp.status_code == 401
        assert resp.json() == _UNAUTHORIZED

    def test_wrong_secret(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.get("/api/v1/tokens", headers=_bearer(f"{api_owner.token_id}|{'0' * 64}"))
        assert resp.status_code == 401
        assert resp.json() == _UNAUTHORIZED

    def test_expired(self, api_client: TestClient, api_owner) -> None:
        expired = _create(api_client, api_owner, "short", expires_in_minutes=0)
        resp = api_client.get("/api/v1/tokens", headers=_bearer(expired["token"]))
        assert resp.status_code == 401
        assert resp.json() == _UNAUTHORIZED

    def test_other_routes_need_auth(self, api_client: TestClient) -> None:
        assert api_client.delete("/api/v1/tokens/1").status_code == 401
        assert api_client.post("/api/v1/server/update").status_code == 401


class TestCreate:
    def test_create_wildcard_token(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.post("/api/v1/tokens/create", json={"name": "Laptop"}, headers=api_owner.headers)
        assert resp.status_code == 201
        assert resp.headers["Cache-Control"] == "no-store"
        data = resp.json()
        assert data["name"] == "Laptop"
        assert data["abilities"] == ["*"]
        assert data["token"].startswith(f"{data['id']}|")
        assert "token_hash" not in data

        # The new credential works on its own.
        me = api_client.get("/api/v1/tokens/check-ability?ability=anything", headers=_bearer(data["token"]))
        assert me.json() == {"ability": "anything", "has_ability": True}

    def test_create_with_abilities(self, api_client: TestClient, api_owner) -> None:
        data = _create(api_client, api_owner, "scoped", abilities=["read:posts", "write:posts", "read:posts"])
        assert data["abilities"] == ["read:posts", "write:posts"]

    def test_create_with_expiry(self, api_client: TestClient, api_owner) -> None:
        data = _create(api_client, api_owner, "temp", expires_in_minutes=60)
        assert data["expires_at"] is not None

    @pytest.mark.parametrize(
        "body",
        [{}, {"name": ""}, {"name": "   "}, {"name": "x" * 256}, {"name": "ok", "expires_in_minutes": -1}],
    )
    def test_invalid_body(self, api_client: TestClient, api_owner, body: dict) -> None:
        resp = api_client.post("/api/v1/tokens/create", json=body, headers=api_owner.headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_empty_ability_rejected(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.post(
            "/api/v1/tokens/create-with-abilities",
            json={"name": "bad", "abilities": ["read", ""]},
            headers=api_owner.headers,
        )
        assert resp.status_code == 422


class TestQueries:
    def test_list_tokens(self, api_client: TestClient, api_owner) -> None:
        _create(api_client, api_owner, "second")
        resp = api_client.get("/api/v1/tokens", headers=api_owner.headers)
        assert resp.status_code == 200
        tokens = resp.json()["tokens"]
        assert {t["name"] for t in tokens} == {"test session", "second"}
        assert all("token" not in t and "token_hash" not in t for t in tokens)

    def test_list_is_scoped_to_owner(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.get("/api/v1/tokens", headers=api_owner.headers)
        assert [t["id"] for t in resp.json()["tokens"]] == [api_owner.token_id]

    def test_list_stamps_last_used(self, api_client: TestClient, api_owner) -> None:
        tokens = api_client.get("/api/v1/tokens", headers=api_owner.headers).json()["tokens"]
        assert tokens[0]["last_used_at"] is not None

    def test_statistics(self, api_client: TestClient, api_owner) -> None:
        _create(api_client, api_owner, "dead", expires_in_minutes=0)
        data = api_client.get("/api/v1/tokens/statistics", headers=api_owner.headers).json()
        assert data["total"] == 2
        assert data["active"] == 1
        assert data["expired"] == 1
        assert data["unused"] == 1

    def test_check_ability(self, api_client: TestClient, api_owner) -> None:
        scoped = _create(api_client, api_owner, "scoped", abilities=["read:posts"])
        headers = _bearer(scoped["token"])
        yes = api_client.get("/api/v1/tokens/check-ability", params={"ability": "read:posts"}, headers=headers)
        no = api_client.get("/api/v1/tokens/check-ability", params={"ability": "write:posts"}, headers=headers)
        assert yes.json()["has_ability"] is True
        assert no.json()["has_ability"] is False

    def test_check_ability_requires_parameter(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.get("/api/v1/tokens/check-ability", headers=api_owner.headers)
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "missing_ability"


class TestRevoke:
    def test_revoke_one(self, api_client: TestClient, api_owner) -> None:
        other = _create(api_client, api_owner, "other")
        resp = api_client.delete(f"/api/v1/tokens/{other['id']}", headers=api_owner.headers)
        assert resp.status_code == 200
        assert resp.json() == {"message": "Token revoked successfully."}
        assert api_client.get("/api/v1/tokens", headers=_bearer(other["token"])).status_code == 401

        again = api_client.delete(f"/api/v1/tokens/{other['id']}", headers=api_owner.headers)
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "not_found"

    def test_cannot_revoke_other_owners_token(self, api_client: TestClient, api_owner, make_api_owner) -> None:
        stranger = make_api_owner()
        resp = api_client.delete(f"/api/v1/tokens/{stranger.token_id}", headers=api_owner.headers)
        assert resp.status_code == 404
        assert api_client.get("/api/v1/tokens", headers=stranger.headers).status_code == 200

    def test_revoke_all(self, api_client: TestClient, api_owner) -> None:
        other = _create(api_client, api_owner, "other")
        resp = api_client.delete("/api/v1/tokens", headers=api_owner.headers)
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 2
        assert api_client.get("/api/v1/tokens", headers=api_owner.headers).status_code == 401
        assert api_client.get("/api/v1/tokens", headers=_bearer(other["token"])).status_code == 401

    def test_revoke_others_keeps_current(self, api_client: TestClient, api_owner) -> None:
        others = [_create(api_client, api_owner, f"device{i}") for i in range(3)]
        resp = api_client.post("/api/v1/tokens/revoke-others", headers=api_owner.headers)
        assert resp.status_code == 200
        assert resp.json()["revoked"] == 3
        tokens = api_client.get("/api/v1/tokens", headers=api_owner.headers).json()["tokens"]
        assert [t["id"] for t in tokens] == [api_owner.token_id]
        for other in others:
            assert api_client.get("/api/v1/tokens", headers=_bearer(other["token"])).status_code == 401


class TestPatchAbilities:
    def test_add_and_remove(self, api_client: TestClient, api_owner) -> None:
        scoped = _create(api_client, api_owner, "scoped", abilities=["read"])
        path = f"/api/v1/tokens/{scoped['id']}/abilities"

        added = api_client.patch(path, json={"add": "write"}, headers=api_owner.headers)
        assert added.status_code == 200
        assert added.json()["changed"] is True
        assert added.json()["token"]["abilities"] == ["read", "write"]

        removed = api_client.patch(path, json={"remove": "read"}, headers=api_owner.headers)
        assert removed.json()["token"]["abilities"] == ["write"]

        noop = api_client.patch(path, json={"remove": "read"}, headers=api_owner.headers)
        assert noop.json()["changed"] is False

    def test_requires_add_or_remove(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.patch(f"/api/v1/tokens/{api_owner.token_id}/abilities", json={}, headers=api_owner.headers)
        assert resp.status_code == 422

    def test_missing_token(self, api_client: TestClient, api_owner) -> None:
        resp = api_client.patch("/api/v1/tokens/999999/abilities", json={"add": "x"}, headers=api_owner.headers)
        assert resp.status_code == 404

    def test_other_owners_token(self, api_client: TestClient, api_owner, make_api_owner) -> None:
        stranger = make_api_owner(abilities=["read"])
        resp = api_client.patch(
            f"/api/v1/tokens/{stranger.token_id}/abilities", json={"add": "admin"}, headers=api_owner.headers
        )
        assert resp.status_code == 404
        assert api_client.app.state.token_store.get_token(stranger.token_id).abilities == ["read"]


class TestProtectedRoutes:
    def test_wildcard_passes_everything(self, api_client: TestClient, api_owner) -> None:
        h = api_owner.headers
        assert api_client.post("/api/v1/server/update", headers=h).status_code == 200
        assert api_client.post("/api/v1/server/delete", headers=h).status_code == 200
        assert api_client.get("/api/v1/orders", headers=h).status_code == 200
        assert api_client.get("/api/v1/reports", headers=h).status_code == 200

    def test_scoped_token(self, api_client: TestClient, api_owner) -> None:
        scoped = _create(api_client, api_owner, "ops", abilities=["server:update", "check-status", "reports:read"])
        h = _bearer(scoped["token"])
        assert api_client.post("/api/v1/server/update", headers=h).status_code == 200

        denied = api_client.post("/api/v1/server/delete", headers=h)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "forbidden"

        # require_abilities needs both; require_any_ability needs one.
        assert api_client.get("/api/v1/orders", headers=h).status_code == 403
        assert api_client.get("/api/v1/reports", headers=h).status_code == 200

    def test_token_without_abilities(self, api_client: TestClient, api_owner) -> None:
        empty = _create(api_client, api_owner, "nothing", abilities=[])
        h = _bearer(empty["token"])
        assert api_client.post("/api/v1/server/update", headers=h).status_code == 403
        assert api_client.get("/api/v1/reports", headers=h).status_code == 403
        # Authentication itself still succeeds.
        assert api_client.get("/api/v1/tokens", headers=h).status_code == 200

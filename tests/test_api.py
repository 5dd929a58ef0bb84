"""End-to-end tests for the mobile token HTTP surface."""

import json
import re

import httpx
import pytest
from fastapi.testclient import TestClient

from tokenwarden.app import create_app
from tokenwarden.service.notifications import NotificationService
from tokenwarden.service.runtime import get_runtime

PASSWORD = "Corr3ctHorse"


@pytest.fixture
def runtime():
    return get_runtime()


@pytest.fixture
def principal(runtime):
    principal = runtime.store.create_principal("reader@example.com", name="Reader")
    runtime.store.save_password_hash(principal.id, runtime.hasher.hash_password(PASSWORD))
    return principal


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


def _login(client, device_id="phone", platform="ios"):
    response = client.post(
        "/api/mobile/auth/email",
        json={
            "email": "Reader@Example.com",
            "password": PASSWORD,
            "device_id": device_id,
            "device_name": "Reader's phone",
            "platform": platform,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _auth(tokens):
    return {"Authorization": f"Bearer {tokens['access_token']}"}


class TestLoginAndRefresh:
    def test_login_returns_token_pair(self, client, principal):
        data = _login(client)
        assert data["token_type"] == "bearer"
        assert len(data["refresh_token"]) == 64
        assert data["access_token"].count(".") == 2

    def test_bad_password_is_unauthorized(self, client, principal):
        response = client.post(
            "/api/mobile/auth/email",
            json={"email": "reader@example.com", "password": "Wrong-Passw0rd"},
        )
        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"

    def test_malformed_body_is_validation_error(self, client):
        response = client.post("/api/mobile/auth/email", json={"email": "not-an-email"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_refresh(self, client, principal):
        tokens = _login(client)
        response = client.post(
            "/api/mobile/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_id"] == tokens["token_id"]
        assert data["refresh_token"] is None

    def test_refresh_unknown_token(self, client):
        response = client.post("/api/mobile/refresh", json={"refresh_token": "f" * 64})
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_refresh_after_logout_is_revoked(self, client, principal):
        tokens = _login(client)
        logout = client.post("/api/mobile/revoke", json={"refresh_token": tokens["refresh_token"]})
        assert logout.json()["data"] == {"revoked": True}
        response = client.post(
            "/api/mobile/refresh", json={"refresh_token": tokens["refresh_token"]}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_revoked"

    def test_responses_are_not_cacheable(self, client, principal):
        response = client.post(
            "/api/mobile/auth/email",
            json={"email": "reader@example.com", "password": PASSWORD},
        )
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Request-ID"]

    def test_lockout_returns_retry_after(self, client, principal):
        for _ in range(10):
            client.post(
                "/api/mobile/auth/email",
                json={"email": "reader@example.com", "password": "Wrong-Passw0rd"},
            )
        response = client.post(
            "/api/mobile/auth/email",
            json={"email": "reader@example.com", "password": PASSWORD},
        )
        assert response.status_code == 429
        body = response.json()
        assert body["error"]["code"] == "rate_limited"
        assert "retry_at" in body["error"]["details"]
        assert 1 <= int(response.headers["Retry-After"]) <= 15 * 60 + 1


class TestTokenManagement:
    def test_list_requires_bearer(self, client):
        response = client.get("/api/mobile/tokens")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_bearer_is_rejected(self, client):
        response = client.get("/api/mobile/tokens", headers={"Authorization": "Bearer a.b"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_format"

    def test_list_and_supersede(self, client, principal):
        _login(client, device_id="phone")
        _login(client, device_id="tablet", platform="android")
        latest = _login(client, device_id="phone")
        response = client.get("/api/mobile/tokens", headers=_auth(latest))
        items = response.json()["data"]["items"]
        assert len(items) == 2
        assert {item["device_id"] for item in items} == {"phone", "tablet"}
        assert all("refresh_token_hash" not in item for item in items)

    def test_revoke_single_token(self, client, principal):
        tokens = _login(client)
        response = client.delete(f"/api/mobile/tokens/{tokens['token_id']}", headers=_auth(tokens))
        assert response.status_code == 200
        again = client.delete(f"/api/mobile/tokens/{tokens['token_id']}", headers=_auth(tokens))
        assert again.status_code == 200

    def test_revoke_other_principals_token(self, client, principal, runtime):
        tokens = _login(client)
        other = runtime.store.create_principal("other@example.com")
        other_tokens = runtime.sessions.issue(runtime.store, other.id).unwrap()
        response = client.delete(
            f"/api/mobile/tokens/{tokens['token_id']}",
            headers={"Authorization": f"Bearer {other_tokens.access_token}"},
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_revoke_all(self, client, principal):
        _login(client, device_id="phone")
        tokens = _login(client, device_id="tablet")
        response = client.post("/api/mobile/tokens/revoke-all", headers=_auth(tokens))
        assert response.json()["data"] == {"revoked": 2}

    def test_platform_token(self, client, principal, runtime):
        tokens = _login(client)
        response = client.post("/api/mobile/platform-token", headers=_auth(tokens))
        assert response.status_code == 200
        token = response.json()["data"]["token"]
        claims = runtime.codec.verify(
            token,
            runtime.settings.platform_private_key,
            "RS256",
            audience=runtime.settings.platform_audience,
        ).unwrap()
        assert claims["sub"].startswith(f"{principal.id}|")


class TestPasswordChange:
    def test_code_then_change(self, client, principal, runtime):
        sent = []

        def handler(request):
            sent.append(json.loads(request.content))
            return httpx.Response(200, json={"id": "msg"})

        runtime.credentials.notifier = NotificationService(
            api_key="mail-key", transport=httpx.MockTransport(handler)
        )
        tokens = _login(client)
        requested = client.post("/api/mobile/password/code", headers=_auth(tokens))
        assert requested.status_code == 200
        code = re.search(r"code is (\d+)", sent[-1]["text"]).group(1)

        changed = client.post(
            "/api/mobile/password/change",
            headers=_auth(tokens),
            json={"code": code, "new_password": "N3wPassword"},
        )
        assert changed.status_code == 200
        assert changed.json()["data"] == {"changed": True}
        relogin = client.post(
            "/api/mobile/auth/email",
            json={"email": "reader@example.com", "password": "N3wPassword"},
        )
        assert relogin.status_code == 200

    def test_wrong_code(self, client, principal):
        tokens = _login(client)
        client.post("/api/mobile/password/code", headers=_auth(tokens))
        response = client.post(
            "/api/mobile/password/change",
            headers=_auth(tokens),
            json={"code": "0000000", "new_password": "N3wPassword"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"


class TestHealth:
    def test_health_with_memory_store(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

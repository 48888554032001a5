"""Integration tests for the HTTP auth flow.

Covers:
- Credential registration
- Login by user id and by email/password
- Token validation and refresh
- Session validation, touch and listing
- Logout and sign-out-everywhere
- Password reset
- Rate-limit keys and directory calls off the event loop
"""

import asyncio
import threading

import httpx
import pytest
from fastapi.testclient import TestClient

from fixerauth import app as app_module
from fixerauth.service.runtime import get_runtime, reset_runtime_for_tests


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def chrome_headers():
    return {"User-Agent": "Mozilla/5.0 Chrome/120", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"}


def _login(client, user_id=42, headers=None):
    response = client.post("/v1/auth/login", json={"user_id": user_id}, headers=headers or {})
    assert response.status_code == 200
    return response.json()["data"]


class TestRegistration:
    def test_register_creates_credential(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "tech@homefixer.test"
        assert body["data"]["user_id"] == 42
        assert "password" not in body["data"]

    def test_register_duplicate_email(self, client):
        payload = {"email": "tech@homefixer.test", "password": "secret1", "user_id": 42}
        client.post("/v1/auth/register", json=payload)

        response = client.post("/v1/auth/register", json=payload)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "conflict"

    def test_register_short_password(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "abc", "user_id": 42},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_register_invalid_email(self, client):
        response = client.post(
            "/v1/auth/register",
            json={"email": "not-an-email", "password": "secret1", "user_id": 42},
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestLoginFlow:
    def test_login_returns_tokens(self, client, chrome_headers):
        data = _login(client, headers=chrome_headers)

        assert data["access_token"].startswith("HF_")
        assert data["session_token"].startswith("SES_")
        assert data["user_id"] == 42
        assert data["token_type"] == "bearer"
        assert data["expires_at"]

        sessions = get_runtime().auth.list_sessions(42)
        assert sessions[0].client_ip == "203.0.113.9"
        assert sessions[0].browser == "Chrome"
        assert sessions[0].device == "Desktop"

    def test_login_unknown_directory_user(self, client):
        class _Nobody:
            def user_exists(self, user_id):
                return False

        get_runtime().auth.directory = _Nobody()

        response = client.post("/v1/auth/login", json={"user_id": 42})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"

    def test_password_login(self, client):
        client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
        )

        response = client.post(
            "/v1/auth/login/password",
            json={"email": "tech@homefixer.test", "password": "secret1"},
        )

        assert response.status_code == 200
        assert response.json()["data"]["user_id"] == 42

    @pytest.mark.parametrize(
        "email,password",
        [("tech@homefixer.test", "wrong-password"), ("ghost@homefixer.test", "secret1")],
    )
    def test_password_login_failures_are_uniform(self, client, email, password):
        client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
        )

        response = client.post(
            "/v1/auth/login/password", json={"email": email, "password": password}
        )

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "unauthorized"
        assert error["message"] == "not authenticated"

    def test_second_login_closes_first_session(self, client):
        first = _login(client)
        second = _login(client)

        listing = client.get("/v1/auth/sessions/42").json()["data"]
        assert listing["total"] == 2
        states = {s["state"] for s in listing["sessions"]}
        assert states == {"ACTIVE", "CLOSED"}
        assert all("session_token" not in s for s in listing["sessions"])

        old = client.post(
            "/v1/auth/session/validate", headers={"Session-Token": first["session_token"]}
        )
        new = client.post(
            "/v1/auth/session/validate", headers={"Session-Token": second["session_token"]}
        )
        assert old.json()["data"]["valid"] is False
        assert new.json()["data"]["valid"] is True


class TestTokens:
    def test_validate(self, client):
        data = _login(client)

        response = client.post(
            "/v1/auth/validate", headers={"Authorization": f"Bearer {data['access_token']}"}
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"valid": True, "user_id": 42}

    def test_validate_unknown_token_is_not_an_error(self, client):
        response = client.post("/v1/auth/validate", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 200
        assert response.json()["data"] == {"valid": False, "user_id": None}

    def test_refresh(self, client):
        data = _login(client)
        auth_header = {"Authorization": f"Bearer {data['access_token']}"}

        response = client.post("/v1/auth/refresh", headers=auth_header)

        assert response.status_code == 200
        new_token = response.json()["data"]["access_token"]
        assert new_token != data["access_token"]
        old = client.post("/v1/auth/validate", headers=auth_header).json()["data"]
        assert old["valid"] is False
        fresh = client.post(
            "/v1/auth/validate", headers={"Authorization": f"Bearer {new_token}"}
        ).json()["data"]
        assert fresh["valid"] is True

    def test_refresh_invalid_token(self, client):
        response = client.post("/v1/auth/refresh", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "not authenticated"
        assert get_runtime().store.tokens == {}

    def test_list_tokens_masks_secrets(self, client):
        data = _login(client)

        listing = client.get("/v1/auth/tokens/42").json()["data"]

        assert listing["total"] == 1
        summary = listing["tokens"][0]
        assert summary["kind"] == "LOGIN"
        assert summary["active"] is True
        assert summary["secret_hint"] != data["access_token"]
        assert "secret" not in summary


class TestSessions:
    def test_touch(self, client):
        data = _login(client)

        response = client.post(
            "/v1/auth/session/touch", headers={"Session-Token": data["session_token"]}
        )
        assert response.json()["data"]["touched"] is True

        missing = client.post("/v1/auth/session/touch", headers={"Session-Token": "nope"})
        assert missing.json()["data"]["touched"] is False

    def test_logout(self, client):
        data = _login(client)

        response = client.post(
            "/v1/auth/logout",
            headers={
                "Authorization": f"Bearer {data['access_token']}",
                "Session-Token": data["session_token"],
            },
        )

        assert response.status_code == 200
        assert response.json()["data"] == {"success": True}
        validate = client.post(
            "/v1/auth/validate", headers={"Authorization": data["access_token"]}
        )
        assert validate.json()["data"]["valid"] is False

    def test_logout_without_credentials_succeeds(self, client):
        response = client.post("/v1/auth/logout")

        assert response.status_code == 200
        assert response.json()["data"]["success"] is True

    def test_close_all_sessions(self, client):
        data = _login(client)

        response = client.delete("/v1/auth/sessions/42")

        assert response.status_code == 200
        assert response.json()["data"] == {"sessions_revoked": 1, "tokens_revoked": 1}
        sessions = client.get("/v1/auth/sessions/42").json()["data"]["sessions"]
        assert [s["state"] for s in sessions] == ["REVOKED"]
        validate = client.post(
            "/v1/auth/validate", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert validate.json()["data"]["valid"] is False

    def test_invalid_user_id_path(self, client):
        response = client.get("/v1/auth/sessions/0")

        assert response.status_code == 422


class TestPasswordReset:
    def test_reset_round_trip(self, client):
        client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
        )
        data = _login(client)

        requested = client.post(
            "/v1/auth/reset/request", json={"email": "tech@homefixer.test"}
        ).json()["data"]
        assert requested["status"] == "sent"
        assert requested["reset_token"]

        confirmed = client.post(
            "/v1/auth/reset/confirm",
            json={"token": requested["reset_token"], "new_password": "brandnew"},
        )
        assert confirmed.status_code == 200
        assert confirmed.json()["data"]["status"] == "reset"

        old_login = client.post(
            "/v1/auth/validate", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert old_login.json()["data"]["valid"] is False
        relogin = client.post(
            "/v1/auth/login/password",
            json={"email": "tech@homefixer.test", "password": "brandnew"},
        )
        assert relogin.status_code == 200

    def test_reset_request_unknown_email_looks_the_same(self, client):
        response = client.post(
            "/v1/auth/reset/request", json={"email": "ghost@homefixer.test"}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "sent"
        assert data["reset_token"] is None

    def test_reset_confirm_invalid_token(self, client):
        response = client.post(
            "/v1/auth/reset/confirm", json={"token": "nope", "new_password": "brandnew"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "invalid token"


def _client_at(host):
    """Async client whose requests arrive from the given socket peer."""
    transport = httpx.ASGITransport(app=app_module.app, client=(host, 50000))
    return httpx.AsyncClient(transport=transport, base_url="http://testserver")


class TestRateLimits:
    def test_login_limit_ignores_forwarded_for(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()

        first = client.post(
            "/v1/auth/login", json={"user_id": 1}, headers={"X-Forwarded-For": "198.51.100.1"}
        )
        assert first.status_code == 200
        second = client.post(
            "/v1/auth/login", json={"user_id": 1}, headers={"X-Forwarded-For": "198.51.100.2"}
        )
        assert second.status_code == 200
        assert second.headers["X-RateLimit-Limit"] == "2"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        blocked = client.post(
            "/v1/auth/login", json={"user_id": 1}, headers={"X-Forwarded-For": "198.51.100.3"}
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "rate_limited"

        # the forwarded address is still what the session records
        sessions = get_runtime().auth.list_sessions(1)
        assert {s.client_ip for s in sessions} == {"198.51.100.1", "198.51.100.2"}

    def test_password_login_limited_per_account(self, client, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "3")
        reset_runtime_for_tests()
        client.post(
            "/v1/auth/register",
            json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
        )

        spellings = ["tech@homefixer.test", "Tech@HomeFixer.test"]
        statuses = [
            client.post(
                "/v1/auth/login/password",
                json={"email": spellings[i % 2], "password": "wrong-password"},
                headers={"X-Forwarded-For": f"198.51.100.{i}"},
            ).status_code
            for i in range(5)
        ]

        assert statuses == [401, 401, 401, 429, 429]
        other_account = client.post(
            "/v1/auth/login/password",
            json={"email": "other@homefixer.test", "password": "wrong-password"},
        )
        assert other_account.status_code == 401

    async def test_login_limit_is_per_peer(self, monkeypatch):
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "1")
        reset_runtime_for_tests()

        async with _client_at("198.51.100.7") as noisy, _client_at("203.0.113.5") as quiet:
            assert (await noisy.post("/v1/auth/login", json={"user_id": 1})).status_code == 200
            assert (await noisy.post("/v1/auth/login", json={"user_id": 1})).status_code == 429
            assert (await quiet.post("/v1/auth/login", json={"user_id": 2})).status_code == 200

    async def test_reset_confirm_limit_does_not_block_other_clients(self, monkeypatch):
        monkeypatch.setenv("RESET_RATE_LIMIT_PER_MINUTE", "2")
        reset_runtime_for_tests()

        async with _client_at("198.51.100.66") as attacker, _client_at("203.0.113.5") as owner:
            for _ in range(2):
                junk = await attacker.post(
                    "/v1/auth/reset/confirm", json={"token": "junk", "new_password": "brandnew"}
                )
                assert junk.status_code == 400
            blocked = await attacker.post(
                "/v1/auth/reset/confirm", json={"token": "junk", "new_password": "brandnew"}
            )
            assert blocked.status_code == 429

            await owner.post(
                "/v1/auth/register",
                json={"email": "tech@homefixer.test", "password": "secret1", "user_id": 42},
            )
            requested = await owner.post(
                "/v1/auth/reset/request", json={"email": "tech@homefixer.test"}
            )
            reset_token = requested.json()["data"]["reset_token"]
            confirmed = await owner.post(
                "/v1/auth/reset/confirm",
                json={"token": reset_token, "new_password": "brandnew"},
            )

        assert confirmed.status_code == 200


class _SlowDirectory:
    """Directory lookup that blocks its calling thread until released."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.released_in_time = None

    def user_exists(self, user_id):
        self.entered.set()
        self.released_in_time = self.release.wait(timeout=2)
        return True


async def test_slow_directory_does_not_stall_other_requests():
    directory = _SlowDirectory()
    get_runtime().auth.directory = directory

    async with _client_at("203.0.113.5") as http:
        pending_login = asyncio.create_task(http.post("/v1/auth/login", json={"user_id": 42}))
        assert await asyncio.to_thread(directory.entered.wait, 2)

        check = await http.post("/v1/auth/session/validate", headers={"Session-Token": "nope"})
        assert check.status_code == 200
        directory.release.set()

        login_response = await pending_login

    assert directory.released_in_time is True
    assert login_response.status_code == 200

"""End-to-end tests for the /session endpoints through the FastAPI app."""

from dataclasses import replace
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from dashauth.app import app
from dashauth.service.runtime import get_runtime, reset_runtime_for_tests
from dashauth.storage.errors import StoreUnavailable
from dashauth.storage.models import utcnow

SESSION_COOKIE = "dash_session"
KIND_COOKIE = "dash_auth_kind"


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def seeded():
    """Seed one user and one employee into the runtime's memory store."""
    runtime = get_runtime()
    store = runtime.store
    dept = store.create_department("Support")
    user = store.create_user(
        "Ada", "ada@example.com", runtime.verifier.hash_secret("user-secret-1")
    )
    employee = store.create_employee(
        "Eve",
        "eve@example.com",
        runtime.verifier.hash_secret("employee-secret-1"),
        department_id=dept.id,
        position="agent",
    )
    return {"user": user, "employee": employee, "department": dept}


def _login(client, identifier, secret):
    return client.post("/session", json={"identifier": identifier, "secret": secret})


def _expire(token):
    store = get_runtime().store
    sess = store.get_session(token)
    store.sessions[token] = replace(sess, expires_at=utcnow() - timedelta(seconds=1))


def _set_cookie_headers(response):
    return response.headers.get_list("set-cookie")


class TestLogin:
    def test_user_login_sets_cookie_pair(self, client, seeded):
        resp = _login(client, "ada@example.com", "user-secret-1")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "ok"
        assert body["data"]["owner_kind"] == "user"
        assert body["data"]["profile"]["id"] == seeded["user"].id
        assert "secret_hash" not in body["data"]["profile"]
        assert client.cookies.get(SESSION_COOKIE)
        assert client.cookies.get(KIND_COOKIE) == "user"

        transport = next(h for h in _set_cookie_headers(resp) if h.startswith(SESSION_COOKIE))
        assert "HttpOnly" in transport
        assert "SameSite=lax" in transport
        settings = get_runtime().settings
        lifetime = settings.session_ttl_seconds + settings.recovery_window_seconds
        assert f"Max-Age={lifetime}" in transport

    def test_employee_login(self, client, seeded):
        resp = _login(client, "eve@example.com", "employee-secret-1")

        assert resp.status_code == 200
        profile = resp.json()["data"]["profile"]
        assert profile["kind"] == "employee"
        assert profile["department_name"] == "Support"
        assert profile["role"] == "agent"
        assert client.cookies.get(KIND_COOKIE) == "employee"

    def test_missing_secret_is_validation_error(self, client, seeded):
        resp = client.post("/session", json={"identifier": "ada@example.com"})

        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"] == {"reason": "missing_credentials"}

    def test_bad_credentials_are_unauthorized(self, client, seeded):
        wrong = _login(client, "ada@example.com", "nope")
        unknown = _login(client, "ghost@example.com", "nope")

        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"]["message"] == unknown.json()["error"]["message"]
        assert wrong.json()["error"]["details"] == {"reason": "invalid_credentials"}
        assert SESSION_COOKIE not in client.cookies

    def test_login_is_rate_limited_per_identifier(self, client, seeded):
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            _login(client, "ada@example.com", "nope")

        resp = _login(client, "ada@example.com", "user-secret-1")

        assert resp.status_code == 429
        assert resp.json()["error"]["code"] == "rate_limited"
        assert "retry_after" in resp.json()["error"]["details"]


class TestValidateAndLogout:
    def test_validate_without_cookie(self, client):
        resp = client.get("/session")

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "no_token"}

    def test_validate_refreshes_cookies(self, client, seeded):
        _login(client, "ada@example.com", "user-secret-1")

        resp = client.get("/session")

        assert resp.status_code == 200
        assert resp.json()["data"]["profile"]["email"] == "ada@example.com"
        assert any(h.startswith(SESSION_COOKIE) for h in _set_cookie_headers(resp))
        assert resp.headers["Cache-Control"].startswith("no-store")

    def test_expired_session_clears_cookies(self, client, seeded):
        _login(client, "ada@example.com", "user-secret-1")
        _expire(client.cookies.get(SESSION_COOKIE))

        resp = client.get("/session")

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "expired_session"}
        headers = _set_cookie_headers(resp)
        assert len(headers) == 2
        assert all("Max-Age=0" in h for h in headers)

    def test_second_login_evicts_first(self, client, seeded):
        _login(client, "ada@example.com", "user-secret-1")
        first_token = client.cookies.get(SESSION_COOKIE)
        other = TestClient(app)
        _login(other, "ada@example.com", "user-secret-1")

        resp = client.get("/session")

        assert first_token != other.cookies.get(SESSION_COOKIE)
        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "invalid_session"}

    def test_logout_always_succeeds(self, client, seeded):
        _login(client, "ada@example.com", "user-secret-1")
        token = client.cookies.get(SESSION_COOKIE)

        first = client.delete("/session")
        second = client.delete("/session")

        assert first.status_code == second.status_code == 200
        assert first.json()["data"] == {"success": True}
        assert get_runtime().store.get_session(token) is None
        assert client.get("/session").status_code == 401


class TestRecover:
    def _expired_token(self, client):
        _login(client, "ada@example.com", "user-secret-1")
        token = client.cookies.get(SESSION_COOKIE)
        _expire(token)
        assert client.get("/session").status_code == 401
        return token

    def _recover(self, client, token, kind="user"):
        params = {"kind": kind} if kind else None
        return client.get(
            "/session/recover",
            params=params,
            headers={"Cookie": f"{SESSION_COOKIE}={token}"},
        )

    def test_recover_once(self, client, seeded):
        token = self._expired_token(client)

        resp = self._recover(client, token)

        assert resp.status_code == 200
        assert resp.headers["X-Session-Recovered"] == "1"
        data = resp.json()["data"]
        assert data["recovered"] is True
        assert data["recovery_attempted"] is True
        transport = next(h for h in _set_cookie_headers(resp) if h.startswith(SESSION_COOKIE))
        assert f"{SESSION_COOKIE}={token}" in transport
        assert "Max-Age=1200" in transport

        follow_up = client.get("/session")
        assert follow_up.status_code == 200

    def test_second_recovery_is_exhausted(self, client, seeded):
        token = self._expired_token(client)
        assert self._recover(client, token).status_code == 200

        resp = self._recover(client, token)

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "recovery_exhausted"}

    def test_live_session_recover_is_noop(self, client, seeded):
        _login(client, "ada@example.com", "user-secret-1")

        resp = client.get("/session/recover")

        assert resp.status_code == 200
        assert resp.json()["data"]["recovered"] is False
        assert "X-Session-Recovered" not in resp.headers

    def test_recover_rewrites_cookies_for_a_tab_that_lost_them(self, client, seeded):
        """The second tab to recover gets the session the first one restored."""
        token = self._expired_token(client)
        assert self._recover(client, token).status_code == 200
        client.cookies.clear()

        resp = self._recover(client, token)

        assert resp.status_code == 200
        assert resp.json()["data"]["recovered"] is False
        assert "X-Session-Recovered" not in resp.headers
        transport = next(h for h in _set_cookie_headers(resp) if h.startswith(SESSION_COOKIE))
        assert f"{SESSION_COOKIE}={token}" in transport
        assert get_runtime().store.get_session(token).recovered is True
        assert client.get("/session").status_code == 200

    def test_recover_without_cookie(self, client):
        resp = client.get("/session/recover")

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "no_token"}

    def test_unknown_kind_is_rejected(self, client, seeded):
        resp = client.get("/session/recover", params={"kind": "admin"})

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_kind_mismatch_is_invalid(self, client, seeded):
        token = self._expired_token(client)

        resp = self._recover(client, token, kind="employee")

        assert resp.status_code == 401
        assert resp.json()["error"]["details"] == {"reason": "invalid_session"}


class TestRegisterAndCheck:
    def test_register_creates_user_session(self, client):
        resp = client.post(
            "/session/register",
            json={"name": "New Person", "identifier": "new@example.com", "secret": "longenough1"},
        )

        assert resp.status_code == 201
        assert resp.json()["data"]["owner_kind"] == "user"
        assert client.get("/session").status_code == 200

    def test_register_conflicts_with_employee_email(self, client, seeded):
        resp = client.post(
            "/session/register",
            json={"name": "Copy", "identifier": "eve@example.com", "secret": "longenough1"},
        )

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_register_rejects_short_secret(self, client):
        resp = client.post(
            "/session/register",
            json={"name": "Short", "identifier": "short@example.com", "secret": "abc"},
        )

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "validation_error"

    def test_register_can_be_disabled(self, client, monkeypatch):
        monkeypatch.setenv("ALLOW_REGISTRATION", "false")
        reset_runtime_for_tests()

        resp = client.post(
            "/session/register",
            json={"name": "Late", "identifier": "late@example.com", "secret": "longenough1"},
        )

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert get_runtime().store.get_user_by_email("late@example.com") is None

    def test_check_reports_without_sliding(self, client, seeded):
        anonymous = client.get("/session/check")
        assert anonymous.json()["data"]["status"] == "unauthenticated"
        assert anonymous.json()["data"]["diagnostics"]["token_present"] is False

        login = _login(client, "eve@example.com", "employee-secret-1")
        resp = client.get("/session/check")

        data = resp.json()["data"]
        assert data["status"] == "authenticated"
        assert data["auth_method"] == "employee"
        assert data["diagnostics"]["kind_hint"] == "employee"
        assert data["diagnostics"]["active_sessions"] == 1
        assert data["expires_at"] == login.json()["data"]["expires_at"]
        assert not _set_cookie_headers(resp)

    def test_check_survives_store_outage(self, client, seeded, monkeypatch):
        _login(client, "ada@example.com", "user-secret-1")
        runtime = get_runtime()

        def _down():
            raise StoreUnavailable("count_active_sessions")

        monkeypatch.setattr(runtime.store, "count_active_sessions", _down)
        resp = client.get("/session/check")

        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["status"] == "unauthenticated"
        assert data["diagnostics"]["store_available"] is False
        assert data["diagnostics"]["token_present"] is True
        assert not _set_cookie_headers(resp)


class TestAppSurface:
    def test_request_id_is_echoed(self, client):
        resp = client.get("/session", headers={"X-Request-ID": "req-123"})

        assert resp.headers["X-Request-ID"] == "req-123"
        assert resp.json()["request_id"] == "req-123"

    def test_healthz(self, client):
        resp = client.get("/healthz")

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["redis"] == {"status": "not_configured"}

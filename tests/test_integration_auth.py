"""End-to-end auth flows through the HTTP API."""

from fastapi.testclient import TestClient

from crmcore.app import app
from crmcore.service.runtime import get_runtime, reset_runtime_for_tests

PASSWORD = "Secr3tPW!"


def _register(client, email="alice@acme.com", org="Acme", password=PASSWORD):
    return client.post(
        "/v1/auth/register",
        json={
            "organization_name": org,
            "email": email,
            "password": password,
            "first_name": "Alice",
            "last_name": "Anders",
        },
    )


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestAuthLifecycle:
    def test_full_credential_lifecycle(self):
        client = TestClient(app)

        resp = _register(client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["status"] == "ok"
        user = body["data"]["user"]
        first_tokens = body["data"]["tokens"]
        assert user["role"] == "ADMIN"
        assert user["email_verified"] is True
        assert first_tokens["token_type"] == "bearer"

        me = client.get("/v1/auth/me", headers=_bearer(first_tokens["access_token"]))
        assert me.status_code == 200
        assert me.json()["data"]["organization_name"] == "Acme"
        assert me.json()["data"]["email"] == "alice@acme.com"

        refreshed = client.post(
            "/v1/auth/refresh", json={"refresh_token": first_tokens["refresh_token"]}
        )
        assert refreshed.status_code == 200
        second_tokens = refreshed.json()["data"]["tokens"]
        assert second_tokens["refresh_token"] != first_tokens["refresh_token"]

        # Rotation kills the previous pair
        stale = client.get("/v1/auth/me", headers=_bearer(first_tokens["access_token"]))
        assert stale.status_code == 401
        replay = client.post(
            "/v1/auth/refresh", json={"refresh_token": first_tokens["refresh_token"]}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "unauthorized"

        logout = client.post(
            "/v1/auth/logout", headers=_bearer(second_tokens["access_token"])
        )
        assert logout.status_code == 200
        assert logout.json()["data"]["message"] == "Logged out successfully"
        after = client.get("/v1/auth/me", headers=_bearer(second_tokens["access_token"]))
        assert after.status_code == 401

        login = client.post(
            "/v1/auth/login", json={"email": "ALICE@acme.com", "password": PASSWORD}
        )
        assert login.status_code == 200
        assert login.json()["data"]["user"]["last_login_at"] is not None

    def test_password_reset_flow(self):
        client = TestClient(app)
        _register(client)

        forgot = client.post("/v1/auth/forgot-password", json={"email": "alice@acme.com"})
        assert forgot.status_code == 200
        token = forgot.json()["data"]["dev_token"]
        assert token

        reset = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "N3wPassword!"}
        )
        assert reset.status_code == 200

        old = client.post("/v1/auth/login", json={"email": "alice@acme.com", "password": PASSWORD})
        assert old.status_code == 401
        new = client.post(
            "/v1/auth/login", json={"email": "alice@acme.com", "password": "N3wPassword!"}
        )
        assert new.status_code == 200

        again = client.post(
            "/v1/auth/reset-password", json={"token": token, "password": "Another1Pass!"}
        )
        assert again.status_code == 401

    def test_forgot_password_does_not_reveal_unknown_email(self):
        client = TestClient(app)
        _register(client)

        known = client.post("/v1/auth/forgot-password", json={"email": "alice@acme.com"})
        unknown = client.post("/v1/auth/forgot-password", json={"email": "ghost@acme.com"})

        assert known.status_code == unknown.status_code == 200
        assert known.json()["data"]["message"] == unknown.json()["data"]["message"]
        assert unknown.json()["data"]["dev_token"] is None

    def test_dev_token_hidden_in_production(self, monkeypatch):
        monkeypatch.setenv("APP_ENV", "production")
        reset_runtime_for_tests()
        client = TestClient(app)
        _register(client)

        resp = client.post("/v1/auth/forgot-password", json={"email": "alice@acme.com"})

        assert resp.status_code == 200
        assert resp.json()["data"]["dev_token"] is None

    def test_email_verification_flow(self):
        client = TestClient(app)
        _register(client)
        _register(client, email="bob@globex.com", org="Globex")

        resend = client.post("/v1/auth/resend-verification", json={"email": "bob@globex.com"})
        token = resend.json()["data"]["dev_token"]
        assert token

        first = client.post("/v1/auth/verify-email", json={"token": token})
        assert first.status_code == 200
        assert first.json()["data"]["message"] == "Email verified successfully"
        second = client.post("/v1/auth/verify-email", json={"token": token})
        assert second.status_code == 200
        assert second.json()["data"]["message"] == "Email already verified"

        bogus = client.post("/v1/auth/verify-email", json={"token": "bogus"})
        assert bogus.status_code == 401

    def test_logout_single_session(self):
        client = TestClient(app)
        first = _register(client).json()["data"]["tokens"]
        second = client.post(
            "/v1/auth/login", json={"email": "alice@acme.com", "password": PASSWORD}
        ).json()["data"]["tokens"]

        resp = client.post(
            "/v1/auth/logout",
            headers=_bearer(second["access_token"]),
            json={"refresh_token": first["refresh_token"]},
        )

        assert resp.status_code == 200
        assert client.get("/v1/auth/me", headers=_bearer(first["access_token"])).status_code == 401
        assert client.get("/v1/auth/me", headers=_bearer(second["access_token"])).status_code == 200

    def test_non_ascii_signature_is_unauthorized_not_a_crash(self):
        client = TestClient(app, raise_server_exceptions=False)
        tokens = _register(client).json()["data"]["tokens"]
        header, payload, _ = tokens["refresh_token"].split(".")
        tampered = f"{header}.{payload}.\u00e9\u00e9\u00e9"

        refresh = client.post("/v1/auth/refresh", json={"refresh_token": tampered})
        assert refresh.status_code == 401
        assert refresh.json()["error"]["message"] == "invalid or expired token"

        logout = client.post(
            "/v1/auth/logout",
            headers=_bearer(tokens["access_token"]),
            json={"refresh_token": tampered},
        )
        assert logout.status_code == 200
        still_valid = client.get("/v1/auth/me", headers=_bearer(tokens["access_token"]))
        assert still_valid.status_code == 200

    def test_logout_requires_bearer(self):
        client = TestClient(app)
        resp = client.post("/v1/auth/logout")
        assert resp.status_code == 401

    def test_me_for_deleted_user_is_not_found(self):
        client = TestClient(app)
        data = _register(client).json()["data"]
        runtime = get_runtime()
        with runtime.store._data_lock:
            runtime.store.users.pop(data["user"]["id"])

        resp = client.get("/v1/auth/me", headers=_bearer(data["tokens"]["access_token"]))

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_lockout_over_http(self):
        client = TestClient(app)
        _register(client)
        for _ in range(5):
            resp = client.post(
                "/v1/auth/login", json={"email": "alice@acme.com", "password": "wrong-pass"}
            )
            assert resp.status_code == 401

        locked = client.post(
            "/v1/auth/login", json={"email": "alice@acme.com", "password": PASSWORD}
        )
        assert locked.status_code == 401
        error = locked.json()["error"]
        assert "locked" in error["message"]
        assert error["details"]["remaining_minutes"] == 30


class TestRateLimits:
    def test_login_rate_limited_per_email(self, monkeypatch):
        # A small bucket refills slowly enough that slow argon2 runs cannot top it up
        monkeypatch.setenv("LOGIN_RATE_LIMIT_PER_MINUTE", "3")
        reset_runtime_for_tests()
        client = TestClient(app)
        limit = get_runtime().settings.login_rate_limit_per_minute
        for _ in range(limit):
            resp = client.post(
                "/v1/auth/login", json={"email": "ghost@acme.com", "password": "whatever1"}
            )
            assert resp.status_code == 401

        limited = client.post(
            "/v1/auth/login", json={"email": "ghost@acme.com", "password": "whatever1"}
        )
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        retry_after = limited.json()["error"]["details"]["retry_after_seconds"]
        assert int(limited.headers["Retry-After"]) == max(1, retry_after)

        other = client.post(
            "/v1/auth/login", json={"email": "someone@acme.com", "password": "whatever1"}
        )
        assert other.status_code == 401

    def test_rate_limit_headers_on_success(self):
        client = TestClient(app)
        resp = _register(client)
        assert resp.headers["X-RateLimit-Limit"] == str(
            get_runtime().settings.register_rate_limit_per_minute
        )


class TestHealth:
    def test_healthz_reports_memory_store(self):
        client = TestClient(app)
        resp = client.get("/healthz")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"

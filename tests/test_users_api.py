"""
tests/test_users_api.py -- Integration tests for api/routes/v1/users.py.

Covers:
  - Register + login round trip, camelCase envelope, no credential fields
  - Login failure masking: unknown email and wrong password give identical bodies
  - Lockout over HTTP: 423 with Retry-After
  - Bearer handling: missing, garbage and revoked tokens all render one 401
  - Self-service profile reads/updates and the self-only boundary
  - Password change revokes every other session, keeps the current one
  - Logout and the per-user notification inbox

Uses the shared api_client / make_user fixtures from conftest.py; this module
gets its own shared-memory databases.
"""

import uuid

STRONG_PASSWORD = "Hunter!2a"


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _email() -> str:
    return f"user-{uuid.uuid4().hex[:10]}@medportal.test"


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


class TestRegisterLogin:
    def test_register_then_login(self, api_client):
        client, _, _ = api_client
        email = _email()
        resp = client.post(
            "/api/v1/users/register",
            json={"name": "Alice", "email": email.upper(), "password": STRONG_PASSWORD},
        )
        assert resp.status_code == 201
        user = resp.json()["data"]["user"]
        assert user["email"] == email
        assert user["role"] == "patient"
        assert user["isActive"] is True
        assert "password" not in str(user).lower()

        login = client.post("/api/v1/users/login", json={"email": email, "password": STRONG_PASSWORD})
        assert login.status_code == 200
        assert login.headers["cache-control"] == "no-store"
        data = login.json()["data"]
        assert data["tokenType"] == "bearer"
        assert data["user"]["id"] == user["id"]

        me = client.get("/api/v1/users/me", headers=_auth(data["accessToken"]))
        assert me.status_code == 200
        assert me.json()["data"]["user"]["id"] == user["id"]

    def test_password_whitespace_is_kept(self, api_client):
        client, _, _ = api_client
        email = _email()
        password = "Abcdef! "  # 8 characters, the last one a space
        resp = client.post("/api/v1/users/register", json={"name": "Sam", "email": email, "password": password})
        assert resp.status_code == 201

        trimmed = client.post("/api/v1/users/login", json={"email": email, "password": password.strip()})
        assert trimmed.status_code == 401
        exact = client.post("/api/v1/users/login", json={"email": email, "password": password})
        assert exact.status_code == 200

    def test_register_duplicate_email_is_conflict(self, api_client):
        client, _, _ = api_client
        email = _email()
        body = {"name": "Alice", "email": email, "password": STRONG_PASSWORD}
        assert client.post("/api/v1/users/register", json=body).status_code == 201
        resp = client.post("/api/v1/users/register", json={**body, "email": email.upper()})
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_in_use"

    def test_register_weak_password(self, api_client):
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/users/register",
            json={"name": "Alice", "email": _email(), "password": "password"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "weak_password"

    def test_register_ignores_role_field(self, api_client):
        client, _, _ = api_client
        resp = client.post(
            "/api/v1/users/register",
            json={"name": "Mallory", "email": _email(), "password": STRONG_PASSWORD, "role": "admin"},
        )
        assert resp.status_code == 201
        assert resp.json()["data"]["user"]["role"] == "patient"

    def test_login_failures_are_byte_identical(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        unknown = client.post("/api/v1/users/login", json={"email": _email(), "password": STRONG_PASSWORD})
        wrong = client.post("/api/v1/users/login", json={"email": user.email, "password": "Wrong!pass1"})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.content == wrong.content
        assert unknown.json()["error"]["code"] == "bad_credentials"

    def test_lockout_returns_423_with_retry_after(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        settings = client.app.state.settings
        for _ in range(settings.lockout_threshold):
            resp = client.post("/api/v1/users/login", json={"email": user.email, "password": "Wrong!pass1"})
            assert resp.status_code == 401
        resp = client.post("/api/v1/users/login", json={"email": user.email, "password": user.password})
        assert resp.status_code == 423
        assert int(resp.headers["retry-after"]) > 0
        assert resp.json()["error"]["code"] == "locked"


# ---------------------------------------------------------------------------
# Bearer handling
# ---------------------------------------------------------------------------


class TestBearer:
    def test_missing_token(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/users/me")
        assert resp.status_code == 401
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_unknown_and_revoked_tokens_look_the_same(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        assert client.post("/api/v1/users/logout", headers=user.headers).status_code == 204

        revoked = client.get("/api/v1/users/me", headers=user.headers)
        garbage = client.get("/api/v1/users/me", headers=_auth("not-a-real-token"))
        assert revoked.status_code == garbage.status_code == 401
        assert revoked.content == garbage.content

    def test_logout_twice_second_is_unauthorized(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        assert client.post("/api/v1/users/logout", headers=user.headers).status_code == 204
        assert client.post("/api/v1/users/logout", headers=user.headers).status_code == 401


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------


class TestProfile:
    def test_update_own_profile(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        resp = client.patch("/api/v1/users/me", json={"name": "Renamed"}, headers=user.headers)
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["name"] == "Renamed"

    def test_read_own_profile_by_id(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        assert client.get(f"/api/v1/users/{user.id}", headers=user.headers).status_code == 200

    def test_patient_cannot_read_other_profile(self, api_client, make_user):
        client, _, _ = api_client
        alice, bob = make_user(), make_user()
        resp = client.get(f"/api/v1/users/{bob.id}", headers=alice.headers)
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "self_only"

    def test_admin_can_read_any_profile(self, api_client, make_user):
        client, admin_token, _ = api_client
        user = make_user()
        resp = client.get(f"/api/v1/users/{user.id}", headers=_auth(admin_token))
        assert resp.status_code == 200
        assert resp.json()["data"]["user"]["email"] == user.email


# ---------------------------------------------------------------------------
# Password change
# ---------------------------------------------------------------------------


class TestChangePassword:
    def test_rotation_revokes_other_sessions(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        second = client.post("/api/v1/users/login", json={"email": user.email, "password": user.password})
        other_headers = _auth(second.json()["data"]["accessToken"])

        resp = client.post(
            "/api/v1/users/change-password",
            json={"currentPassword": user.password, "newPassword": "Brand!new9"},
            headers=user.headers,
        )
        assert resp.status_code == 200
        assert resp.json()["data"]["revokedSessions"] == 1

        assert client.get("/api/v1/users/me", headers=user.headers).status_code == 200
        assert client.get("/api/v1/users/me", headers=other_headers).status_code == 401

        old = client.post("/api/v1/users/login", json={"email": user.email, "password": user.password})
        new = client.post("/api/v1/users/login", json={"email": user.email, "password": "Brand!new9"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_wrong_current_password(self, api_client, make_user):
        client, _, _ = api_client
        user = make_user()
        resp = client.post(
            "/api/v1/users/change-password",
            json={"currentPassword": "Wrong!pass1", "newPassword": "Brand!new9"},
            headers=user.headers,
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["detail"] == "wrong_current_password"
        assert "www-authenticate" not in resp.headers
        assert client.get("/api/v1/users/me", headers=user.headers).status_code == 200


# ---------------------------------------------------------------------------
# Notifications inbox
# ---------------------------------------------------------------------------


def test_inbox_receives_bulk_notification(api_client, make_user):
    client, admin_token, _ = api_client
    user = make_user()
    resp = client.post(
        "/api/v1/admin/notifications/bulk",
        json={"userIds": [user.id], "title": "Welcome", "message": "Hello from the clinic."},
        headers=_auth(admin_token),
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["sent"] == 1

    inbox = client.get("/api/v1/users/me/notifications", headers=user.headers)
    assert [n["title"] for n in inbox.json()["data"]["notifications"]] == ["Welcome"]

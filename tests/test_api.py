"""HTTP-level tests for the hospital, auth and user endpoints."""

import re

import pytest
from fastapi.testclient import TestClient

from medgate import app as app_module
from medgate.service.runtime import get_runtime

ADMIN_EMAIL = "admin1@hospital1.org"
ADMIN_PASSWORD = "Admin1234"


@pytest.fixture
def client(dispatcher):
    """Test client whose outbound mail lands in the recording dispatcher."""
    get_runtime().email.dispatcher = dispatcher
    return TestClient(app_module.app)


def _registration_body(n=1, **admin_overrides):
    admin = {
        "full_name": f"Admin Person {n}",
        "job_title": "Chief Administrator",
        "email": f"admin{n}@hospital{n}.org",
        "password": ADMIN_PASSWORD,
    }
    admin.update(admin_overrides)
    return {
        "hospital": {
            "name": f"General Hospital {n}",
            "email": f"contact{n}@hospital{n}.org",
            "registration_number": f"REG-{n:05d}",
            "license_number": f"LIC-{n:05d}",
            "hospital_number": f"HN-{n:05d}",
        },
        "admin": admin,
    }


def _pending_code(email):
    record = get_runtime().store.latest_verification(email, "hospital_registration")
    return record.token


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_token(client):
    assert client.post("/v1/hospital/register", json=_registration_body()).status_code == 201
    response = client.post(
        "/v1/hospital/verify-email",
        json={"email": ADMIN_EMAIL, "token": _pending_code(ADMIN_EMAIL)},
    )
    assert response.status_code == 200
    return response.json()["data"]["token"]


def _create_nurse(client, admin_token, dispatcher, email="nurse1@hospital1.org"):
    response = client.post(
        "/v1/users",
        json={"first_name": "Nora", "last_name": "Nightingale", "email": email, "role": "nurse"},
        headers=_auth(admin_token),
    )
    assert response.status_code == 201, response.json()
    text = dispatcher.last_to(email)["text"]
    return response.json()["data"], re.search(r"Temporary password: (\S+)", text).group(1)


class TestHospitalRegistration:
    def test_register_returns_pending_tenant(self, client):
        response = client.post("/v1/hospital/register", json=_registration_body())
        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["tenant_id"] == "HOSP0001"
        assert body["data"]["verification_required"] is True
        assert "password" not in str(body)

    def test_duplicate_registration_conflicts(self, client):
        client.post("/v1/hospital/register", json=_registration_body())
        response = client.post("/v1/hospital/register", json=_registration_body())
        assert response.status_code == 409
        error = response.json()["error"]
        assert error["code"] == "conflict"
        assert "email" in error["details"]["fields"]

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/hospital/register", json=_registration_body(password="alllowercase")
        )
        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "validation_error"
        fields = [e["field"] for e in body["error"]["details"]["errors"]]
        assert "admin.password" in fields

    def test_invalid_email_rejected(self, client):
        response = client.post(
            "/v1/hospital/register", json=_registration_body(email="not-an-email")
        )
        assert response.status_code == 400

    def test_mail_outage_returns_503_and_saves_nothing(self, client, dispatcher):
        dispatcher.fail_always = True
        response = client.post("/v1/hospital/register", json=_registration_body())
        assert response.status_code == 503
        assert response.json()["error"]["code"] == "email_dispatch_failed"
        assert get_runtime().store.get_tenant("HOSP0001") is None

    def test_verify_and_resend(self, client):
        client.post("/v1/hospital/register", json=_registration_body())
        resent = client.post("/v1/hospital/resend-verification", json={"email": ADMIN_EMAIL})
        assert resent.status_code == 200
        response = client.post(
            "/v1/hospital/verify-email",
            json={"email": ADMIN_EMAIL, "token": _pending_code(ADMIN_EMAIL)},
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["tenant"]["status"] == "active"

    def test_wrong_code(self, client):
        client.post("/v1/hospital/register", json=_registration_body())
        code = _pending_code(ADMIN_EMAIL)
        wrong = "100000" if code != "100000" else "100001"
        response = client.post(
            "/v1/hospital/verify-email", json={"email": ADMIN_EMAIL, "token": wrong}
        )
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "invalid_token"
        assert error["details"]["attempts_remaining"] == 4

    def test_blocked_code_returns_429(self, client):
        client.post("/v1/hospital/register", json=_registration_body())
        code = _pending_code(ADMIN_EMAIL)
        wrong = "100000" if code != "100000" else "100001"
        for _ in range(5):
            client.post("/v1/hospital/verify-email", json={"email": ADMIN_EMAIL, "token": wrong})
        response = client.post(
            "/v1/hospital/verify-email", json={"email": ADMIN_EMAIL, "token": code}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "too_many_attempts"

    def test_malformed_code_is_a_validation_error(self, client):
        response = client.post(
            "/v1/hospital/verify-email", json={"email": ADMIN_EMAIL, "token": "12ab"}
        )
        assert response.status_code == 400


class TestLoginAndSession:
    def test_admin_login_and_me(self, client, admin_token):
        response = client.post(
            "/v1/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
        )
        assert response.status_code == 200
        token = response.json()["data"]["token"]
        me = client.get("/v1/me", headers=_auth(token))
        assert me.status_code == 200
        assert me.json()["data"]["principal"]["kind"] == "admin"
        assert me.json()["data"]["tenant"]["tenant_id"] == "HOSP0001"

    def test_missing_token(self, client):
        response = client.get("/v1/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json()["error"]["code"] == "unauthorized"

    def test_garbage_token(self, client):
        response = client.get("/v1/me", headers=_auth("not.a.token"))
        assert response.status_code == 401

    def test_wrong_password(self, client, admin_token):
        response = client.post(
            "/v1/admin/login", json={"email": ADMIN_EMAIL, "password": "Wrong1234"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_credentials"

    def test_lockout_sets_retry_after(self, client, admin_token):
        for _ in range(5):
            client.post("/v1/admin/login", json={"email": ADMIN_EMAIL, "password": "Wrong1234"})
        response = client.post(
            "/v1/admin/login", json={"email": ADMIN_EMAIL, "password": ADMIN_PASSWORD}
        )
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "account_locked"
        assert response.headers["Retry-After"] == "7200"

    def test_logout_revokes(self, client, admin_token):
        assert client.post("/v1/auth/logout", headers=_auth(admin_token)).status_code == 200
        response = client.get("/v1/me", headers=_auth(admin_token))
        assert response.status_code == 401

    def test_suspended_tenant(self, client, admin_token):
        get_runtime().store.set_tenant_status("HOSP0001", "suspended")
        response = client.get("/v1/me", headers=_auth(admin_token))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "tenant_inactive"

    def test_request_id_echoed(self, client):
        response = client.get("/v1/me", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestStaffEndpoints:
    def test_staff_lifecycle(self, client, admin_token, dispatcher):
        staff, password = _create_nurse(client, admin_token, dispatcher)
        assert staff["employee_id"] == "NU0001"
        assert staff["must_change_password"] is True
        assert "password_hash" not in staff

        login = client.post(
            "/v1/auth/login", json={"email": staff["email"], "password": password}
        )
        assert login.status_code == 200
        staff_token = login.json()["data"]["token"]

        changed = client.post(
            "/v1/auth/change-password",
            json={"current_password": password, "new_password": "Fresh1234"},
            headers=_auth(staff_token),
        )
        assert changed.status_code == 200

        updated = client.put(
            f"/v1/users/{staff['id']}",
            json={"department": "ICU"},
            headers=_auth(admin_token),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["department"] == "ICU"
        assert updated.json()["data"]["must_change_password"] is False

        reset = client.post(
            f"/v1/users/{staff['id']}/reset-password", headers=_auth(admin_token)
        )
        assert reset.status_code == 200

        deleted = client.delete(f"/v1/users/{staff['id']}", headers=_auth(admin_token))
        assert deleted.status_code == 200
        assert client.get("/v1/me", headers=_auth(staff_token)).status_code == 401

    def test_staff_cannot_manage_users(self, client, admin_token, dispatcher):
        staff, password = _create_nurse(client, admin_token, dispatcher)
        staff_token = client.post(
            "/v1/auth/login", json={"email": staff["email"], "password": password}
        ).json()["data"]["token"]
        response = client.post(
            "/v1/users",
            json={
                "first_name": "Eve",
                "last_name": "Intruder",
                "email": "eve@hospital1.org",
                "role": "doctor",
            },
            headers=_auth(staff_token),
        )
        assert response.status_code == 403
        assert response.json()["error"]["details"] == {"module": "users", "action": "create"}

    def test_unknown_update_field_rejected(self, client, admin_token, dispatcher):
        staff, _ = _create_nurse(client, admin_token, dispatcher)
        response = client.put(
            f"/v1/users/{staff['id']}",
            json={"tenant_id": "HOSP0002"},
            headers=_auth(admin_token),
        )
        assert response.status_code == 400

    def test_invalid_role_rejected(self, client, admin_token):
        response = client.post(
            "/v1/users",
            json={"first_name": "Al", "last_name": "Bo", "email": "al@h1.org", "role": "janitor"},
            headers=_auth(admin_token),
        )
        assert response.status_code == 400

    def test_other_tenant_sees_not_found(self, client, admin_token, dispatcher):
        staff, _ = _create_nurse(client, admin_token, dispatcher)
        client.post("/v1/hospital/register", json=_registration_body(2))
        other = client.post(
            "/v1/hospital/verify-email",
            json={"email": "admin2@hospital2.org", "token": _pending_code("admin2@hospital2.org")},
        ).json()["data"]["token"]
        response = client.delete(f"/v1/users/{staff['id']}", headers=_auth(other))
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"


def test_healthz(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json()["checks"]["redis"]["status"] == "not_configured"

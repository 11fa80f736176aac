"""Tests for API endpoints."""

import json
import pyotp

from app.config import settings
from app.models.audit_log import AuditLog
from app.services.token_service import get_token_service
from tests.conftest import PASSWORD, TENANT_ID

LDAP_CONFIG = {
    "host": "ldap.example.com",
    "port": 636,
    "use_ssl": True,
    "base_dn": "dc=example,dc=com",
    "bind_dn": "cn=svc,dc=example,dc=com",
    "bind_password": "directory-secret",
    "is_enabled": True,
    "group_role_mappings": {"Lab Admins": "Admin"},
}


def login(client, email="user@example.com", password=PASSWORD, tenant_id=TENANT_ID):
    return client.post("/api/auth/login", json={"email": email, "password": password, "tenant_id": tenant_id})


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_check(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database"] == "ok"
        assert "version" in data

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "Strict-Transport-Security" in response.headers

    def test_api_responses_are_not_cached(self, client):
        response = client.post("/api/auth/password/strength", json={"password": "x"})
        assert response.headers["Cache-Control"] == "no-store"


class TestLoginEndpoints:
    """Test authentication endpoints."""

    def test_login(self, client, user):
        response = login(client)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["token_type"] == "bearer"
        assert data["roles"] == ["User"]

        claims = get_token_service().validate_access_token(data["access_token"])
        assert claims.sub == user.id
        assert claims.tenant_id == TENANT_ID

    def test_login_missing_credentials(self, client):
        response = client.post("/api/auth/login", json={})
        assert response.status_code == 422

    def test_wrong_password_and_unknown_user_look_alike(self, client, user):
        wrong = login(client, password="Not-The-Password-1")
        unknown = login(client, email="nobody@example.com")
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json() == unknown.json()

    def test_lockout_returns_423(self, client, user):
        for _ in range(settings.MAX_LOGIN_ATTEMPTS):
            assert login(client, password="Not-The-Password-1").status_code == 401

        response = login(client)
        assert response.status_code == 423

    def test_login_is_scoped_to_tenant(self, client, make_user):
        make_user(email="shared@example.com", tenant_id="tenant-a")
        other = make_user(email="shared@example.com", tenant_id="tenant-b", password="Other-Tenant-77")

        assert login(client, "shared@example.com", PASSWORD, tenant_id="tenant-b").status_code == 401
        response = login(client, "shared@example.com", "Other-Tenant-77", tenant_id="tenant-b")
        assert response.status_code == 200
        assert response.json()["user_id"] == other.id

    def test_ambiguous_email_requires_tenant(self, client, make_user):
        make_user(email="shared@example.com", tenant_id="tenant-a")
        make_user(email="shared@example.com", tenant_id="tenant-b")
        assert login(client, "shared@example.com", PASSWORD, tenant_id=None).status_code == 401

    def test_generic_authenticate_endpoint(self, client, user):
        response = client.post(
            "/api/auth/authenticate",
            json={"method": "local", "tenant_id": TENANT_ID, "email": "user@example.com", "password": PASSWORD},
        )
        assert response.status_code == 200
        assert response.json()["access_token"]

    def test_token_validate(self, client, auth_headers, user):
        token = auth_headers["Authorization"].split(" ", 1)[1]
        response = client.post("/api/auth/token/validate", json={"token": token})
        assert response.status_code == 200
        assert response.json()["user_id"] == user.id

    def test_token_validate_rejects_garbage(self, client):
        response = client.post("/api/auth/token/validate", json={"token": "garbage"})
        assert response.status_code == 400

    def test_logout(self, client, db, auth_headers):
        response = client.post("/api/auth/logout", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["session_terminated"] is True
        assert db.query(AuditLog).filter(AuditLog.action == "LOGOUT").count() == 1


class TestProtectedEndpoints:
    """Bearer token enforcement."""

    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_me(self, client, auth_headers, user):
        response = client.get("/api/auth/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["email"] == user.email

    def test_mfa_token_is_not_an_access_token(self, client, user):
        token = get_token_service().issue_mfa_token(user.id)
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    def test_lockout_status(self, client, admin_headers, user):
        login(client, password="Not-The-Password-1")
        response = client.post("/api/auth/lockout", json={"email": user.email}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["failed_attempts"] == 1
        assert response.json()["is_locked"] is False

    def test_lockout_status_requires_admin(self, client, auth_headers, user):
        response = client.post("/api/auth/lockout", json={"email": user.email}, headers=auth_headers)
        assert response.status_code == 403

    def test_lockout_status_of_other_tenant_is_forbidden(self, client, make_user, admin_headers):
        make_user(email="victim@other.com", tenant_id="tenant-9")
        response = client.post(
            "/api/auth/lockout",
            json={"email": "victim@other.com", "tenant_id": "tenant-9"},
            headers=admin_headers,
        )
        assert response.status_code == 403

    def test_lockout_status_only_reads_callers_tenant(self, client, make_user, admin_headers):
        make_user(email="victim@other.com", tenant_id="tenant-9", failed_login_attempts=3)
        response = client.post("/api/auth/lockout", json={"email": "victim@other.com"}, headers=admin_headers)
        assert response.status_code == 200
        assert response.json()["failed_attempts"] == 0


class TestMfaEndpoints:
    """Enrolment and the two-step login."""

    def test_enrol_and_login(self, client, auth_headers):
        setup = client.post("/api/auth/mfa/setup", headers=auth_headers).json()
        assert setup["qr_code"].startswith("data:image/svg+xml")
        assert len(setup["backup_codes"]) == settings.MFA_BACKUP_CODE_COUNT
        secret = setup["secret"]

        verify = client.post("/api/auth/mfa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=auth_headers)
        assert verify.status_code == 200

        first = login(client)
        assert first.status_code == 200
        assert first.json()["requires_mfa"] is True
        assert first.json()["access_token"] is None

        second = client.post(
            "/api/auth/mfa/complete",
            json={"mfa_token": first.json()["mfa_token"], "code": setup["backup_codes"][0]},
        )
        assert second.status_code == 200
        assert second.json()["access_token"]

        status = client.get("/api/auth/mfa/status", headers=auth_headers).json()
        assert status["mfa_enabled"] is True
        assert status["backup_codes_remaining"] == settings.MFA_BACKUP_CODE_COUNT - 1

    def test_wrong_second_factor(self, client, auth_headers):
        secret = client.post("/api/auth/mfa/setup", headers=auth_headers).json()["secret"]
        client.post("/api/auth/mfa/verify", json={"code": pyotp.TOTP(secret).now()}, headers=auth_headers)
        mfa_token = login(client).json()["mfa_token"]

        response = client.post("/api/auth/mfa/complete", json={"mfa_token": mfa_token, "code": "000000x"})
        assert response.status_code == 401

    def test_recovery_initiate_does_not_leak(self, client, user):
        known = client.post("/api/auth/mfa/recovery/initiate", json={"email": user.email, "tenant_id": TENANT_ID})
        unknown = client.post(
            "/api/auth/mfa/recovery/initiate", json={"email": "nobody@example.com", "tenant_id": TENANT_ID}
        )
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()
        assert "recovery_token" not in known.json()


class TestPasswordEndpoints:
    """Strength, change and reset."""

    def test_strength(self, client):
        response = client.post("/api/auth/password/strength", json={"password": "Correct-Horse-42"})
        assert response.status_code == 200
        assert response.json()["is_valid"] is True
        assert response.json()["score"] == 5

    def test_change_rejects_weak_password(self, client, auth_headers):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "short"},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"]["errors"]

    def test_change(self, client, auth_headers):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": PASSWORD, "new_password": "Another-Horse-77"},
            headers=auth_headers,
        )
        assert response.status_code == 200
        assert login(client, password="Another-Horse-77").status_code == 200

    def test_change_with_wrong_current_password(self, client, auth_headers):
        response = client.post(
            "/api/auth/password/change",
            json={"current_password": "Wrong-Password-0", "new_password": "Another-Horse-77"},
            headers=auth_headers,
        )
        assert response.status_code == 401

    def test_reset_initiate_never_returns_token(self, client, user):
        response = client.post("/api/auth/password/reset/initiate", json={"email": user.email, "tenant_id": TENANT_ID})
        assert response.status_code == 200
        assert "reset_token" not in response.json()

    def test_reset_complete_with_unknown_token(self, client):
        response = client.post(
            "/api/auth/password/reset/complete",
            json={"token": "not-a-real-token", "new_password": "Another-Horse-77"},
        )
        assert response.status_code == 400


class TestLdapEndpoints:
    """Directory configuration is restricted to tenant administrators."""

    def test_requires_admin_role(self, client, auth_headers):
        response = client.get(f"/api/auth/ldap/config/{TENANT_ID}", headers=auth_headers)
        assert response.status_code == 403

    def test_requires_same_tenant(self, client, admin_headers):
        response = client.get("/api/auth/ldap/config/another-tenant", headers=admin_headers)
        assert response.status_code == 403

    def test_not_configured(self, client, admin_headers):
        response = client.get(f"/api/auth/ldap/config/{TENANT_ID}", headers=admin_headers)
        assert response.status_code == 404

    def test_save_and_read(self, client, db, admin_headers):
        saved = client.put(f"/api/auth/ldap/config/{TENANT_ID}", json=LDAP_CONFIG, headers=admin_headers)
        assert saved.status_code == 200
        assert saved.json()["has_bind_password"] is True
        assert "bind_password" not in saved.json()
        assert saved.json()["is_valid"] is False

        fetched = client.get(f"/api/auth/ldap/config/{TENANT_ID}", headers=admin_headers)
        assert fetched.json()["host"] == "ldap.example.com"
        assert fetched.json()["group_role_mappings"] == {"Lab Admins": "Admin"}

        entry = db.query(AuditLog).filter(AuditLog.action == "UPDATE_LDAP_CONFIGURATION").one()
        assert json.loads(entry.request_body)["bind_password"] == "[REDACTED]"

    def test_ldap_login_without_configuration(self, client):
        response = client.post(
            "/api/auth/ldap/login",
            json={"tenant_id": TENANT_ID, "username": "jdoe", "password": "whatever"},
        )
        assert response.status_code == 400


class TestSsoEndpoints:
    """Federated login entry points and configuration."""

    def _configure_saml(self, client, admin_headers, certificate):
        return client.put(
            f"/api/auth/sso/config/{TENANT_ID}/saml",
            json={
                "is_enabled": True,
                "entity_id": "https://idp.example.com/metadata",
                "sso_url": "https://idp.example.com/sso",
                "certificate": certificate,
                "callback_url": f"https://app.example.com/api/auth/sso/saml/acs/{TENANT_ID}",
            },
            headers=admin_headers,
        )

    def test_unknown_provider(self, client):
        response = client.get(f"/api/auth/sso/login/{TENANT_ID}/kerberos")
        assert response.status_code == 404

    def test_not_configured(self, client):
        response = client.get(f"/api/auth/sso/login/{TENANT_ID}/saml")
        assert response.status_code == 400

    def test_configure_and_redirect(self, client, admin_headers, idp_certificate):
        saved = self._configure_saml(client, admin_headers, idp_certificate[2].decode())
        assert saved.status_code == 200
        assert saved.json()["has_certificate"] is True

        response = client.get(
            f"/api/auth/sso/login/{TENANT_ID}/saml",
            params={"redirect": "true", "relay_state": "/home"},
            follow_redirects=False,
        )
        assert response.status_code == 302
        assert response.headers["location"].startswith("https://idp.example.com/sso?SAMLRequest=")

        validated = client.post(f"/api/auth/sso/config/{TENANT_ID}/saml/validate", headers=admin_headers)
        assert validated.json()["is_valid"] is True

    def test_configuration_requires_admin(self, client, auth_headers):
        response = client.get(f"/api/auth/sso/config/{TENANT_ID}", headers=auth_headers)
        assert response.status_code == 403

    def test_acs_requires_saml_response(self, client):
        response = client.post(f"/api/auth/sso/saml/acs/{TENANT_ID}", data={"RelayState": "x"})
        assert response.status_code == 400

    def test_acs_rejects_unsigned_response(self, client, admin_headers, idp_certificate):
        from tests.test_saml_service import build_response, encode

        self._configure_saml(client, admin_headers, idp_certificate[2].decode())
        response = client.post(
            f"/api/auth/sso/saml/acs/{TENANT_ID}",
            data={"SAMLResponse": encode(build_response())},
        )
        assert response.status_code == 401

    def test_callback_with_forged_state(self, client):
        response = client.get("/api/auth/sso/callback", params={"state": "forged", "code": "abc"})
        assert response.status_code == 400

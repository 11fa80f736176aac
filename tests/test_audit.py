"""Tests for audit logging service."""

import json
import pytest
from app.services import audit_service as audit
from app.services.audit_service import AuditService
from app.models.audit_log import AuditLog


class TestAuditService:
    """Test suite for audit service."""

    def test_log_action_basic(self, db):
        """Test basic audit log creation."""
        service = AuditService(db)

        service.log_action(
            user_id="user-123",
            user_email="user@example.com",
            action=audit.LOGIN,
            tenant_id="tenant-1",
            auth_method="local",
            user_ip="10.0.0.1",
            success=True
        )

        logs = db.query(AuditLog).all()
        assert len(logs) == 1
        assert logs[0].user_id == "user-123"
        assert logs[0].action == "LOGIN"
        assert logs[0].resource_type == "AUTH"
        assert logs[0].tenant_id == "tenant-1"
        assert logs[0].auth_method == "local"
        assert logs[0].success is True

    def test_anonymous_failure(self, db):
        """Failed logins for unknown accounts are still recorded."""
        AuditService(db).log_action(
            user_id=None,
            user_email=None,
            action=audit.LOGIN_FAILED,
            success=False,
            failure_reason="invalid_credential"
        )

        log = db.query(AuditLog).first()
        assert log.user_id == "anonymous"
        assert log.success is False
        assert log.failure_reason == "invalid_credential"

    def test_sanitize_request_body(self, db):
        """Test that credentials and tokens are redacted in logs."""
        service = AuditService(db)

        request_body = {
            "username": "john",
            "password": "secret123",
            "mfa_code": "123456",
            "configuration": {"client_secret": "abc", "tenant": "contoso"},
            "host": "ldap.example.com"
        }

        sanitized = service._sanitize_request_body(request_body)

        assert sanitized["password"] == "[REDACTED]"
        assert sanitized["mfa_code"] == "[REDACTED]"
        assert sanitized["configuration"]["client_secret"] == "[REDACTED]"
        assert sanitized["configuration"]["tenant"] == "contoso"
        assert sanitized["username"] == "john"
        assert sanitized["host"] == "ldap.example.com"

    def test_request_body_is_stored_sanitized(self, db):
        AuditService(db).log_action(
            user_id="admin-1",
            user_email="admin@example.com",
            action="UPDATE_LDAP_CONFIGURATION",
            resource_type="LDAP_CONFIGURATION",
            request_body={"host": "ldap.example.com", "bind_password": "hunter2"},
        )

        stored = json.loads(db.query(AuditLog).first().request_body)
        assert stored == {"host": "ldap.example.com", "bind_password": "[REDACTED]"}

    def test_get_user_activity(self, db):
        """Test retrieving user activity, newest first."""
        service = AuditService(db)

        for action in (audit.LOGIN, audit.PASSWORD_CHANGED, audit.MFA_ENABLED):
            service.log_action(
                user_id="user-123",
                user_email="user@example.com",
                action=action,
                success=True
            )
        service.log_action(user_id="other", user_email="other@example.com", action=audit.LOGIN)

        activity = service.get_user_activity("user-123", limit=10)
        assert [a.action for a in activity] == ["MFA_ENABLED", "PASSWORD_CHANGED", "LOGIN"]
        assert len(service.get_user_activity("user-123", limit=2)) == 2

    def test_audit_failure_does_not_raise(self, db, monkeypatch):
        """A failing audit sink is logged and rolled back."""
        service = AuditService(db)

        def broken_commit():
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(db, "commit", broken_commit)
        service.log_action(user_id="user-123", user_email="user@example.com", action=audit.LOGIN)

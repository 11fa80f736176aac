"""Audit logging service for authentication events."""

from typing import Optional
from sqlalchemy.orm import Session
import json
import logging

from app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

# Actions recorded by the authentication flows
LOGIN = "LOGIN"
LOGIN_FAILED = "LOGIN_FAILED"
ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
MFA_ENABLED = "MFA_ENABLED"
MFA_DISABLED = "MFA_DISABLED"
PASSWORD_CHANGED = "PASSWORD_CHANGED"
PASSWORD_RESET = "PASSWORD_RESET"
SSO_LOGIN = "SSO_LOGIN"
LDAP_LOGIN = "LDAP_LOGIN"
LDAP_SYNC = "LDAP_SYNC"

SENSITIVE_FIELDS = (
    "password",
    "current_password",
    "new_password",
    "bind_password",
    "client_secret",
    "secret",
    "token",
    "mfa_token",
    "mfa_code",
    "code",
    "saml_response",
)


class AuditService:
    """Service for the authentication audit trail."""

    def __init__(self, db: Session):
        self.db = db

    def log_action(
        self,
        user_id: Optional[str],
        user_email: Optional[str],
        action: str,
        resource_type: str = "AUTH",
        resource_id: str = None,
        tenant_id: str = None,
        auth_method: str = None,
        request_body: dict = None,
        success: bool = True,
        failure_reason: str = None,
        user_ip: str = None,
        user_agent: str = None
    ):
        """Record an action. A failing audit sink never changes the audited outcome."""
        try:
            sanitized_body = self._sanitize_request_body(request_body) if request_body else None

            audit_log = AuditLog(
                user_id=user_id or "anonymous",
                user_email=user_email or "unknown",
                tenant_id=tenant_id,
                action=action,
                resource_type=resource_type,
                resource_id=resource_id,
                auth_method=auth_method,
                request_body=json.dumps(sanitized_body) if sanitized_body else None,
                success=success,
                failure_reason=failure_reason,
                user_ip=user_ip,
                user_agent=user_agent
            )

            self.db.add(audit_log)
            self.db.commit()

            logger.info(
                f"Audit log: {user_email} {action} {resource_type}/{resource_id} - "
                f"{'SUCCESS' if success else 'FAILURE'}"
            )
        except Exception as e:
            logger.error(f"Failed to create audit log: {e}")
            self.db.rollback()

    def _sanitize_request_body(self, body: dict) -> dict:
        """Redact credentials and tokens from a request body."""
        sanitized = {}
        for key, value in body.items():
            if key.lower() in SENSITIVE_FIELDS:
                sanitized[key] = "[REDACTED]"
            elif isinstance(value, dict):
                sanitized[key] = self._sanitize_request_body(value)
            else:
                sanitized[key] = value
        return sanitized

    def get_user_activity(self, user_id: str, limit: int = 100) -> list:
        """Get recent activity for a specific user."""
        return (
            self.db.query(AuditLog)
            .filter(AuditLog.user_id == user_id)
            .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
            .limit(limit)
            .all()
        )

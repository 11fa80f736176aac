"""Database models for the identity service."""

from app.models.user import User, UserStatus, AuthProvider
from app.models.user_role import UserRole
from app.models.password_history import PasswordHistoryEntry
from app.models.mfa_backup_code import MfaBackupCode
from app.models.ldap_configuration import LdapConfiguration
from app.models.sso_configuration import SsoConfiguration, SsoProvider
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "UserStatus",
    "AuthProvider",
    "UserRole",
    "PasswordHistoryEntry",
    "MfaBackupCode",
    "LdapConfiguration",
    "SsoConfiguration",
    "SsoProvider",
    "AuditLog",
]

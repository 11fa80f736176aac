"""User model for authentication and account security state."""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Index, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class UserStatus(str, enum.Enum):
    """Account status. Only ACTIVE accounts may authenticate."""

    ACTIVE = "Active"
    INACTIVE = "Inactive"
    SUSPENDED = "Suspended"
    PENDING = "Pending"


class AuthProvider(str, enum.Enum):
    """How the account was established."""

    LOCAL = "local"
    LDAP = "ldap"
    SAML = "saml"
    OAUTH = "oauth"
    OIDC = "oidc"


def generate_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """Identity anchor for every authentication method."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    tenant_id = Column(String(36), nullable=False)
    email = Column(String(256), nullable=False)  # Always stored lower-cased
    first_name = Column(String(100), nullable=False, default="")
    last_name = Column(String(100), nullable=False, default="")
    display_name = Column(String(200), nullable=True)

    # Status
    status = Column(String(20), nullable=False, default=UserStatus.ACTIVE.value)
    email_confirmed = Column(Boolean, nullable=False, default=False)
    last_login = Column(DateTime, nullable=True)

    # Federation
    auth_provider = Column(String(20), nullable=False, default=AuthProvider.LOCAL.value)
    external_auth_id = Column(String(500), nullable=True)  # NameID, LDAP DN or OIDC subject

    # Local password (absent for pure-federated accounts)
    hashed_password = Column(String(255), nullable=True)  # bcrypt hash
    password_changed_at = Column(DateTime, nullable=True)
    password_reset_token_hash = Column(String(64), nullable=True)
    password_reset_token_expires_at = Column(DateTime, nullable=True)

    # Multi-factor authentication
    mfa_enabled = Column(Boolean, nullable=False, default=False)
    mfa_secret = Column(Text, nullable=True)  # Fernet-encrypted base32 secret
    mfa_enabled_at = Column(DateTime, nullable=True)
    mfa_recovery_token_hash = Column(String(64), nullable=True)
    mfa_recovery_token_expires_at = Column(DateTime, nullable=True)

    # Lockout
    failed_login_attempts = Column(Integer, nullable=False, default=0)
    account_locked_until = Column(DateTime, nullable=True)

    # Audit
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan", lazy="selectin")
    password_history = relationship(
        "PasswordHistoryEntry", back_populates="user", cascade="all, delete-orphan"
    )
    backup_codes = relationship("MfaBackupCode", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
        Index("idx_users_email", "email"),
        Index("idx_users_tenant", "tenant_id"),
        Index("idx_users_status", "status"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @property
    def name(self) -> str:
        """Display name, falling back to the full name and then the email."""
        return self.display_name or self.full_name or self.email

    @property
    def role_names(self) -> list:
        return sorted(role.role for role in self.roles)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE.value

"""Per-tenant federation settings for SAML, OAuth 2.0 and OpenID Connect."""

import enum
import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Text, UniqueConstraint
from sqlalchemy.sql import func
from app.database import Base


class SsoProvider(str, enum.Enum):
    SAML = "SAML"
    OAUTH = "OAuth"
    OIDC = "OpenIDConnect"


class SsoConfiguration(Base):
    """Federation configuration. Unique per (tenant, provider)."""

    __tablename__ = "sso_configurations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    provider_name = Column(String(200), nullable=False, default="")
    is_enabled = Column(Boolean, nullable=False, default=False)
    is_required = Column(Boolean, nullable=False, default=False)

    # Extra provider settings (token_endpoint, userinfo_endpoint, jwks_uri, ...)
    configuration_json = Column(Text, nullable=True)

    # SAML
    entity_id = Column(String(500), nullable=True)
    sso_url = Column(String(1000), nullable=True)  # SAML SSO URL or OAuth authorize URL
    logout_url = Column(String(1000), nullable=True)
    certificate = Column(Text, nullable=True)  # IdP X.509 signing certificate (PEM or base64 DER)

    # OAuth / OpenID Connect
    client_id = Column(String(500), nullable=True)
    client_secret = Column(Text, nullable=True)  # Fernet-encrypted
    scopes = Column(String(500), nullable=True)
    authority = Column(String(1000), nullable=True)
    callback_url = Column(String(1000), nullable=True)

    # Claims
    attribute_mappings = Column(Text, nullable=True)  # JSON object: claim -> attribute name
    default_role = Column(String(100), nullable=True)
    auto_provision_users = Column(Boolean, nullable=False, default=True)

    # Status
    last_successful_auth = Column(DateTime, nullable=True)
    last_validated = Column(DateTime, nullable=True)
    is_valid = Column(Boolean, nullable=False, default=False)
    validation_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("tenant_id", "provider", name="uq_sso_configurations_tenant_provider"),
    )

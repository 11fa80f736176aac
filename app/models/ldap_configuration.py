"""Per-tenant directory connection settings."""

import uuid

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text
from sqlalchemy.sql import func
from app.database import Base


class LdapConfiguration(Base):
    """LDAP/Active Directory connection for a tenant. One per tenant."""

    __tablename__ = "ldap_configurations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    tenant_id = Column(String(36), nullable=False, unique=True, index=True)

    # Connection
    host = Column(String(255), nullable=False, default="")
    port = Column(Integer, nullable=False, default=389)
    use_ssl = Column(Boolean, nullable=False, default=False)
    use_start_tls = Column(Boolean, nullable=False, default=False)
    connection_timeout = Column(Integer, nullable=False, default=30)  # seconds
    search_timeout = Column(Integer, nullable=False, default=30)  # seconds

    # Service account
    bind_dn = Column(String(500), nullable=False, default="")
    bind_password = Column(Text, nullable=True)  # Fernet-encrypted

    # Search
    base_dn = Column(String(500), nullable=False, default="")
    user_search_filter = Column(String(500), nullable=False, default="(&(objectClass=user)(sAMAccountName={0}))")
    group_search_filter = Column(String(500), nullable=False, default="(&(objectClass=group)(member={0}))")
    user_dn_pattern = Column(String(500), nullable=False, default="")

    # Attribute mappings
    email_attribute = Column(String(100), nullable=False, default="mail")
    first_name_attribute = Column(String(100), nullable=False, default="givenName")
    last_name_attribute = Column(String(100), nullable=False, default="sn")
    display_name_attribute = Column(String(100), nullable=False, default="displayName")
    group_membership_attribute = Column(String(100), nullable=False, default="memberOf")

    # Provisioning
    is_enabled = Column(Boolean, nullable=False, default=False)
    is_required = Column(Boolean, nullable=False, default=False)
    auto_provision_users = Column(Boolean, nullable=False, default=True)
    default_role = Column(String(100), nullable=True)
    group_role_mappings = Column(Text, nullable=True)  # JSON object: group CN -> role

    # Status
    last_successful_auth = Column(DateTime, nullable=True)
    last_validated = Column(DateTime, nullable=True)
    last_synchronized = Column(DateTime, nullable=True)
    is_valid = Column(Boolean, nullable=False, default=False)
    validation_error = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

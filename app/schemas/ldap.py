"""LDAP directory schemas."""

from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime

from app.schemas.identity import OperationResult


class LdapLoginRequest(BaseModel):
    tenant_id: str
    username: str
    password: str


class LdapConfigurationRequest(BaseModel):
    """Create or update a tenant's directory settings.

    Leave bind_password unset to keep the stored password.
    """
    host: str
    port: int = Field(389, ge=1, le=65535)
    use_ssl: bool = False
    use_start_tls: bool = False
    base_dn: str
    bind_dn: str = ""
    bind_password: Optional[str] = None
    user_search_filter: str = "(&(objectClass=user)(sAMAccountName={0}))"
    group_search_filter: str = "(&(objectClass=group)(member={0}))"
    user_dn_pattern: str = ""
    email_attribute: str = "mail"
    first_name_attribute: str = "givenName"
    last_name_attribute: str = "sn"
    display_name_attribute: str = "displayName"
    group_membership_attribute: str = "memberOf"
    is_enabled: bool = False
    is_required: bool = False
    auto_provision_users: bool = True
    default_role: Optional[str] = None
    group_role_mappings: Dict[str, str] = {}
    connection_timeout: int = 30
    search_timeout: int = 30


class LdapConfigurationResponse(BaseModel):
    """Stored directory settings. The bind password is never returned."""
    id: str
    tenant_id: str
    host: str
    port: int
    use_ssl: bool
    use_start_tls: bool
    base_dn: str
    bind_dn: str
    has_bind_password: bool
    user_search_filter: str
    group_search_filter: str
    email_attribute: str
    first_name_attribute: str
    last_name_attribute: str
    display_name_attribute: str
    group_membership_attribute: str
    is_enabled: bool
    is_required: bool
    auto_provision_users: bool
    default_role: Optional[str] = None
    group_role_mappings: Dict[str, str] = {}
    connection_timeout: int
    search_timeout: int
    is_valid: bool
    validation_error: Optional[str] = None
    last_validated: Optional[datetime] = None
    last_synchronized: Optional[datetime] = None
    last_successful_auth: Optional[datetime] = None


class LdapUser(BaseModel):
    """A directory entry mapped to identity fields."""
    dn: str
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: str = ""
    last_name: str = ""
    display_name: Optional[str] = None
    groups: List[str] = []


class LdapSearchRequest(BaseModel):
    search_term: str = "*"
    max_results: int = Field(100, ge=1, le=10000)


class LdapSearchResult(OperationResult):
    users: List[LdapUser] = []


class LdapSyncResult(OperationResult):
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = []


class ValidationResult(BaseModel):
    """Structural and live checks of a configuration."""
    is_valid: bool
    errors: List[str] = []
    warnings: List[str] = []

"""Federation (SAML, OAuth 2.0, OpenID Connect) schemas."""

from pydantic import BaseModel
from typing import Any, Dict, Optional
from datetime import datetime

from app.models.sso_configuration import SsoProvider
from app.schemas.identity import OperationResult


class SsoConfigurationRequest(BaseModel):
    """Create or update a provider. Leave client_secret unset to keep the stored one."""
    provider_name: str = ""
    is_enabled: bool = False
    is_required: bool = False
    configuration: Dict[str, Any] = {}
    entity_id: Optional[str] = None
    sso_url: Optional[str] = None
    logout_url: Optional[str] = None
    certificate: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: Optional[str] = None
    authority: Optional[str] = None
    callback_url: Optional[str] = None
    attribute_mappings: Dict[str, str] = {}
    default_role: Optional[str] = None
    auto_provision_users: bool = True


class SsoConfigurationResponse(BaseModel):
    """Stored provider settings. The client secret is never returned."""
    id: str
    tenant_id: str
    provider: SsoProvider
    provider_name: str
    is_enabled: bool
    is_required: bool
    configuration: Dict[str, Any] = {}
    entity_id: Optional[str] = None
    sso_url: Optional[str] = None
    logout_url: Optional[str] = None
    has_certificate: bool
    client_id: Optional[str] = None
    has_client_secret: bool
    scopes: Optional[str] = None
    authority: Optional[str] = None
    callback_url: Optional[str] = None
    attribute_mappings: Dict[str, str] = {}
    default_role: Optional[str] = None
    auto_provision_users: bool
    is_valid: bool
    validation_error: Optional[str] = None
    last_validated: Optional[datetime] = None
    last_successful_auth: Optional[datetime] = None


class SsoLoginRedirect(OperationResult):
    """Where to send the browser to start a federated login."""
    redirect_url: Optional[str] = None
    state: Optional[str] = None


class SamlResponseRequest(BaseModel):
    tenant_id: str
    saml_response: str
    relay_state: Optional[str] = None


class OAuthCallbackRequest(BaseModel):
    """Parameters the provider appends to the callback URL."""
    state: str
    code: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None

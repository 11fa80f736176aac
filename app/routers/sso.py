"""Federated login endpoints (SAML 2.0, OAuth 2.0, OpenID Connect) and their configuration."""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from typing import List, Optional
import logging

from app.database import get_db
from app.middleware.auth import require_tenant_admin
from app.models.sso_configuration import SsoProvider
from app.routers.auth import client_ip, login_response, raise_for_result
from app.schemas.identity import AuthenticationResult
from app.schemas.ldap import ValidationResult
from app.schemas.sso import (
    OAuthCallbackRequest,
    SsoConfigurationRequest,
    SsoConfigurationResponse,
    SsoLoginRedirect,
)
from app.services.audit_service import AuditService
from app.services.errors import AuthError
from app.services.sso_service import SsoService, parse_provider
from app.services.token_service import AccessClaims

router = APIRouter()
logger = logging.getLogger(__name__)


def provider_or_404(name: str) -> SsoProvider:
    try:
        return parse_provider(name)
    except AuthError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


@router.get("/login/{tenant_id}/{provider}", response_model=SsoLoginRedirect)
async def start_sso_login(
    tenant_id: str,
    provider: str,
    relay_state: Optional[str] = None,
    redirect: bool = False,
    db: Session = Depends(get_db),
):
    """Build the identity provider redirect. With redirect=true the browser is sent there directly."""
    result = SsoService(db).start_login(tenant_id, provider_or_404(provider), relay_state)
    raise_for_result(result)
    if redirect:
        return RedirectResponse(url=result.redirect_url, status_code=status.HTTP_302_FOUND)
    return result


@router.post("/saml/acs/{tenant_id}", response_model=AuthenticationResult)
async def saml_assertion_consumer(tenant_id: str, request: Request, db: Session = Depends(get_db)):
    """SAML assertion consumer service (HTTP-POST binding)."""
    form = await request.form()
    saml_response = form.get("SAMLResponse")
    if not saml_response:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="SAMLResponse is required")

    result = await SsoService(db).process_saml_response(tenant_id, saml_response, client_ip(request))
    return login_response(result)


@router.api_route("/callback", methods=["GET", "POST"], response_model=AuthenticationResult)
async def oauth_callback(
    request: Request,
    state: str,
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """OAuth 2.0 / OpenID Connect redirect target."""
    callback = OAuthCallbackRequest(state=state, code=code, error=error, error_description=error_description)
    result = await SsoService(db).process_callback(callback, client_ip(request))
    return login_response(result)


# =============================================================================
# Configuration
# =============================================================================

@router.get("/config/{tenant_id}", response_model=List[SsoConfigurationResponse])
async def list_sso_configurations(
    tenant_id: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    service = SsoService(db)
    return [service.to_response(c) for c in service.list_configurations(tenant_id)]


@router.get("/config/{tenant_id}/{provider}", response_model=SsoConfigurationResponse)
async def get_sso_configuration(
    tenant_id: str,
    provider: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    service = SsoService(db)
    config = service.get_configuration(tenant_id, provider_or_404(provider))
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider is not configured for this tenant")
    return service.to_response(config)


@router.put("/config/{tenant_id}/{provider}", response_model=SsoConfigurationResponse)
async def save_sso_configuration(
    tenant_id: str,
    provider: str,
    body: SsoConfigurationRequest,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    """Create or update a provider. Validation status is reset."""
    service = SsoService(db)
    config = service.save_configuration(tenant_id, provider_or_404(provider), body)
    AuditService(db).log_action(
        user_id=claims.sub,
        user_email=claims.email,
        action="UPDATE_SSO_CONFIGURATION",
        resource_type="SSO_CONFIGURATION",
        resource_id=config.id,
        tenant_id=tenant_id,
        request_body=body.model_dump(),
        success=True,
    )
    return service.to_response(config)


@router.post("/config/{tenant_id}/{provider}/validate", response_model=ValidationResult)
async def validate_sso_configuration(
    tenant_id: str,
    provider: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    return SsoService(db).validate_configuration(tenant_id, provider_or_404(provider))

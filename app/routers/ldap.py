"""LDAP directory endpoints: login, configuration, search and sync."""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
import logging

from app.database import get_db
from app.middleware.auth import require_tenant_admin
from app.routers.auth import client_ip, login_response, raise_for_result
from app.schemas.identity import AuthenticationResult
from app.schemas.ldap import (
    LdapConfigurationRequest,
    LdapConfigurationResponse,
    LdapLoginRequest,
    LdapSearchRequest,
    LdapSearchResult,
    LdapSyncResult,
    ValidationResult,
)
from app.services.audit_service import AuditService
from app.services.ldap_service import LdapService
from app.services.token_service import AccessClaims

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/login", response_model=AuthenticationResult)
async def ldap_login(body: LdapLoginRequest, request: Request, db: Session = Depends(get_db)):
    """Authenticate with directory credentials."""
    result = await LdapService(db).login(body.tenant_id, body.username, body.password, client_ip(request))
    return login_response(result)


@router.get("/config/{tenant_id}", response_model=LdapConfigurationResponse)
async def get_ldap_configuration(
    tenant_id: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    config = LdapService(db).get_configuration(tenant_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="LDAP is not configured for this tenant")
    return LdapService.to_response(config)


@router.put("/config/{tenant_id}", response_model=LdapConfigurationResponse)
async def save_ldap_configuration(
    tenant_id: str,
    body: LdapConfigurationRequest,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    """Create or update the tenant's directory settings. Validation status is reset."""
    service = LdapService(db)
    config = service.save_configuration(tenant_id, body)
    AuditService(db).log_action(
        user_id=claims.sub,
        user_email=claims.email,
        action="UPDATE_LDAP_CONFIGURATION",
        resource_type="LDAP_CONFIGURATION",
        resource_id=config.id,
        tenant_id=tenant_id,
        request_body=body.model_dump(),
        success=True,
    )
    return service.to_response(config)


@router.post("/config/{tenant_id}/validate", response_model=ValidationResult)
async def validate_ldap_configuration(
    tenant_id: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    """Check the stored settings against the live directory and record the outcome."""
    return await LdapService(db).validate_configuration(tenant_id)


@router.post("/config/{tenant_id}/test", response_model=ValidationResult)
async def test_ldap_connection(
    tenant_id: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    """Bind and search the base DN without recording the outcome."""
    service = LdapService(db)
    config = service.get_configuration(tenant_id)
    if not config:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="LDAP is not configured for this tenant")
    return await service.test_connection(config)


@router.post("/{tenant_id}/search", response_model=LdapSearchResult)
async def search_ldap_users(
    tenant_id: str,
    body: LdapSearchRequest,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    result = await LdapService(db).search(tenant_id, body.search_term, body.max_results)
    raise_for_result(result)
    return result


@router.post("/{tenant_id}/sync", response_model=LdapSyncResult)
async def synchronize_ldap_users(
    tenant_id: str,
    claims: AccessClaims = Depends(require_tenant_admin),
    db: Session = Depends(get_db),
):
    """Import or refresh every directory user of the tenant."""
    result = await LdapService(db).synchronize_users(tenant_id)
    raise_for_result(result)
    return result

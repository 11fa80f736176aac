"""Authentication API endpoints: login, MFA, passwords and sessions."""

from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
import logging

from app.database import get_db
from app.middleware.auth import get_current_claims, require_tenant_admin
from app.schemas.auth import (
    LockoutQuery,
    LockoutStatus,
    LoginRequest,
    LogoutResponse,
    MfaLoginRequest,
    SessionInfo,
    TokenValidateRequest,
)
from app.schemas.identity import AuthenticationResult, OperationResult
from app.schemas.mfa import (
    BackupCodesResult,
    MfaCodeRequest,
    MfaDisableRequest,
    MfaRecoveryCompleteRequest,
    MfaRecoveryInitiateRequest,
    MfaSetupResult,
    MfaStatus,
)
from app.schemas.password import (
    PasswordChangeRequest,
    PasswordChangeResult,
    PasswordResetCompleteRequest,
    PasswordResetInitiateRequest,
    PasswordStrength,
    PasswordStrengthRequest,
)
from app.services import audit_service as audit
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService
from app.services.authenticator import Authenticator, Credentials
from app.services.errors import AuthErrorKind
from app.services.mfa_service import MfaService
from app.services.password_service import evaluate_strength
from app.services.token_service import AccessClaims

router = APIRouter()
logger = logging.getLogger(__name__)

ERROR_STATUS = {
    AuthErrorKind.INVALID_CREDENTIAL: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.ACCOUNT_LOCKED: status.HTTP_423_LOCKED,
    AuthErrorKind.ACCOUNT_INACTIVE: status.HTTP_403_FORBIDDEN,
    AuthErrorKind.EMAIL_UNCONFIRMED: status.HTTP_403_FORBIDDEN,
    AuthErrorKind.MFA_REQUIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.INVALID_MFA_CODE: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.CONFIGURATION_MISSING: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.CONFIGURATION_INVALID: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuthErrorKind.UPSTREAM_UNAVAILABLE: status.HTTP_502_BAD_GATEWAY,
    AuthErrorKind.SIGNATURE_INVALID: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.TOKEN_EXPIRED: status.HTTP_401_UNAUTHORIZED,
    AuthErrorKind.TOKEN_MALFORMED: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.PASSWORD_POLICY: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.PASSWORD_REUSED: status.HTTP_400_BAD_REQUEST,
    AuthErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
}


def raise_for_result(result: OperationResult):
    """Turn a failed result into an HTTP error carrying only the public message."""
    if result.success or result.error is None:
        return
    raise HTTPException(status_code=ERROR_STATUS[result.error], detail=result.message)


def login_response(result: AuthenticationResult) -> AuthenticationResult:
    """A pending second factor is a normal response, not an error."""
    if result.requires_mfa:
        return result
    raise_for_result(result)
    return result


def client_ip(request: Request):
    return request.client.host if request.client else None


# =============================================================================
# Login and sessions
# =============================================================================

@router.post("/login", response_model=AuthenticationResult)
async def login(body: LoginRequest, request: Request, db: Session = Depends(get_db)):
    """Authenticate with email and password. Returns requires_mfa when a second factor is due."""
    result = await AuthService(db).authenticate(
        body.email, body.password, mfa_code=body.mfa_code,
        tenant_id=body.tenant_id, client_ip=client_ip(request),
    )
    return login_response(result)


@router.post("/authenticate", response_model=AuthenticationResult)
async def authenticate(credentials: Credentials, request: Request, db: Session = Depends(get_db)):
    """Authenticate with any configured method."""
    result = await Authenticator(db).authenticate(credentials, client_ip(request))
    return login_response(result)


@router.post("/mfa/complete", response_model=AuthenticationResult)
async def complete_mfa_login(body: MfaLoginRequest, request: Request, db: Session = Depends(get_db)):
    """Second step of a two-factor login."""
    result = await AuthService(db).complete_mfa_login(body.mfa_token, body.code, client_ip(request))
    return login_response(result)


@router.post("/token/validate", response_model=SessionInfo)
async def validate_token(body: TokenValidateRequest, db: Session = Depends(get_db)):
    """Validate an access token."""
    result = AuthService(db).validate_session(body.token)
    raise_for_result(result)
    return result


@router.get("/me", response_model=SessionInfo)
async def get_current_user(claims: AccessClaims = Depends(get_current_claims)):
    """Get the identity carried by the caller's access token."""
    return SessionInfo(
        success=True,
        user_id=claims.sub,
        email=claims.email,
        tenant_id=claims.tenant_id,
        roles=list(claims.role),
        expires_at=claims.exp,
    )


@router.post("/lockout", response_model=LockoutStatus)
async def get_lockout_status(
    body: LockoutQuery,
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
):
    """Lockout state of an account in the caller's tenant. Administrators only."""
    tenant_id = body.tenant_id or claims.tenant_id
    require_tenant_admin(tenant_id, claims)
    return AuthService(db).check_account_lockout(body.email, tenant_id)


@router.post("/logout", response_model=LogoutResponse)
async def logout(claims: AccessClaims = Depends(get_current_claims), db: Session = Depends(get_db)):
    """Record a logout. Tokens are stateless and expire on their own."""
    AuditService(db).log_action(
        user_id=claims.sub,
        user_email=claims.email,
        action="LOGOUT",
        tenant_id=claims.tenant_id,
        success=True,
    )
    return LogoutResponse(message="Successfully logged out", session_terminated=True)


# =============================================================================
# Multi-factor authentication
# =============================================================================

@router.post("/mfa/setup", response_model=MfaSetupResult)
async def setup_mfa(claims: AccessClaims = Depends(get_current_claims), db: Session = Depends(get_db)):
    """Start TOTP enrolment. The secret and backup codes are shown once."""
    result = MfaService(db).setup(claims.sub)
    raise_for_result(result)
    return result


@router.post("/mfa/verify", response_model=OperationResult)
async def verify_mfa_setup(
    body: MfaCodeRequest,
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
):
    """Confirm enrolment with a first TOTP code."""
    result = MfaService(db).verify_setup(claims.sub, body.code)
    raise_for_result(result)
    AuditService(db).log_action(
        user_id=claims.sub,
        user_email=claims.email,
        action=audit.MFA_ENABLED,
        tenant_id=claims.tenant_id,
        success=True,
    )
    return result


@router.post("/mfa/disable", response_model=OperationResult)
async def disable_mfa(
    body: MfaDisableRequest,
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
):
    """Turn MFA off. Requires the current password."""
    result = await MfaService(db).disable(claims.sub, body.current_password)
    raise_for_result(result)
    AuditService(db).log_action(
        user_id=claims.sub,
        user_email=claims.email,
        action=audit.MFA_DISABLED,
        tenant_id=claims.tenant_id,
        success=True,
    )
    return result


@router.post("/mfa/backup-codes", response_model=BackupCodesResult)
async def regenerate_backup_codes(claims: AccessClaims = Depends(get_current_claims), db: Session = Depends(get_db)):
    """Replace all backup codes with a new set."""
    result = MfaService(db).regenerate_backup_codes(claims.sub)
    raise_for_result(result)
    return result


@router.get("/mfa/status", response_model=MfaStatus)
async def get_mfa_status(claims: AccessClaims = Depends(get_current_claims), db: Session = Depends(get_db)):
    mfa_status = MfaService(db).get_status(claims.sub)
    if mfa_status is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return mfa_status


@router.post("/mfa/recovery/initiate", response_model=OperationResult)
async def initiate_mfa_recovery(body: MfaRecoveryInitiateRequest, db: Session = Depends(get_db)):
    """Start MFA recovery. The token goes out of band; the answer never reveals the account."""
    result = MfaService(db).initiate_recovery(body.email, body.tenant_id)
    return OperationResult(success=True, message=result.message)


@router.post("/mfa/recovery/complete", response_model=OperationResult)
async def complete_mfa_recovery(body: MfaRecoveryCompleteRequest, db: Session = Depends(get_db)):
    result = MfaService(db).complete_recovery(body.token)
    raise_for_result(result)
    return result


# =============================================================================
# Passwords
# =============================================================================

@router.post("/password/strength", response_model=PasswordStrength)
async def check_password_strength(body: PasswordStrengthRequest):
    return evaluate_strength(body.password)


@router.post("/password/change", response_model=PasswordChangeResult)
async def change_password(
    body: PasswordChangeRequest,
    claims: AccessClaims = Depends(get_current_claims),
    db: Session = Depends(get_db),
):
    result = await AuthService(db).change_password(claims.sub, body.current_password, body.new_password)
    if result.error == AuthErrorKind.PASSWORD_POLICY:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": result.message, "errors": result.messages},
        )
    raise_for_result(result)
    return result


@router.post("/password/reset/initiate", response_model=OperationResult)
async def initiate_password_reset(body: PasswordResetInitiateRequest, db: Session = Depends(get_db)):
    """Start a password reset. The token goes out of band; the answer never reveals the account."""
    result = AuthService(db).initiate_password_reset(body.email, body.tenant_id)
    return OperationResult(success=True, message=result.message)


@router.post("/password/reset/complete", response_model=PasswordChangeResult)
async def complete_password_reset(body: PasswordResetCompleteRequest, db: Session = Depends(get_db)):
    result = await AuthService(db).complete_password_reset(body.token, body.new_password)
    if result.error == AuthErrorKind.PASSWORD_POLICY:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": result.message, "errors": result.messages},
        )
    raise_for_result(result)
    return result

"""Local credential authentication, lockout and session issuance."""

from datetime import timedelta
from typing import List, Optional
import logging

from sqlalchemy import and_, case, null, or_, update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.user import User, UserStatus
from app.schemas.auth import LockoutStatus, SessionInfo
from app.schemas.identity import AuthenticationResult, NormalizedIdentity
from app.schemas.password import PasswordChangeResult, PasswordResetInitiateResult
from app.services import audit_service as audit
from app.services.audit_service import AuditService
from app.services.errors import AuthError, AuthErrorKind
from app.services.mfa_service import MfaService
from app.services.password_service import PasswordService, verify_password_async
from app.services.provisioning_service import IdentityProvisioner
from app.services.token_service import TokenService, get_token_service
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

LOGIN_ACTIONS = {"local": audit.LOGIN, "ldap": audit.LDAP_LOGIN}


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


class AuthService:
    """Service for password authentication and the session token set."""

    def __init__(
        self,
        db: Session,
        tokens: Optional[TokenService] = None,
        mfa: Optional[MfaService] = None,
    ):
        self.db = db
        self.tokens = tokens or get_token_service()
        self.mfa = mfa or MfaService(db)
        self.audit = AuditService(db)

    def _find_user(self, email: str, tenant_id: Optional[str] = None) -> Optional[User]:
        query = self.db.query(User).filter(User.email == normalize_email(email))
        if tenant_id:
            return query.filter(User.tenant_id == tenant_id).first()
        # Without a tenant the email must identify exactly one account
        matches = query.limit(2).all()
        if len(matches) > 1:
            logger.warning("Email matches accounts in several tenants; tenant_id required")
            return None
        return matches[0] if matches else None

    @staticmethod
    def is_locked(user: User) -> bool:
        return bool(user.account_locked_until and user.account_locked_until > utcnow())

    # ------------------------------------------------------------------
    # Lockout counter (single-statement updates so concurrent attempts
    # cannot lose increments or slip past a lock)
    # ------------------------------------------------------------------

    def _record_failed_attempt(self, user: User) -> bool:
        """Count a failure and lock the account at the threshold. Returns True if now locked."""
        now = utcnow()
        expired = and_(User.account_locked_until.isnot(None), User.account_locked_until <= now)
        attempts = case((expired, 1), else_=User.failed_login_attempts + 1)

        self.db.execute(
            update(User)
            .where(User.id == user.id)
            .values(
                failed_login_attempts=attempts,
                account_locked_until=case(
                    (attempts >= settings.MAX_LOGIN_ATTEMPTS,
                     now + timedelta(minutes=settings.ACCOUNT_LOCKOUT_MINUTES)),
                    (expired, null()),
                    else_=User.account_locked_until,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)

        locked = self.is_locked(user)
        if locked:
            logger.warning(f"Account locked due to failed attempts: {user.id}")
            self.audit.log_action(
                user_id=user.id,
                user_email=user.email,
                action=audit.ACCOUNT_LOCKED,
                tenant_id=user.tenant_id,
                success=False,
                failure_reason=f"{user.failed_login_attempts} failed attempts",
            )
        return locked

    def _reset_failed_attempts(self, user: User) -> bool:
        """Clear the counter unless a lock is in force. Returns False if the account is locked."""
        now = utcnow()
        result = self.db.execute(
            update(User)
            .where(
                User.id == user.id,
                or_(User.account_locked_until.is_(None), User.account_locked_until <= now),
            )
            .values(failed_login_attempts=0, account_locked_until=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(user)
        return result.rowcount == 1

    def _fail(self, kind: AuthErrorKind, email: str, user: Optional[User] = None,
              reason: str = None, client_ip: str = None,
              auth_method: str = "local") -> AuthenticationResult:
        self.audit.log_action(
            user_id=user.id if user else None,
            user_email=email,
            action=audit.LOGIN_FAILED,
            tenant_id=user.tenant_id if user else None,
            auth_method=auth_method,
            success=False,
            failure_reason=reason or kind.value,
            user_ip=client_ip,
        )
        return AuthenticationResult.failure(kind)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        email: str,
        password: str,
        mfa_code: Optional[str] = None,
        tenant_id: Optional[str] = None,
        client_ip: Optional[str] = None,
    ) -> AuthenticationResult:
        """
        Authenticate with email and password, and optionally a second factor.

        Unknown accounts and wrong passwords produce the same result, and both
        pay for one bcrypt verification.

        Args:
            email: Login email (case-insensitive)
            password: Plain password
            mfa_code: TOTP or backup code, for single-request two-factor login
            tenant_id: Restrict the lookup to one tenant
            client_ip: Recorded against consumed backup codes and audit entries

        Returns:
            AuthenticationResult; requires_mfa is set when a second factor is due
        """
        email = normalize_email(email)
        user = self._find_user(email, tenant_id)

        if user is not None and self.is_locked(user):
            await verify_password_async(password, user.hashed_password)
            logger.warning(f"Login attempt for locked account: {user.id}")
            return self._fail(AuthErrorKind.ACCOUNT_LOCKED, email, user, client_ip=client_ip)

        password_ok = await verify_password_async(password, user.hashed_password if user else None)

        if user is None:
            logger.warning("Login attempt for unknown account")
            return self._fail(AuthErrorKind.INVALID_CREDENTIAL, email, reason="unknown account", client_ip=client_ip)

        if not password_ok:
            logger.warning(f"Invalid password for user {user.id}")
            self._record_failed_attempt(user)
            return self._fail(AuthErrorKind.INVALID_CREDENTIAL, email, user, "wrong password", client_ip)

        if not self._reset_failed_attempts(user):
            logger.warning(f"Correct password during lockout for user {user.id}")
            return self._fail(AuthErrorKind.ACCOUNT_LOCKED, email, user, client_ip=client_ip)

        try:
            self._check_account_state(user)
        except AuthError as e:
            logger.warning(f"Login refused for user {user.id}: {e.detail}")
            return self._fail(e.kind, email, user, e.detail, client_ip)

        if user.mfa_enabled:
            if not mfa_code:
                logger.info(f"MFA required for user {user.id}")
                return AuthenticationResult(
                    success=False,
                    requires_mfa=True,
                    error=AuthErrorKind.MFA_REQUIRED,
                    message="Multi-factor authentication required",
                    mfa_token=self.tokens.issue_mfa_token(user.id),
                    user_id=user.id,
                )
            if not self.mfa.verify(user, mfa_code, client_ip):
                logger.warning(f"Invalid MFA code for user {user.id}")
                self._record_failed_attempt(user)
                return self._fail(AuthErrorKind.INVALID_MFA_CODE, email, user, client_ip=client_ip)

        return self.issue_session(user, auth_method="local", client_ip=client_ip)

    def _check_account_state(self, user: User):
        if user.status != UserStatus.ACTIVE.value:
            raise AuthError(AuthErrorKind.ACCOUNT_INACTIVE, f"status {user.status}")
        if not user.email_confirmed:
            raise AuthError(AuthErrorKind.EMAIL_UNCONFIRMED, "email not confirmed")

    async def complete_mfa_login(self, mfa_token: str, code: str, client_ip: Optional[str] = None) -> AuthenticationResult:
        """Second step of a two-factor login: MFA-pending token plus TOTP or backup code."""
        try:
            claims = self.tokens.validate_mfa_token(mfa_token)
        except AuthError as e:
            logger.warning(f"Rejected MFA-pending token: {e.detail}")
            return AuthenticationResult.from_error(e)

        user = self.db.query(User).filter(User.id == claims.sub).first()
        if user is None:
            return AuthenticationResult.failure(AuthErrorKind.INVALID_CREDENTIAL)
        if self.is_locked(user):
            return self._fail(AuthErrorKind.ACCOUNT_LOCKED, user.email, user, client_ip=client_ip)
        try:
            self._check_account_state(user)
        except AuthError as e:
            return self._fail(e.kind, user.email, user, e.detail, client_ip)

        if not user.mfa_enabled or not self.mfa.verify(user, code, client_ip):
            logger.warning(f"Invalid MFA code for user {user.id}")
            self._record_failed_attempt(user)
            return self._fail(AuthErrorKind.INVALID_MFA_CODE, user.email, user, client_ip=client_ip)

        return self.issue_session(user, auth_method="local", client_ip=client_ip)

    def issue_session(
        self,
        user: User,
        roles: Optional[List[str]] = None,
        auth_method: str = "local",
        client_ip: Optional[str] = None,
    ) -> AuthenticationResult:
        """Mint the access and refresh token pair for an authenticated user."""
        role_names = user.role_names if roles is None else list(roles)
        access_token, expires_at = self.tokens.issue_access_token(user, role_names)
        refresh_token, refresh_expires_at = self.tokens.issue_refresh_token()

        user.last_login = utcnow()
        self.db.commit()

        self.audit.log_action(
            user_id=user.id,
            user_email=user.email,
            action=LOGIN_ACTIONS.get(auth_method, audit.SSO_LOGIN),
            tenant_id=user.tenant_id,
            auth_method=auth_method,
            success=True,
            user_ip=client_ip,
        )
        logger.info(f"User authenticated successfully: {user.id} via {auth_method}")

        return AuthenticationResult(
            success=True,
            message="Authentication successful",
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            refresh_expires_at=refresh_expires_at,
            user_id=user.id,
            email=user.email,
            roles=role_names,
        )

    def sign_in_identity(
        self,
        identity: NormalizedIdentity,
        tenant_id: str,
        auto_provision: bool,
        default_role: Optional[str],
        auth_method: str,
        client_ip: Optional[str] = None,
    ) -> AuthenticationResult:
        """
        Resolve an identity asserted by a directory or identity provider and
        issue the session. Lockout, account state and MFA apply exactly as for
        local logins.
        """
        try:
            user = IdentityProvisioner(self.db).resolve(identity, tenant_id, auto_provision, default_role)
            self.db.commit()
        except AuthError as e:
            self.db.rollback()
            logger.warning(f"{auth_method} login refused in tenant {tenant_id}: {e.detail}")
            return self._fail(e.kind, identity.email, reason=e.detail, client_ip=client_ip, auth_method=auth_method)

        if self.is_locked(user):
            return self._fail(AuthErrorKind.ACCOUNT_LOCKED, user.email, user, client_ip=client_ip, auth_method=auth_method)
        try:
            self._check_account_state(user)
        except AuthError as e:
            return self._fail(e.kind, user.email, user, e.detail, client_ip, auth_method=auth_method)

        if user.mfa_enabled:
            return AuthenticationResult(
                success=False,
                requires_mfa=True,
                error=AuthErrorKind.MFA_REQUIRED,
                message="Multi-factor authentication required",
                mfa_token=self.tokens.issue_mfa_token(user.id),
                user_id=user.id,
            )
        return self.issue_session(user, auth_method=auth_method, client_ip=client_ip)

    # ------------------------------------------------------------------
    # Session and account state
    # ------------------------------------------------------------------

    def validate_session(self, token: str) -> SessionInfo:
        """Validate an access token and report who it belongs to."""
        try:
            claims = self.tokens.validate_access_token(token)
        except AuthError as e:
            return SessionInfo.from_error(e)
        return SessionInfo(
            success=True,
            user_id=claims.sub,
            email=claims.email,
            tenant_id=claims.tenant_id,
            roles=list(claims.role),
            expires_at=claims.exp,
        )

    def check_account_lockout(self, email: str, tenant_id: Optional[str] = None) -> LockoutStatus:
        user = self._find_user(email, tenant_id)
        if user is None:
            return LockoutStatus(is_locked=False, max_attempts=settings.MAX_LOGIN_ATTEMPTS)
        locked = self.is_locked(user)
        return LockoutStatus(
            is_locked=locked,
            locked_until=user.account_locked_until if locked else None,
            failed_attempts=user.failed_login_attempts or 0,
            max_attempts=settings.MAX_LOGIN_ATTEMPTS,
        )

    # ------------------------------------------------------------------
    # Password management
    # ------------------------------------------------------------------

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> PasswordChangeResult:
        result = await PasswordService(self.db).change_password(user_id, current_password, new_password)
        self.audit.log_action(
            user_id=user_id,
            user_email=None,
            action=audit.PASSWORD_CHANGED,
            success=result.success,
            failure_reason=result.error.value if result.error else None,
        )
        return result

    def initiate_password_reset(self, email: str, tenant_id: str) -> PasswordResetInitiateResult:
        return PasswordService(self.db).initiate_password_reset(email, tenant_id)

    async def complete_password_reset(self, token: str, new_password: str) -> PasswordChangeResult:
        result = await PasswordService(self.db).complete_password_reset(token, new_password)
        self.audit.log_action(
            user_id=None,
            user_email=None,
            action=audit.PASSWORD_RESET,
            success=result.success,
            failure_reason=result.error.value if result.error else None,
        )
        return result

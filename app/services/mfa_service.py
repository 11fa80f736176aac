"""
TOTP multi-factor authentication and backup codes.

Shared secrets are 160-bit base32 strings encrypted at rest. Codes follow
RFC 6238 (30 second step, 6 digits) and are accepted one step either side
of the current time. Backup codes are 8-digit one-time codes stored as
salted SHA-256 hashes.
"""

from datetime import datetime, timedelta
from typing import List, Optional
import base64
import hashlib
import hmac
import logging
import secrets

import pyotp
import qrcode
import qrcode.image.svg
from sqlalchemy import update
from sqlalchemy.orm import Session

from app.config import settings
from app.models.mfa_backup_code import MfaBackupCode
from app.models.user import User
from app.schemas.identity import OperationResult
from app.schemas.mfa import (
    BackupCodesResult,
    MfaRecoveryInitiateResult,
    MfaSetupResult,
    MfaStatus,
)
from app.services.encryption_service import EncryptionService, get_encryption_service
from app.services.errors import AuthErrorKind
from app.services.password_service import hash_token, verify_password_async
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

SECRET_LENGTH = 32  # base32 characters, 160 bits
TOTP_DIGITS = 6
TOTP_INTERVAL = 30
TOTP_VALID_WINDOW = 1
BACKUP_CODE_DIGITS = 8


def generate_backup_code() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(BACKUP_CODE_DIGITS))


def hash_backup_code(code: str, salt: Optional[str] = None) -> str:
    """Hash a backup code as ``<salt>$<sha256 hex>`` with a per-code salt and the configured pepper."""
    salt = salt or secrets.token_hex(8)
    digest = hashlib.sha256(f"{salt}{code}{settings.MFA_BACKUP_CODE_SALT}".encode()).hexdigest()
    return f"{salt}${digest}"


def backup_code_matches(code: str, stored: str) -> bool:
    salt, _, _ = stored.partition("$")
    return hmac.compare_digest(hash_backup_code(code, salt), stored)


def verify_totp(secret: str, code: str, for_time: Optional[datetime] = None) -> bool:
    """Check a TOTP code against a secret, allowing one step of clock skew."""
    code = (code or "").strip().replace(" ", "")
    if len(code) != TOTP_DIGITS or not code.isdigit():
        return False
    totp = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL)
    return totp.verify(code, for_time=for_time, valid_window=TOTP_VALID_WINDOW)


def render_qr_code(uri: str) -> str:
    """Render a provisioning URI as an SVG data URI."""
    image = qrcode.make(uri, image_factory=qrcode.image.svg.SvgPathImage)
    encoded = base64.b64encode(image.to_string()).decode()
    return f"data:image/svg+xml;base64,{encoded}"


class MfaService:
    """Service for TOTP enrolment, verification, backup codes and recovery."""

    def __init__(self, db: Session, encryption: Optional[EncryptionService] = None):
        self.db = db
        self.encryption = encryption or get_encryption_service()

    def _get_user(self, user_id: str) -> Optional[User]:
        return self.db.query(User).filter(User.id == user_id).first()

    def get_secret(self, user: User) -> Optional[str]:
        return self.encryption.decrypt_optional(user.mfa_secret)

    def _replace_backup_codes(self, user: User) -> List[str]:
        """Invalidate every existing code and store a fresh set. Returns the plain codes."""
        self.db.query(MfaBackupCode).filter(MfaBackupCode.user_id == user.id).delete(
            synchronize_session=False
        )
        codes = [generate_backup_code() for _ in range(settings.MFA_BACKUP_CODE_COUNT)]
        for code in codes:
            self.db.add(MfaBackupCode(user_id=user.id, code_hash=hash_backup_code(code)))
        return codes

    # ------------------------------------------------------------------
    # Enrolment
    # ------------------------------------------------------------------

    def setup(self, user_id: str) -> MfaSetupResult:
        """
        Start enrolment: new secret, provisioning URI, QR code and backup codes.

        MFA stays disabled until verify_setup succeeds. Calling setup again
        replaces the pending secret and the backup codes.
        """
        user = self._get_user(user_id)
        if not user:
            return MfaSetupResult.failure(AuthErrorKind.NOT_FOUND)

        secret = pyotp.random_base32(SECRET_LENGTH)
        uri = pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_INTERVAL).provisioning_uri(
            name=user.email, issuer_name=settings.MFA_ISSUER
        )

        user.mfa_secret = self.encryption.encrypt_string(secret)
        user.mfa_enabled = False
        user.mfa_enabled_at = None
        codes = self._replace_backup_codes(user)
        self.db.commit()

        logger.info(f"MFA setup started for user {user.id}")
        return MfaSetupResult(
            success=True,
            secret=secret,
            provisioning_uri=uri,
            qr_code=render_qr_code(uri),
            backup_codes=codes,
        )

    def verify_setup(self, user_id: str, code: str) -> OperationResult:
        """Confirm enrolment with a first TOTP code."""
        user = self._get_user(user_id)
        if not user:
            return OperationResult.failure(AuthErrorKind.NOT_FOUND)
        secret = self.get_secret(user)
        if not secret:
            return OperationResult.failure(AuthErrorKind.CONFIGURATION_MISSING)

        if not verify_totp(secret, code):
            logger.warning(f"Invalid MFA setup code for user {user.id}")
            return OperationResult.failure(AuthErrorKind.INVALID_MFA_CODE)

        user.mfa_enabled = True
        user.mfa_enabled_at = utcnow()
        self.db.commit()
        logger.info(f"MFA enabled for user {user.id}")
        return OperationResult(success=True, message="Multi-factor authentication enabled")

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_code(self, user: User, code: str, for_time: Optional[datetime] = None) -> bool:
        """Check a TOTP code against the user's stored secret."""
        secret = self.get_secret(user)
        if not secret:
            return False
        return verify_totp(secret, code, for_time=for_time)

    def verify_backup_code(self, user: User, code: str, client_ip: Optional[str] = None) -> bool:
        """Consume a backup code. Each code succeeds at most once, even under concurrent use."""
        code = (code or "").strip().replace("-", "").replace(" ", "")
        if len(code) != BACKUP_CODE_DIGITS or not code.isdigit():
            return False

        candidates = (
            self.db.query(MfaBackupCode)
            .filter(MfaBackupCode.user_id == user.id, MfaBackupCode.is_used.is_(False))
            .all()
        )
        match = next((c for c in candidates if backup_code_matches(code, c.code_hash)), None)
        if match is None:
            return False

        result = self.db.execute(
            update(MfaBackupCode)
            .where(MfaBackupCode.id == match.id, MfaBackupCode.is_used.is_(False))
            .values(is_used=True, used_at=utcnow(), used_from_ip=client_ip)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        self.db.flush()
        self.db.expire(match)
        logger.info(f"Backup code used for user {user.id}")
        return True

    def verify(self, user: User, code: str, client_ip: Optional[str] = None) -> bool:
        """Accept either a current TOTP code or an unused backup code."""
        if not user.mfa_enabled:
            return False
        if self.verify_code(user, code):
            return True
        return self.verify_backup_code(user, code, client_ip)

    # ------------------------------------------------------------------
    # Management
    # ------------------------------------------------------------------

    async def disable(self, user_id: str, current_password: str) -> OperationResult:
        """Turn MFA off after re-checking the password. All backup codes are invalidated."""
        user = self._get_user(user_id)
        if not user:
            return OperationResult.failure(AuthErrorKind.NOT_FOUND)
        if not await verify_password_async(current_password, user.hashed_password):
            logger.warning(f"MFA disable with wrong password for user {user.id}")
            return OperationResult.failure(AuthErrorKind.INVALID_CREDENTIAL)

        self._clear_mfa(user)
        self.db.commit()
        logger.info(f"MFA disabled for user {user.id}")
        return OperationResult(success=True, message="Multi-factor authentication disabled")

    def _clear_mfa(self, user: User):
        user.mfa_enabled = False
        user.mfa_secret = None
        user.mfa_enabled_at = None
        user.mfa_recovery_token_hash = None
        user.mfa_recovery_token_expires_at = None
        self.db.query(MfaBackupCode).filter(MfaBackupCode.user_id == user.id).delete(
            synchronize_session=False
        )

    def regenerate_backup_codes(self, user_id: str) -> BackupCodesResult:
        """Replace the whole backup-code set."""
        user = self._get_user(user_id)
        if not user:
            return BackupCodesResult.failure(AuthErrorKind.NOT_FOUND)
        if not user.mfa_enabled:
            return BackupCodesResult.failure(AuthErrorKind.CONFIGURATION_MISSING)

        codes = self._replace_backup_codes(user)
        self.db.commit()
        logger.info(f"Backup codes regenerated for user {user.id}")
        return BackupCodesResult(success=True, backup_codes=codes)

    def is_mfa_enabled(self, user_id: str) -> bool:
        user = self._get_user(user_id)
        return bool(user and user.mfa_enabled)

    def get_status(self, user_id: str) -> Optional[MfaStatus]:
        user = self._get_user(user_id)
        if not user:
            return None
        remaining = (
            self.db.query(MfaBackupCode)
            .filter(MfaBackupCode.user_id == user.id, MfaBackupCode.is_used.is_(False))
            .count()
        )
        return MfaStatus(
            mfa_enabled=bool(user.mfa_enabled),
            enabled_at=user.mfa_enabled_at,
            backup_codes_remaining=remaining if user.mfa_enabled else 0,
        )

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def initiate_recovery(self, email: str, tenant_id: str) -> MfaRecoveryInitiateResult:
        """Issue a recovery token for out-of-band delivery. Answers the same for unknown accounts."""
        generic = "If the account exists and has MFA enabled, recovery instructions have been sent"
        user = (
            self.db.query(User)
            .filter(User.email == (email or "").strip().lower(), User.tenant_id == tenant_id)
            .first()
        )
        if not user or not user.mfa_enabled:
            return MfaRecoveryInitiateResult(success=True, message=generic)

        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(minutes=settings.MFA_RECOVERY_TOKEN_EXPIRE_MINUTES)
        user.mfa_recovery_token_hash = hash_token(token)
        user.mfa_recovery_token_expires_at = expires_at
        self.db.commit()

        logger.info(f"MFA recovery initiated for user {user.id}")
        return MfaRecoveryInitiateResult(
            success=True, message=generic, recovery_token=token, expires_at=expires_at
        )

    def complete_recovery(self, token: str) -> OperationResult:
        """Disable MFA using a recovery token so the user can enrol again."""
        if not token:
            return OperationResult.failure(AuthErrorKind.TOKEN_MALFORMED)
        user = self.db.query(User).filter(User.mfa_recovery_token_hash == hash_token(token)).first()
        if not user:
            return OperationResult.failure(AuthErrorKind.TOKEN_MALFORMED)
        if not user.mfa_recovery_token_expires_at or user.mfa_recovery_token_expires_at <= utcnow():
            return OperationResult.failure(AuthErrorKind.TOKEN_EXPIRED)

        self._clear_mfa(user)
        self.db.commit()
        logger.info(f"MFA recovery completed for user {user.id}")
        return OperationResult(success=True, message="Multi-factor authentication has been reset")

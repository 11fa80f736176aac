"""Password hashing, strength policy, history and reset tokens."""

from datetime import timedelta
from typing import List, Optional
import asyncio
import hashlib
import logging
import re
import secrets

from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.config import settings
from app.models.password_history import PasswordHistoryEntry
from app.models.user import User
from app.schemas.password import (
    PasswordChangeResult,
    PasswordResetInitiateResult,
    PasswordStrength,
)
from app.services.errors import AuthErrorKind
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.BCRYPT_ROUNDS,
)

COMMON_PASSWORDS = frozenset({
    "password",
    "123456",
    "password123",
    "admin",
    "qwerty",
    "letmein",
    "welcome",
    "monkey",
    "1234567890",
    "abc123",
    "password1",
})

MAX_SCORE = 5


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return pwd_context.hash(password)


def verify_password(password: str, hashed_password: Optional[str]) -> bool:
    """Verify a password. A missing hash still costs one bcrypt round trip."""
    if not hashed_password:
        pwd_context.dummy_verify()
        return False
    try:
        return pwd_context.verify(password, hashed_password)
    except ValueError:
        logger.warning("Stored password hash is not a recognised bcrypt hash")
        return False


async def verify_password_async(password: str, hashed_password: Optional[str]) -> bool:
    return await asyncio.to_thread(verify_password, password, hashed_password)


async def hash_password_async(password: str) -> str:
    return await asyncio.to_thread(hash_password, password)


def hash_token(token: str) -> str:
    """SHA-256 of a one-time token. Only this hash is stored."""
    return hashlib.sha256(token.encode()).hexdigest()


def evaluate_strength(password: str) -> PasswordStrength:
    """
    Score a password from 0 to 5.

    Length earns one point, or two at twelve characters and above. Each of
    upper case, lower case, digit and special character earns one more.
    Common passwords lose two points and are always invalid.
    """
    messages: List[str] = []
    score = 0
    password = password or ""

    if len(password) < settings.PASSWORD_MIN_LENGTH:
        messages.append(f"Password must be at least {settings.PASSWORD_MIN_LENGTH} characters long")
    else:
        score += 2 if len(password) >= 12 else 1

    if re.search(r"[A-Z]", password):
        score += 1
    else:
        messages.append("Password must contain at least one uppercase letter")

    if re.search(r"[a-z]", password):
        score += 1
    else:
        messages.append("Password must contain at least one lowercase letter")

    if re.search(r"\d", password):
        score += 1
    else:
        messages.append("Password must contain at least one digit")

    if re.search(r"[^A-Za-z0-9]", password):
        score += 1
    else:
        messages.append("Password must contain at least one special character")

    if password.lower() in COMMON_PASSWORDS:
        messages.append("Password is too common")
        score -= 2

    score = max(0, min(MAX_SCORE, score))
    return PasswordStrength(is_valid=not messages, score=score, messages=messages)


class PasswordService:
    """Password change and reset for local accounts."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    @staticmethod
    def history_retained() -> int:
        """Archived hashes kept per user. The current hash makes up the rest of the window."""
        return max(settings.PASSWORD_HISTORY_COUNT - 1, 0)

    def _recent_history(self, user: User, limit: int) -> List[PasswordHistoryEntry]:
        return (
            self.db.query(PasswordHistoryEntry)
            .filter(PasswordHistoryEntry.user_id == user.id)
            .order_by(PasswordHistoryEntry.created_at.desc())
            .limit(limit)
            .all()
        )

    async def is_password_reused(self, user: User, new_password: str) -> bool:
        """Check the new password against the last PASSWORD_HISTORY_COUNT passwords, the current one included."""
        hashes = [user.hashed_password] if user.hashed_password else []
        hashes.extend(e.password_hash for e in self._recent_history(user, self.history_retained()))
        return await asyncio.to_thread(
            lambda: any(verify_password(new_password, h) for h in hashes)
        )

    def _set_password(self, user: User, new_hash: str):
        """Archive the current hash, store the new one and prune history to the window."""
        if user.hashed_password:
            self.db.add(PasswordHistoryEntry(user_id=user.id, password_hash=user.hashed_password))
            self.db.flush()

        user.hashed_password = new_hash
        user.password_changed_at = utcnow()

        entries = (
            self.db.query(PasswordHistoryEntry)
            .filter(PasswordHistoryEntry.user_id == user.id)
            .order_by(PasswordHistoryEntry.created_at.desc())
            .all()
        )
        for stale in entries[self.history_retained():]:
            self.db.delete(stale)

    async def _apply_new_password(self, user: User, new_password: str) -> PasswordChangeResult:
        strength = evaluate_strength(new_password)
        if not strength.is_valid:
            return PasswordChangeResult.failure(AuthErrorKind.PASSWORD_POLICY, messages=strength.messages)

        if await self.is_password_reused(user, new_password):
            logger.info(f"Rejected reused password for user {user.id}")
            return PasswordChangeResult.failure(AuthErrorKind.PASSWORD_REUSED)

        new_hash = await hash_password_async(new_password)
        self._set_password(user, new_hash)
        return PasswordChangeResult(success=True, message="Password updated")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def change_password(self, user_id: str, current_password: str, new_password: str) -> PasswordChangeResult:
        """Change a password after re-verifying the current one."""
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            return PasswordChangeResult.failure(AuthErrorKind.NOT_FOUND)

        if not await verify_password_async(current_password, user.hashed_password):
            logger.warning(f"Password change with wrong current password for user {user.id}")
            return PasswordChangeResult.failure(AuthErrorKind.INVALID_CREDENTIAL)

        result = await self._apply_new_password(user, new_password)
        if result.success:
            self.db.commit()
            logger.info(f"Password changed for user {user.id}")
        return result

    def initiate_password_reset(self, email: str, tenant_id: str) -> PasswordResetInitiateResult:
        """
        Start a reset. The answer is the same whether or not the account exists.

        Args:
            email: Account email address
            tenant_id: Tenant the account belongs to

        Returns:
            Result carrying the raw token when the account exists, for
            delivery through the notification channel
        """
        generic = "If the account exists, password reset instructions have been sent"
        user = (
            self.db.query(User)
            .filter(User.email == (email or "").strip().lower(), User.tenant_id == tenant_id)
            .first()
        )
        if not user:
            logger.info("Password reset requested for unknown account")
            return PasswordResetInitiateResult(success=True, message=generic)

        token = secrets.token_urlsafe(32)
        expires_at = utcnow() + timedelta(minutes=settings.PASSWORD_RESET_TOKEN_EXPIRE_MINUTES)
        user.password_reset_token_hash = hash_token(token)
        user.password_reset_token_expires_at = expires_at
        self.db.commit()

        logger.info(f"Password reset initiated for user {user.id}")
        return PasswordResetInitiateResult(
            success=True, message=generic, reset_token=token, expires_at=expires_at
        )

    async def complete_password_reset(self, token: str, new_password: str) -> PasswordChangeResult:
        """Finish a reset. Clears the token and any lockout on success."""
        if not token:
            return PasswordChangeResult.failure(AuthErrorKind.TOKEN_MALFORMED)

        user = (
            self.db.query(User)
            .filter(User.password_reset_token_hash == hash_token(token))
            .first()
        )
        if not user:
            return PasswordChangeResult.failure(AuthErrorKind.TOKEN_MALFORMED)
        if not user.password_reset_token_expires_at or user.password_reset_token_expires_at <= utcnow():
            return PasswordChangeResult.failure(AuthErrorKind.TOKEN_EXPIRED)

        result = await self._apply_new_password(user, new_password)
        if not result.success:
            return result

        user.password_reset_token_hash = None
        user.password_reset_token_expires_at = None
        user.failed_login_attempts = 0
        user.account_locked_until = None
        self.db.commit()

        logger.info(f"Password reset completed for user {user.id}")
        return result

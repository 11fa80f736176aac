"""Authentication schemas."""

from pydantic import BaseModel, EmailStr
from typing import List, Optional
from datetime import datetime

from app.schemas.identity import OperationResult


class LoginRequest(BaseModel):
    """Local login. Supply mfa_code to finish both factors in one request."""
    email: EmailStr
    password: str
    mfa_code: Optional[str] = None
    tenant_id: Optional[str] = None


class MfaLoginRequest(BaseModel):
    """Second step of a two-factor login."""
    mfa_token: str
    code: str


class TokenValidateRequest(BaseModel):
    token: str


class SessionInfo(OperationResult):
    """Result of validating an access token."""
    user_id: Optional[str] = None
    email: Optional[str] = None
    tenant_id: Optional[str] = None
    roles: List[str] = []
    expires_at: Optional[datetime] = None


class LockoutStatus(BaseModel):
    """Lockout state for an account."""
    is_locked: bool
    locked_until: Optional[datetime] = None
    failed_attempts: int = 0
    max_attempts: int


class LockoutQuery(BaseModel):
    email: EmailStr
    tenant_id: Optional[str] = None


class LogoutResponse(BaseModel):
    """Logout response schema."""
    message: str
    session_terminated: bool

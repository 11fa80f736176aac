"""Shared identity and result schemas used by every authentication method."""

from datetime import datetime
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict

from app.services.errors import AuthError, AuthErrorKind, public_message


class NormalizedIdentity(BaseModel):
    """Identity produced by any authentication method before local user resolution."""

    model_config = ConfigDict(frozen=True)

    email: str
    first_name: str = ""
    last_name: str = ""
    display_name: Optional[str] = None
    groups: Tuple[str, ...] = ()
    roles: Tuple[str, ...] = ()
    external_id: Optional[str] = None
    provider: str = "local"


class OperationResult(BaseModel):
    """Base for every public service result."""

    success: bool
    error: Optional[AuthErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def failure(cls, kind: AuthErrorKind, **fields):
        return cls(success=False, error=kind, message=public_message(kind), **fields)

    @classmethod
    def from_error(cls, error: AuthError, **fields):
        return cls.failure(error.kind, **fields)


class AuthenticationResult(OperationResult):
    """Outcome of a login attempt through any method."""

    requires_mfa: bool = False
    mfa_token: Optional[str] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"
    expires_at: Optional[datetime] = None
    refresh_expires_at: Optional[datetime] = None
    user_id: Optional[str] = None
    email: Optional[str] = None
    roles: List[str] = []

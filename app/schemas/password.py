"""Password management schemas."""

from pydantic import BaseModel, EmailStr
from typing import List, Optional
from datetime import datetime

from app.schemas.identity import OperationResult


class PasswordStrength(BaseModel):
    """Strength evaluation. Score runs from 0 (weakest) to 5."""
    is_valid: bool
    score: int
    messages: List[str] = []


class PasswordStrengthRequest(BaseModel):
    password: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class PasswordResetInitiateRequest(BaseModel):
    email: EmailStr
    tenant_id: str


class PasswordResetCompleteRequest(BaseModel):
    token: str
    new_password: str


class PasswordChangeResult(OperationResult):
    """Outcome of a password change or reset."""
    messages: List[str] = []


class PasswordResetInitiateResult(OperationResult):
    """Always successful from the caller's point of view.

    The token is only present when the account exists; it is handed to the
    notification channel and must not be returned to the requester over HTTP.
    """
    reset_token: Optional[str] = None
    expires_at: Optional[datetime] = None

"""Multi-factor authentication schemas."""

from pydantic import BaseModel, EmailStr
from typing import List, Optional
from datetime import datetime

from app.schemas.identity import OperationResult


class MfaSetupResult(OperationResult):
    """Enrolment material, shown to the user once."""
    secret: Optional[str] = None
    provisioning_uri: Optional[str] = None
    qr_code: Optional[str] = None  # SVG data URI
    backup_codes: List[str] = []


class MfaCodeRequest(BaseModel):
    code: str


class MfaDisableRequest(BaseModel):
    current_password: str


class BackupCodesResult(OperationResult):
    backup_codes: List[str] = []


class MfaStatus(BaseModel):
    mfa_enabled: bool
    enabled_at: Optional[datetime] = None
    backup_codes_remaining: int = 0


class MfaRecoveryInitiateRequest(BaseModel):
    email: EmailStr
    tenant_id: str


class MfaRecoveryCompleteRequest(BaseModel):
    token: str


class MfaRecoveryInitiateResult(OperationResult):
    """Token is for out-of-band delivery only."""
    recovery_token: Optional[str] = None
    expires_at: Optional[datetime] = None

"""Session token issuance and validation (PyJWT, HMAC-SHA256)."""

from datetime import datetime, timedelta
from typing import Iterable, List, Optional, Tuple
import hashlib
import logging
import secrets
import uuid

import jwt
from pydantic import BaseModel, ConfigDict

from app.config import settings
from app.services.errors import AuthError, AuthErrorKind, TokenConfigurationError
from app.utils.timezone import from_timestamp, utcnow

logger = logging.getLogger(__name__)

MIN_SECRET_BYTES = 32

TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_MFA = "mfa"
TOKEN_TYPE_SSO_STATE = "sso_state"


class AccessClaims(BaseModel):
    """Claims carried by an access token."""

    model_config = ConfigDict(frozen=True)

    sub: str
    email: str
    name: str = ""
    tenant_id: str
    role: Tuple[str, ...] = ()
    exp: datetime
    iat: Optional[datetime] = None
    jti: Optional[str] = None


class MfaPendingClaims(BaseModel):
    """Claims of a token proving the password step of a two-factor login."""

    model_config = ConfigDict(frozen=True)

    sub: str
    exp: datetime


class SsoStateClaims(BaseModel):
    """Claims round-tripped through the identity provider in the OAuth state."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    provider: str
    nonce: str
    relay_state: Optional[str] = None
    exp: datetime


def _key_id(secret: str) -> str:
    return hashlib.sha256(secret.encode()).hexdigest()[:16]


class TokenService:
    """Mints and validates signed session tokens.

    The current signing key signs everything. Previous keys listed in
    ``JWT_PREVIOUS_SECRET_KEYS`` are still accepted for validation, so
    tokens issued just before a rotation stay valid until they expire.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        previous_keys: Optional[Iterable[str]] = None,
        algorithm: Optional[str] = None,
        issuer: Optional[str] = None,
    ):
        secret_key = settings.JWT_SECRET_KEY if secret_key is None else secret_key
        previous_keys = settings.JWT_PREVIOUS_SECRET_KEYS if previous_keys is None else previous_keys

        if not secret_key:
            raise TokenConfigurationError("JWT_SECRET_KEY is not configured")
        for key in [secret_key, *previous_keys]:
            if len(key.encode()) < MIN_SECRET_BYTES:
                raise TokenConfigurationError(
                    f"JWT signing keys must be at least {MIN_SECRET_BYTES} bytes"
                )

        self.algorithm = algorithm or settings.JWT_ALGORITHM
        self.issuer = issuer or settings.JWT_ISSUER
        self._signing_key = secret_key
        self._signing_kid = _key_id(secret_key)
        self._keys = {_key_id(k): k for k in [secret_key, *previous_keys]}

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def _encode(self, payload: dict) -> str:
        return jwt.encode(
            payload,
            self._signing_key,
            algorithm=self.algorithm,
            headers={"kid": self._signing_kid},
        )

    def issue_access_token(self, user, roles: Optional[List[str]] = None) -> Tuple[str, datetime]:
        """
        Issue an access token for a user.

        Args:
            user: User model instance
            roles: Role names; defaults to the user's assigned roles

        Returns:
            Tuple of (token, expiry as naive UTC)
        """
        now = utcnow()
        expires_at = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        claims = AccessClaims(
            sub=user.id,
            email=user.email,
            name=user.name,
            tenant_id=user.tenant_id,
            role=tuple(user.role_names if roles is None else roles),
            iat=now,
            exp=expires_at,
            jti=uuid.uuid4().hex,
        )
        payload = claims.model_dump()
        payload["role"] = list(claims.role)
        payload["token_type"] = TOKEN_TYPE_ACCESS
        payload["iss"] = self.issuer
        return self._encode(payload), expires_at

    def issue_refresh_token(self) -> Tuple[str, datetime]:
        """Opaque 256-bit refresh token. Storage and rotation belong to the caller."""
        expires_at = utcnow() + timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES)
        return secrets.token_urlsafe(32), expires_at

    def issue_mfa_token(self, user_id: str) -> str:
        """Short-lived token proving the password step of a two-factor login."""
        now = utcnow()
        payload = {
            "sub": user_id,
            "token_type": TOKEN_TYPE_MFA,
            "iat": now,
            "exp": now + timedelta(minutes=settings.MFA_TOKEN_EXPIRE_MINUTES),
            "iss": self.issuer,
        }
        return self._encode(payload)

    def issue_sso_state(self, tenant_id: str, provider: str, relay_state: Optional[str] = None) -> Tuple[str, str]:
        """Signed OAuth/OIDC state. Returns (state, nonce)."""
        now = utcnow()
        nonce = secrets.token_urlsafe(16)
        payload = {
            "tenant_id": tenant_id,
            "provider": provider,
            "nonce": nonce,
            "relay_state": relay_state,
            "token_type": TOKEN_TYPE_SSO_STATE,
            "iat": now,
            "exp": now + timedelta(minutes=settings.SSO_STATE_EXPIRE_MINUTES),
            "iss": self.issuer,
        }
        return self._encode(payload), nonce

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _decode(self, token: str, expected_type: str, required: List[str]) -> dict:
        """Verify signature, expiry, issuer and token type. Leeway is zero."""
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, str(e))

        kid = header.get("kid")
        if kid is not None and kid not in self._keys:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"unknown key id {kid}")
        candidates = [self._keys[kid]] if kid is not None else list(self._keys.values())

        payload = None
        last_error: Optional[Exception] = None
        for key in candidates:
            try:
                payload = jwt.decode(
                    token,
                    key,
                    algorithms=[self.algorithm],
                    issuer=self.issuer,
                    leeway=0,
                    options={"require": ["exp", "iat", *required]},
                )
                break
            except jwt.ExpiredSignatureError as e:
                raise AuthError(AuthErrorKind.TOKEN_EXPIRED, str(e))
            except jwt.InvalidSignatureError as e:
                last_error = e
            except jwt.InvalidTokenError as e:
                raise AuthError(AuthErrorKind.TOKEN_MALFORMED, str(e))

        if payload is None:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, str(last_error))

        if payload.get("token_type") != expected_type:
            raise AuthError(
                AuthErrorKind.TOKEN_MALFORMED,
                f"expected {expected_type} token, got {payload.get('token_type')}",
            )
        return payload

    def validate_access_token(self, token: str) -> AccessClaims:
        """Validate an access token. MFA-pending and state tokens are rejected."""
        payload = self._decode(token, TOKEN_TYPE_ACCESS, ["sub", "email", "tenant_id"])
        role = payload.get("role") or []
        if isinstance(role, str):
            role = [role]
        try:
            return AccessClaims(
                sub=payload["sub"],
                email=payload["email"],
                name=payload.get("name", ""),
                tenant_id=payload["tenant_id"],
                role=tuple(role),
                exp=from_timestamp(payload["exp"]),
                iat=from_timestamp(payload["iat"]),
                jti=payload.get("jti"),
            )
        except (TypeError, ValueError) as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, str(e))

    def validate_mfa_token(self, token: str) -> MfaPendingClaims:
        payload = self._decode(token, TOKEN_TYPE_MFA, ["sub"])
        return MfaPendingClaims(sub=payload["sub"], exp=from_timestamp(payload["exp"]))

    def validate_sso_state(self, token: str) -> SsoStateClaims:
        payload = self._decode(token, TOKEN_TYPE_SSO_STATE, ["tenant_id", "provider", "nonce"])
        try:
            return SsoStateClaims(
                tenant_id=payload["tenant_id"],
                provider=payload["provider"],
                nonce=payload["nonce"],
                relay_state=payload.get("relay_state"),
                exp=from_timestamp(payload["exp"]),
            )
        except (TypeError, ValueError) as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, str(e))


_token_service: Optional[TokenService] = None


def get_token_service() -> TokenService:
    """Get the shared token service, built from settings on first use."""
    global _token_service
    if _token_service is None:
        _token_service = TokenService()
    return _token_service


def reset_token_service():
    """Drop the shared instance so the next call re-reads settings."""
    global _token_service
    _token_service = None

"""Authentication error taxonomy.

Internal helpers raise ``AuthError``; public service operations catch it and
return a result model carrying the error kind and its fixed public message.
The ``detail`` of an error is for the log only and never reaches the caller.
"""

import enum


class AuthErrorKind(str, enum.Enum):
    """Every way an authentication or account-security operation can fail."""

    INVALID_CREDENTIAL = "invalid_credential"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    EMAIL_UNCONFIRMED = "email_unconfirmed"
    MFA_REQUIRED = "mfa_required"
    INVALID_MFA_CODE = "invalid_mfa_code"
    CONFIGURATION_MISSING = "configuration_missing"
    CONFIGURATION_INVALID = "configuration_invalid"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    SIGNATURE_INVALID = "signature_invalid"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_MALFORMED = "token_malformed"
    PASSWORD_POLICY = "password_policy"
    PASSWORD_REUSED = "password_reused"
    NOT_FOUND = "not_found"


PUBLIC_MESSAGES = {
    AuthErrorKind.INVALID_CREDENTIAL: "Invalid credentials",
    AuthErrorKind.ACCOUNT_LOCKED: "Account is temporarily locked. Please try again later.",
    AuthErrorKind.ACCOUNT_INACTIVE: "Account is not active",
    AuthErrorKind.EMAIL_UNCONFIRMED: "Email address has not been confirmed",
    AuthErrorKind.MFA_REQUIRED: "Multi-factor authentication required",
    AuthErrorKind.INVALID_MFA_CODE: "Invalid verification code",
    AuthErrorKind.CONFIGURATION_MISSING: "Authentication method is not configured",
    AuthErrorKind.CONFIGURATION_INVALID: "Authentication method is misconfigured",
    AuthErrorKind.UPSTREAM_UNAVAILABLE: "Identity provider is unavailable",
    AuthErrorKind.SIGNATURE_INVALID: "Authentication response could not be verified",
    AuthErrorKind.TOKEN_EXPIRED: "Token has expired",
    AuthErrorKind.TOKEN_MALFORMED: "Invalid token",
    AuthErrorKind.PASSWORD_POLICY: "Password does not meet requirements",
    AuthErrorKind.PASSWORD_REUSED: "Password was used recently",
    AuthErrorKind.NOT_FOUND: "Not found",
}


def public_message(kind: AuthErrorKind) -> str:
    return PUBLIC_MESSAGES[kind]


class AuthError(Exception):
    """Raised inside services; converted to a result at the public boundary."""

    def __init__(self, kind: AuthErrorKind, detail: str = ""):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)

    @property
    def message(self) -> str:
        return public_message(self.kind)


class TokenConfigurationError(RuntimeError):
    """Signing key missing or too short. Raised at startup, never swallowed."""

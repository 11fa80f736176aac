"""
Application Configuration Settings
Identity Authentication Core
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # Application
    APP_NAME: str = "BARQ Identity Service"
    APP_VERSION: str = "1.0.0"
    SECRET_KEY: str = "change-this-in-production"

    # Database
    DATABASE_URL: str = "sqlite:///./identity.db"

    # Security
    ALLOWED_ORIGINS: List[str] = ["http://localhost:8000"]

    # Session tokens
    JWT_SECRET_KEY: str = ""  # Required, at least 32 bytes
    JWT_PREVIOUS_SECRET_KEYS: List[str] = []  # Still accepted for validation during key rotation
    JWT_ALGORITHM: str = "HS256"
    JWT_ISSUER: str = "barq-identity"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    REFRESH_TOKEN_EXPIRE_MINUTES: int = 10080  # 7 days
    MFA_TOKEN_EXPIRE_MINUTES: int = 5
    SSO_STATE_EXPIRE_MINUTES: int = 10

    # Lockout and password policy
    MAX_LOGIN_ATTEMPTS: int = 5
    ACCOUNT_LOCKOUT_MINUTES: int = 15
    BCRYPT_ROUNDS: int = 12
    PASSWORD_MIN_LENGTH: int = 8
    PASSWORD_HISTORY_COUNT: int = 5
    PASSWORD_RESET_TOKEN_EXPIRE_MINUTES: int = 60

    # Multi-factor authentication
    MFA_ISSUER: str = "BARQ"
    MFA_BACKUP_CODE_COUNT: int = 8
    MFA_BACKUP_CODE_SALT: str = "barq-backup-salt"
    MFA_RECOVERY_TOKEN_EXPIRE_MINUTES: int = 60

    # Encryption of secrets at rest (LDAP bind passwords, client secrets, TOTP secrets)
    CONFIG_ENCRYPTION_KEY: str = ""  # Fernet key (fallback if Key Vault unavailable)
    AZURE_KEY_VAULT_URL: str = ""
    ENCRYPTION_KEY_NAME: str = "identity-config-encryption-key"

    # Directory and federation
    HTTP_TIMEOUT_SECONDS: float = 30.0
    LDAP_SYNC_MAX_RESULTS: int = 1000
    SSO_DEFAULT_ROLE: str = "User"
    ADMIN_ROLE: str = "Admin"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()

# Paths reachable without an access token
PUBLIC_PATHS = [
    "/health",
    "/api/auth/login",
    "/api/auth/mfa/complete",
    "/api/auth/mfa/recovery",
    "/api/auth/password/reset",
    "/api/auth/password/strength",
    "/api/auth/token/validate",
    "/api/auth/ldap/login",
    "/api/auth/authenticate",
    "/api/auth/sso/login",
    "/api/auth/sso/saml",
    "/api/auth/sso/callback",
    "/api/docs",
    "/api/redoc",
    "/openapi.json",
]

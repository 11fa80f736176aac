"""API routers for the identity service."""

from app.routers import auth, ldap, sso

__all__ = ["auth", "ldap", "sso"]

"""Request middleware package."""

from .auth import AuthMiddleware, get_current_claims, require_tenant_admin
from .security import SecurityHeadersMiddleware

__all__ = [
    "AuthMiddleware",
    "SecurityHeadersMiddleware",
    "get_current_claims",
    "require_tenant_admin",
]

"""Authentication middleware for bearer access tokens."""

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response, JSONResponse
from fastapi import Depends, HTTPException, status
import logging

from app.config import PUBLIC_PATHS, settings
from app.services.errors import AuthError
from app.services.token_service import AccessClaims, get_token_service

logger = logging.getLogger(__name__)


def _bearer_token(request: Request):
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[len("Bearer "):].strip() or None
    return None


class AuthMiddleware(BaseHTTPMiddleware):
    """Reject requests to protected paths without a valid access token.

    MFA-pending and SSO state tokens are not access tokens and are refused.
    Validated claims are placed on ``request.state.claims``.
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        if self._is_public_path(path) or request.method == "OPTIONS":
            return await call_next(request)

        token = _bearer_token(request)
        if not token:
            return JSONResponse(
                status_code=401,
                content={"detail": "Authentication required"},
                headers={"WWW-Authenticate": "Bearer"},
            )

        try:
            request.state.claims = get_token_service().validate_access_token(token)
        except AuthError as e:
            logger.warning(f"Rejected token for {path}: {e.detail}")
            return JSONResponse(
                status_code=401,
                content={"detail": e.message},
                headers={"WWW-Authenticate": "Bearer"},
            )

        return await call_next(request)

    def _is_public_path(self, path: str) -> bool:
        """Check if path is public (no auth required)."""
        for public_path in PUBLIC_PATHS:
            if path == public_path or path.startswith(public_path + "/"):
                return True
        return False


def get_current_claims(request: Request) -> AccessClaims:
    """Dependency returning the caller's validated access token claims."""
    claims = getattr(request.state, "claims", None)
    if claims is None:
        token = _bearer_token(request)
        if not token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        try:
            claims = get_token_service().validate_access_token(token)
        except AuthError as e:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.message)
    return claims


def require_tenant_admin(tenant_id: str, claims: AccessClaims = Depends(get_current_claims)) -> AccessClaims:
    """Dependency for configuration endpoints: the caller must administer the tenant in the path."""
    if settings.ADMIN_ROLE not in claims.role:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator role required")
    if claims.tenant_id != tenant_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not permitted for this tenant")
    return claims

"""Single entry point dispatching a login to the configured authentication method."""

import enum
import logging
from typing import Awaitable, Callable, Dict, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.schemas.identity import AuthenticationResult
from app.schemas.sso import OAuthCallbackRequest
from app.services.auth_service import AuthService
from app.services.errors import AuthErrorKind
from app.services.ldap_service import LdapService
from app.services.sso_service import SsoService

logger = logging.getLogger(__name__)


class AuthMethod(str, enum.Enum):
    LOCAL = "local"
    LDAP = "ldap"
    SAML = "saml"
    OAUTH = "oauth"
    OIDC = "oidc"


class Credentials(BaseModel):
    """Credentials for any method; each method reads the fields it needs."""

    method: AuthMethod = AuthMethod.LOCAL
    tenant_id: Optional[str] = None
    email: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    mfa_code: Optional[str] = None
    saml_response: Optional[str] = None
    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None


Handler = Callable[[Credentials, Optional[str]], Awaitable[AuthenticationResult]]


class Authenticator:
    """Routes credentials to the local, LDAP, SAML, OAuth or OIDC flow.

    Every flow ends in the same provisioning, lockout and token issuance.
    """

    def __init__(
        self,
        db: Session,
        auth: Optional[AuthService] = None,
        ldap: Optional[LdapService] = None,
        sso: Optional[SsoService] = None,
    ):
        self.auth = auth or AuthService(db)
        self.ldap = ldap or LdapService(db)
        self.sso = sso or SsoService(db)
        self._handlers: Dict[AuthMethod, Handler] = {
            AuthMethod.LOCAL: self._local,
            AuthMethod.LDAP: self._ldap,
            AuthMethod.SAML: self._saml,
            AuthMethod.OAUTH: self._callback,
            AuthMethod.OIDC: self._callback,
        }

    async def authenticate(self, credentials: Credentials, client_ip: Optional[str] = None) -> AuthenticationResult:
        handler = self._handlers[credentials.method]
        logger.debug(f"Dispatching {credentials.method.value} authentication")
        return await handler(credentials, client_ip)

    async def _local(self, c: Credentials, client_ip: Optional[str]) -> AuthenticationResult:
        if not c.email or c.password is None:
            return AuthenticationResult.failure(AuthErrorKind.INVALID_CREDENTIAL)
        return await self.auth.authenticate(c.email, c.password, c.mfa_code, c.tenant_id, client_ip)

    async def _ldap(self, c: Credentials, client_ip: Optional[str]) -> AuthenticationResult:
        if not c.tenant_id:
            return AuthenticationResult.failure(AuthErrorKind.CONFIGURATION_MISSING)
        return await self.ldap.login(c.tenant_id, c.username or c.email or "", c.password or "", client_ip)

    async def _saml(self, c: Credentials, client_ip: Optional[str]) -> AuthenticationResult:
        if not c.tenant_id:
            return AuthenticationResult.failure(AuthErrorKind.CONFIGURATION_MISSING)
        if not c.saml_response:
            return AuthenticationResult.failure(AuthErrorKind.TOKEN_MALFORMED)
        return await self.sso.process_saml_response(c.tenant_id, c.saml_response, client_ip)

    async def _callback(self, c: Credentials, client_ip: Optional[str]) -> AuthenticationResult:
        if not c.state:
            return AuthenticationResult.failure(AuthErrorKind.TOKEN_MALFORMED)
        callback = OAuthCallbackRequest(state=c.state, code=c.code, error=c.error)
        return await self.sso.process_callback(callback, client_ip)

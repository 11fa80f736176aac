"""Federated login across SAML, OAuth 2.0 and OpenID Connect providers."""

from typing import List, Optional
import json
import logging

from sqlalchemy.orm import Session

from app.config import settings
from app.models.sso_configuration import SsoConfiguration, SsoProvider
from app.schemas.identity import AuthenticationResult, NormalizedIdentity
from app.schemas.ldap import ValidationResult
from app.schemas.sso import (
    OAuthCallbackRequest,
    SsoConfigurationRequest,
    SsoConfigurationResponse,
    SsoLoginRedirect,
)
from app.services import audit_service as audit
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService
from app.services.encryption_service import EncryptionService, get_encryption_service
from app.services.errors import AuthError, AuthErrorKind
from app.services.oidc_service import OAuthService
from app.services.saml_service import SAMLService, get_saml_service
from app.services.token_service import TokenService, get_token_service
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

PROVIDER_ALIASES = {
    "saml": SsoProvider.SAML,
    "oauth": SsoProvider.OAUTH,
    "oauth2": SsoProvider.OAUTH,
    "oidc": SsoProvider.OIDC,
    "openidconnect": SsoProvider.OIDC,
}

AUTH_METHODS = {
    SsoProvider.SAML: "saml",
    SsoProvider.OAUTH: "oauth",
    SsoProvider.OIDC: "oidc",
}


def parse_provider(name: str) -> SsoProvider:
    """Accept 'saml', 'oauth', 'oidc' or the stored provider value."""
    provider = PROVIDER_ALIASES.get((name or "").lower())
    if provider is None:
        try:
            provider = SsoProvider(name)
        except ValueError:
            raise AuthError(AuthErrorKind.NOT_FOUND, f"unknown SSO provider {name}")
    return provider


class SsoService:
    """Entry point for federated logins and their per-tenant configuration."""

    def __init__(
        self,
        db: Session,
        encryption: Optional[EncryptionService] = None,
        tokens: Optional[TokenService] = None,
        saml: Optional[SAMLService] = None,
        oauth: Optional[OAuthService] = None,
    ):
        self.db = db
        self.encryption = encryption or get_encryption_service()
        self.tokens = tokens or get_token_service()
        self.saml = saml or get_saml_service()
        self.oauth = oauth or OAuthService()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_configuration(self, tenant_id: str, provider: SsoProvider) -> Optional[SsoConfiguration]:
        return (
            self.db.query(SsoConfiguration)
            .filter(SsoConfiguration.tenant_id == tenant_id, SsoConfiguration.provider == provider.value)
            .first()
        )

    def list_configurations(self, tenant_id: str) -> List[SsoConfiguration]:
        return (
            self.db.query(SsoConfiguration)
            .filter(SsoConfiguration.tenant_id == tenant_id)
            .order_by(SsoConfiguration.provider)
            .all()
        )

    def _enabled_configuration(self, tenant_id: str, provider: SsoProvider) -> SsoConfiguration:
        config = self.get_configuration(tenant_id, provider)
        if config is None or not config.is_enabled:
            raise AuthError(AuthErrorKind.CONFIGURATION_MISSING, f"{provider.value} is not enabled for tenant {tenant_id}")
        return config

    def save_configuration(self, tenant_id: str, provider: SsoProvider, request: SsoConfigurationRequest) -> SsoConfiguration:
        """Create or update a provider configuration. The client secret is stored encrypted."""
        config = self.get_configuration(tenant_id, provider)
        if config is None:
            config = SsoConfiguration(tenant_id=tenant_id, provider=provider.value)
            self.db.add(config)

        data = request.model_dump(exclude={"client_secret", "configuration", "attribute_mappings"})
        for field, value in data.items():
            setattr(config, field, value)
        config.provider_name = request.provider_name or provider.value
        config.configuration_json = json.dumps(request.configuration) if request.configuration else None
        config.attribute_mappings = json.dumps(request.attribute_mappings) if request.attribute_mappings else None
        if request.client_secret is not None:
            config.client_secret = self.encryption.encrypt_optional(request.client_secret)

        config.is_valid = False
        config.validation_error = None
        config.last_validated = None
        self.db.commit()
        self.db.refresh(config)
        logger.info(f"{provider.value} configuration saved for tenant {tenant_id}")
        return config

    @staticmethod
    def to_response(config: SsoConfiguration) -> SsoConfigurationResponse:
        def load(raw):
            try:
                value = json.loads(raw) if raw else {}
            except ValueError:
                return {}
            return value if isinstance(value, dict) else {}

        return SsoConfigurationResponse(
            id=config.id,
            tenant_id=config.tenant_id,
            provider=SsoProvider(config.provider),
            provider_name=config.provider_name,
            is_enabled=config.is_enabled,
            is_required=config.is_required,
            configuration=load(config.configuration_json),
            entity_id=config.entity_id,
            sso_url=config.sso_url,
            logout_url=config.logout_url,
            has_certificate=bool(config.certificate),
            client_id=config.client_id,
            has_client_secret=bool(config.client_secret),
            scopes=config.scopes,
            authority=config.authority,
            callback_url=config.callback_url,
            attribute_mappings=load(config.attribute_mappings),
            default_role=config.default_role,
            auto_provision_users=config.auto_provision_users,
            is_valid=config.is_valid,
            validation_error=config.validation_error,
            last_validated=config.last_validated,
            last_successful_auth=config.last_successful_auth,
        )

    def check_configuration(self, config: SsoConfiguration) -> ValidationResult:
        provider = SsoProvider(config.provider)
        if provider == SsoProvider.SAML:
            return self.saml.validate_configuration(config)
        return self.oauth.validate_configuration(config, oidc=provider == SsoProvider.OIDC)

    def validate_configuration(self, tenant_id: str, provider: SsoProvider) -> ValidationResult:
        """Check required fields for the provider and persist the outcome."""
        config = self.get_configuration(tenant_id, provider)
        if config is None:
            return ValidationResult(is_valid=False, errors=[f"{provider.value} is not configured for this tenant"])

        result = self.check_configuration(config)
        config.is_valid = result.is_valid
        config.validation_error = "; ".join(result.errors) or None
        config.last_validated = utcnow()
        self.db.commit()
        return result

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def start_login(self, tenant_id: str, provider: SsoProvider, relay_state: Optional[str] = None) -> SsoLoginRedirect:
        """Build the redirect that sends the browser to the identity provider."""
        try:
            config = self._enabled_configuration(tenant_id, provider)
            if provider == SsoProvider.SAML:
                url, state = self.saml.build_authn_request_url(config, relay_state)
            else:
                state, nonce = self.tokens.issue_sso_state(tenant_id, provider.value, relay_state)
                url = self.oauth.build_authorization_url(
                    config, state, nonce=nonce, oidc=provider == SsoProvider.OIDC
                )
        except AuthError as e:
            logger.error(f"Cannot start {provider.value} login for tenant {tenant_id}: {e.detail}")
            return SsoLoginRedirect.from_error(e)

        logger.info(f"Starting {provider.value} login for tenant {tenant_id}")
        return SsoLoginRedirect(success=True, redirect_url=url, state=state)

    def _reject(self, e: AuthError, tenant_id: Optional[str], method: str, client_ip: Optional[str]) -> AuthenticationResult:
        if e.kind in (AuthErrorKind.CONFIGURATION_INVALID, AuthErrorKind.UPSTREAM_UNAVAILABLE):
            logger.error(f"{method} login failed for tenant {tenant_id}: {e.detail}")
        else:
            logger.warning(f"{method} login rejected for tenant {tenant_id}: {e.detail}")
        AuditService(self.db).log_action(
            user_id=None,
            user_email=None,
            action=audit.LOGIN_FAILED,
            tenant_id=tenant_id,
            auth_method=method,
            success=False,
            failure_reason=e.kind.value,
            user_ip=client_ip,
        )
        return AuthenticationResult.from_error(e)

    def _sign_in(self, config: SsoConfiguration, identity: NormalizedIdentity, client_ip: Optional[str]) -> AuthenticationResult:
        config.last_successful_auth = utcnow()
        return AuthService(self.db, tokens=self.tokens).sign_in_identity(
            identity,
            config.tenant_id,
            auto_provision=config.auto_provision_users,
            default_role=config.default_role or settings.SSO_DEFAULT_ROLE,
            auth_method=AUTH_METHODS[SsoProvider(config.provider)],
            client_ip=client_ip,
        )

    async def process_saml_response(self, tenant_id: str, saml_response: str, client_ip: Optional[str] = None) -> AuthenticationResult:
        """Assertion consumer: validate the signed response and issue a session."""
        try:
            config = self._enabled_configuration(tenant_id, SsoProvider.SAML)
            identity = self.saml.process_response(config, saml_response)
        except AuthError as e:
            return self._reject(e, tenant_id, "saml", client_ip)
        return self._sign_in(config, identity, client_ip)

    async def _callback_identity(self, callback: OAuthCallbackRequest):
        state = self.tokens.validate_sso_state(callback.state)
        provider = parse_provider(state.provider)
        if provider == SsoProvider.SAML:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "state was issued for a SAML login")
        config = self._enabled_configuration(state.tenant_id, provider)
        client_secret = self.encryption.decrypt_optional(config.client_secret)
        identity = await self.oauth.process_callback(
            config,
            client_secret,
            callback.code,
            error=callback.error,
            nonce=state.nonce if provider == SsoProvider.OIDC else None,
            oidc=provider == SsoProvider.OIDC,
        )
        return config, identity

    async def process_callback(self, callback: OAuthCallbackRequest, client_ip: Optional[str] = None) -> AuthenticationResult:
        """OAuth/OIDC redirect target: exchange the code and issue a session."""
        try:
            config, identity = await self._callback_identity(callback)
        except AuthError as e:
            return self._reject(e, None, "oauth", client_ip)
        return self._sign_in(config, identity, client_ip)

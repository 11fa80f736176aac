"""
OAuth 2.0 and OpenID Connect authorization-code flow.

Handles:
- Authorization URL generation
- Code exchange at the token endpoint
- User info retrieval
- ID token validation (signature, issuer, audience, expiry, nonce)
"""

from typing import Any, Dict, List, Optional
from urllib.parse import urlencode
import hmac
import json
import logging

import httpx
import jwt
from cryptography.hazmat.primitives.asymmetric import ec

from app.config import settings
from app.models.sso_configuration import SsoConfiguration
from app.schemas.identity import NormalizedIdentity
from app.schemas.ldap import ValidationResult
from app.services.errors import AuthError, AuthErrorKind
from app.services.saml_service import load_certificate

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = "openid email profile"
RSA_ALGORITHMS = ["RS256", "RS384", "RS512", "PS256", "PS384", "PS512"]
EC_ALGORITHMS = ["ES256", "ES384", "ES512"]

# Claim -> user info / ID token keys tried in order
DEFAULT_CLAIM_MAPPINGS: Dict[str, List[str]] = {
    "email": ["email", "mail", "upn", "preferred_username"],
    "first_name": ["given_name", "givenName", "first_name"],
    "last_name": ["family_name", "surname", "familyName", "last_name"],
    "display_name": ["name", "displayName"],
    "groups": ["groups", "roles"],
}


def _config_json(config: SsoConfiguration) -> Dict[str, Any]:
    if not config.configuration_json:
        return {}
    try:
        value = json.loads(config.configuration_json)
    except ValueError:
        logger.error(f"configuration_json for SSO configuration {config.id} is not valid JSON")
        return {}
    return value if isinstance(value, dict) else {}


class OAuthService:
    """Authorization-code flow for OAuth 2.0 and OpenID Connect providers."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: Optional[float] = None):
        self.transport = transport
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    def endpoints(self, config: SsoConfiguration, oidc: bool) -> Dict[str, Optional[str]]:
        """Endpoints from configuration_json, falling back to the authority."""
        extra = _config_json(config)
        authority = (config.authority or "").rstrip("/")

        def pick(key: str, suffix: str) -> Optional[str]:
            return extra.get(key) or (f"{authority}/{suffix}" if authority else None)

        authorize = extra.get("authorization_endpoint")
        if not authorize:
            authorize = config.sso_url or (f"{authority}/authorize" if authority else None)

        return {
            "authorization_endpoint": authorize,
            "token_endpoint": pick("token_endpoint", "token"),
            "userinfo_endpoint": pick("userinfo_endpoint", "userinfo"),
            "jwks_uri": extra.get("jwks_uri") if oidc else None,
        }

    def build_authorization_url(self, config: SsoConfiguration, state: str, nonce: Optional[str] = None, oidc: bool = False) -> str:
        """
        Build the provider authorization URL.

        Args:
            config: Tenant OAuth/OIDC configuration
            state: Signed state value echoed back on the callback
            nonce: Sent for OpenID Connect and checked against the ID token
            oidc: Whether this is an OpenID Connect login

        Returns:
            Authorization URL to redirect the user to
        """
        endpoint = self.endpoints(config, oidc)["authorization_endpoint"]
        if not endpoint or not config.client_id:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "authorization endpoint or client id missing")

        params = {
            "response_type": "code",
            "client_id": config.client_id,
            "redirect_uri": config.callback_url or "",
            "scope": config.scopes or DEFAULT_SCOPES,
            "state": state,
        }
        if oidc and nonce:
            params["nonce"] = nonce
        separator = "&" if "?" in endpoint else "?"
        return f"{endpoint}{separator}{urlencode(params)}"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    @staticmethod
    def _check_response(response: httpx.Response, what: str) -> Dict[str, Any]:
        if response.status_code >= 500:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"{what} returned {response.status_code}")
        if not 200 <= response.status_code < 300:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, f"{what} returned {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"{what} did not return JSON")
        if not isinstance(body, dict):
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"{what} returned unexpected JSON")
        return body

    async def _request(self, method: str, url: str, what: str, **kwargs) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"{what} timed out: {e}")
        except httpx.HTTPError as e:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"{what} failed: {e}")
        return self._check_response(response, what)

    async def exchange_code(self, config: SsoConfiguration, client_secret: Optional[str], code: str, oidc: bool) -> Dict[str, Any]:
        """Exchange an authorization code for tokens."""
        token_endpoint = self.endpoints(config, oidc)["token_endpoint"]
        if not token_endpoint:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "token endpoint is not configured")

        body = await self._request(
            "POST",
            token_endpoint,
            "token endpoint",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": config.callback_url or "",
                "client_id": config.client_id or "",
                "client_secret": client_secret or "",
            },
            headers={"Accept": "application/json"},
        )
        if body.get("error"):
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, f"token endpoint error {body.get('error')}")
        if not body.get("access_token"):
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "token response has no access_token")
        logger.info(f"Exchanged authorization code for tokens (configuration {config.id})")
        return body

    async def get_user_info(self, config: SsoConfiguration, access_token: str, oidc: bool) -> Dict[str, Any]:
        """Call the user-info endpoint with the bearer access token."""
        endpoint = self.endpoints(config, oidc)["userinfo_endpoint"]
        if not endpoint:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "user info endpoint is not configured")
        return await self._request(
            "GET",
            endpoint,
            "user info endpoint",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        )

    # ------------------------------------------------------------------
    # ID token
    # ------------------------------------------------------------------

    async def _verification_key(self, config: SsoConfiguration, id_token: str):
        if (config.certificate or "").strip():
            try:
                return load_certificate(config.certificate).public_key()
            except ValueError as e:
                raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, f"stored OIDC certificate is unreadable: {e}")

        jwks_uri = self.endpoints(config, True)["jwks_uri"]
        if not jwks_uri:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "no certificate or jwks_uri to verify ID tokens")

        try:
            kid = jwt.get_unverified_header(id_token).get("kid")
        except jwt.InvalidTokenError as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"ID token header: {e}")
        jwks = await self._request("GET", jwks_uri, "JWKS endpoint")
        try:
            key_set = jwt.PyJWKSet.from_dict(jwks)
        except jwt.PyJWTError as e:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"JWKS could not be read: {e}")
        for key in key_set.keys:
            if kid is None or key.key_id == kid:
                return key.key
        raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"no JWKS key matches kid {kid}")

    def allowed_issuers(self, config: SsoConfiguration) -> List[str]:
        issuers = []
        if config.authority:
            authority = config.authority.rstrip("/")
            issuers.extend([authority, authority + "/"])
        if config.entity_id:
            issuers.append(config.entity_id)
        extra_issuer = _config_json(config).get("issuer")
        if extra_issuer:
            issuers.append(extra_issuer)
        return issuers

    async def validate_id_token(self, config: SsoConfiguration, id_token: str, nonce: Optional[str] = None) -> Dict[str, Any]:
        """
        Validate an ID token's signature, audience, expiry, issuer and nonce.

        Raises:
            AuthError: SIGNATURE_INVALID, TOKEN_EXPIRED or TOKEN_MALFORMED
        """
        key = await self._verification_key(config, id_token)
        try:
            claims = jwt.decode(
                id_token,
                key,
                algorithms=EC_ALGORITHMS if isinstance(key, ec.EllipticCurvePublicKey) else RSA_ALGORITHMS,
                audience=config.client_id,
                leeway=0,
                options={"require": ["exp", "iss", "aud", "sub"]},
            )
        except jwt.InvalidSignatureError as e:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"ID token signature: {e}")
        except jwt.ExpiredSignatureError as e:
            raise AuthError(AuthErrorKind.TOKEN_EXPIRED, f"ID token: {e}")
        except (jwt.DecodeError, jwt.MissingRequiredClaimError) as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"ID token: {e}")
        except jwt.PyJWTError as e:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"ID token: {e}")

        issuers = self.allowed_issuers(config)
        if not issuers or claims.get("iss") not in issuers:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"ID token issuer {claims.get('iss')} is not trusted")

        if nonce is not None:
            token_nonce = claims.get("nonce")
            if not isinstance(token_nonce, str) or not hmac.compare_digest(token_nonce, nonce):
                raise AuthError(AuthErrorKind.SIGNATURE_INVALID, "ID token nonce mismatch")
        return claims

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    @staticmethod
    def _claim(sources: List[Dict[str, Any]], claim: str, overrides: Dict[str, str]):
        names = ([overrides[claim]] if overrides.get(claim) else []) + DEFAULT_CLAIM_MAPPINGS[claim]
        for source in sources:
            for name in names:
                value = source.get(name)
                if value not in (None, "", []):
                    return value
        return None

    def map_identity(self, config: SsoConfiguration, sources: List[Dict[str, Any]], provider: str) -> NormalizedIdentity:
        """Map user info and ID token claims to an identity. An email is mandatory."""
        try:
            overrides = {k: str(v) for k, v in json.loads(config.attribute_mappings or "{}").items()}
        except (ValueError, AttributeError):
            overrides = {}

        email = self._claim(sources, "email", overrides)
        if not isinstance(email, str) or "@" not in email:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "provider asserted no email")

        groups = self._claim(sources, "groups", overrides) or []
        if isinstance(groups, str):
            groups = [groups]
        subject = next((s.get("sub") or s.get("id") for s in sources if s.get("sub") or s.get("id")), None)

        return NormalizedIdentity(
            email=email.strip().lower(),
            first_name=str(self._claim(sources, "first_name", overrides) or ""),
            last_name=str(self._claim(sources, "last_name", overrides) or ""),
            display_name=self._claim(sources, "display_name", overrides),
            groups=tuple(str(g) for g in groups),
            external_id=str(subject) if subject is not None else None,
            provider=provider,
        )

    async def process_callback(
        self,
        config: SsoConfiguration,
        client_secret: Optional[str],
        code: Optional[str],
        error: Optional[str] = None,
        nonce: Optional[str] = None,
        oidc: bool = False,
    ) -> NormalizedIdentity:
        """
        Complete the authorization-code flow.

        Args:
            config: Tenant OAuth/OIDC configuration
            client_secret: Decrypted client secret
            code: Authorization code from the callback
            error: Provider error parameter; rejects immediately when set
            nonce: Nonce sent with the authorization request (OIDC)
            oidc: Validate the ID token

        Returns:
            NormalizedIdentity built from user info and ID token claims
        """
        if error:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, f"provider returned error {error}")
        if not code:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "callback has no authorization code")

        tokens = await self.exchange_code(config, client_secret, code, oidc)

        sources: List[Dict[str, Any]] = []
        if oidc:
            id_token = tokens.get("id_token")
            if not id_token:
                raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "token response has no id_token")
            claims = await self.validate_id_token(config, id_token, nonce)
            if self.endpoints(config, True)["userinfo_endpoint"]:
                user_info = await self.get_user_info(config, tokens["access_token"], oidc)
                if user_info.get("sub") and user_info["sub"] != claims.get("sub"):
                    raise AuthError(AuthErrorKind.SIGNATURE_INVALID, "user info subject does not match ID token")
                sources.append(user_info)
            sources.append(claims)
        else:
            sources.append(await self.get_user_info(config, tokens["access_token"], oidc))

        return self.map_identity(config, sources, "oidc" if oidc else "oauth")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_configuration(self, config: SsoConfiguration, oidc: bool) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if not config.client_id:
            errors.append("Client ID is required")
        if not config.client_secret:
            errors.append("Client secret is required")
        if not config.callback_url:
            errors.append("Callback URL is required")
        if not config.authority and not config.sso_url and not _config_json(config).get("authorization_endpoint"):
            errors.append("Authority or authorization URL is required")

        endpoints = self.endpoints(config, oidc)
        if not endpoints["token_endpoint"]:
            errors.append("Token endpoint cannot be determined")
        for name, url in endpoints.items():
            if url and not url.startswith("https://"):
                warnings.append(f"{name} does not use HTTPS")

        if oidc:
            if "openid" not in (config.scopes or DEFAULT_SCOPES).split():
                errors.append("Scopes must include openid")
            if not (config.certificate or "").strip() and not endpoints["jwks_uri"]:
                errors.append("A signing certificate or jwks_uri is required to verify ID tokens")
            elif (config.certificate or "").strip():
                try:
                    load_certificate(config.certificate)
                except ValueError as e:
                    errors.append(f"Signing certificate is invalid: {e}")
            if not self.allowed_issuers(config):
                errors.append("Authority or entity ID is required to check the ID token issuer")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

"""Tests for the OAuth 2.0 / OpenID Connect authorization-code flow."""

import json
import time
import pytest
from urllib.parse import parse_qs, urlparse

import httpx
import jwt

from app.models.sso_configuration import SsoConfiguration, SsoProvider
from app.services.errors import AuthError, AuthErrorKind
from app.services.oidc_service import OAuthService
from tests.conftest import TENANT_ID

AUTHORITY = "https://login.example.com/tenant-1/v2.0"
CLIENT_ID = "client-123"


def id_token(key, **overrides):
    now = int(time.time())
    claims = {
        "iss": AUTHORITY,
        "aud": CLIENT_ID,
        "sub": "subject-1",
        "iat": now,
        "exp": now + 300,
        "nonce": "nonce-1",
        "email": "Jane.Roe@Example.com",
        "given_name": "Jane",
        "family_name": "Roe",
        "groups": ["Reviewers"],
    }
    claims.update(overrides)
    return jwt.encode(claims, key, algorithm="RS256", headers={"kid": "idp-key"})


class FakeProvider:
    """Token, user info and JWKS endpoints backed by httpx.MockTransport."""

    def __init__(self, token_body=None, user_info=None, jwks=None, status=200):
        self.token_body = token_body or {"access_token": "provider-access-token"}
        self.user_info = user_info
        self.jwks = jwks
        self.status = status
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status != 200:
            return httpx.Response(self.status, text="provider failure")
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json=self.token_body)
        if request.url.path.endswith("/userinfo"):
            return httpx.Response(200, json=self.user_info or {})
        if request.url.path.endswith("/keys"):
            return httpx.Response(200, json=self.jwks)
        return httpx.Response(404)

    def service(self):
        return OAuthService(transport=httpx.MockTransport(self.handler))


def make_config(provider=SsoProvider.OIDC, **fields):
    values = dict(
        tenant_id=TENANT_ID,
        provider=provider.value,
        provider_name="Example",
        is_enabled=True,
        client_id=CLIENT_ID,
        client_secret="encrypted",
        authority=AUTHORITY,
        callback_url="https://app.example.com/api/auth/sso/callback",
        scopes="openid email profile",
    )
    values.update(fields)
    return SsoConfiguration(**values)


class TestAuthorizationUrl:
    """Redirect to the provider."""

    def test_oidc_url_carries_state_and_nonce(self):
        url = OAuthService().build_authorization_url(make_config(), "signed-state", nonce="nonce-1", oidc=True)
        parsed = urlparse(url)
        query = parse_qs(parsed.query)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{AUTHORITY}/authorize"
        assert query["response_type"] == ["code"]
        assert query["client_id"] == [CLIENT_ID]
        assert query["state"] == ["signed-state"]
        assert query["nonce"] == ["nonce-1"]
        assert query["scope"] == ["openid email profile"]

    def test_oauth_url_has_no_nonce(self):
        config = make_config(SsoProvider.OAUTH, sso_url="https://github.example.com/login/oauth/authorize")
        url = OAuthService().build_authorization_url(config, "s", nonce="n", oidc=False)
        assert url.startswith("https://github.example.com/login/oauth/authorize?")
        assert "nonce" not in parse_qs(urlparse(url).query)

    def test_explicit_endpoints_win(self):
        config = make_config(configuration_json=json.dumps({"token_endpoint": "https://other.example.com/oauth/token"}))
        assert OAuthService().endpoints(config, True)["token_endpoint"] == "https://other.example.com/oauth/token"

    def test_missing_client_id(self):
        with pytest.raises(AuthError) as exc:
            OAuthService().build_authorization_url(make_config(client_id=None), "s")
        assert exc.value.kind == AuthErrorKind.CONFIGURATION_INVALID


class TestOidcCallback:
    """Code exchange plus ID token validation."""

    async def test_callback_with_certificate(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        provider = FakeProvider(token_body={"access_token": "at", "id_token": id_token(key)})
        config = make_config(certificate=cert_pem.decode())

        identity = await provider.service().process_callback(config, "secret", "code-1", nonce="nonce-1", oidc=True)

        assert identity.email == "jane.roe@example.com"
        assert identity.first_name == "Jane"
        assert identity.last_name == "Roe"
        assert identity.groups == ("Reviewers",)
        assert identity.external_id == "subject-1"
        assert identity.provider == "oidc"

        token_request = provider.requests[0]
        form = parse_qs(token_request.content.decode())
        assert form["grant_type"] == ["authorization_code"]
        assert form["code"] == ["code-1"]
        assert form["client_secret"] == ["secret"]

    async def test_callback_with_jwks(self, idp_certificate):
        key, _, _ = idp_certificate
        jwk = jwt.algorithms.RSAAlgorithm.to_jwk(key.public_key(), as_dict=True)
        jwk.update({"kid": "idp-key", "use": "sig", "alg": "RS256"})
        provider = FakeProvider(
            token_body={"access_token": "at", "id_token": id_token(key)},
            jwks={"keys": [jwk]},
        )
        config = make_config(configuration_json=json.dumps({"jwks_uri": f"{AUTHORITY}/keys"}))

        identity = await provider.service().process_callback(config, "secret", "code-1", nonce="nonce-1", oidc=True)
        assert identity.email == "jane.roe@example.com"

    async def test_user_info_is_preferred_and_subject_checked(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        provider = FakeProvider(
            token_body={"access_token": "at", "id_token": id_token(key)},
            user_info={"sub": "someone-else", "email": "x@example.com"},
        )
        config = make_config(
            certificate=cert_pem.decode(),
            configuration_json=json.dumps({"userinfo_endpoint": f"{AUTHORITY}/userinfo"}),
        )
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(config, "secret", "code", nonce="nonce-1", oidc=True)
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID

    async def test_nonce_mismatch(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        provider = FakeProvider(token_body={"access_token": "at", "id_token": id_token(key)})
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(
                make_config(certificate=cert_pem.decode()), "secret", "code", nonce="replayed", oidc=True
            )
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID

    async def test_signed_by_another_key(self, idp_certificate, other_certificate):
        provider = FakeProvider(token_body={"access_token": "at", "id_token": id_token(other_certificate[0])})
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(
                make_config(certificate=idp_certificate[2].decode()), "secret", "code", nonce="nonce-1", oidc=True
            )
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID

    async def test_expired_id_token(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        past = int(time.time()) - 3600
        token = id_token(key, iat=past - 300, exp=past)
        with pytest.raises(AuthError) as exc:
            await OAuthService().validate_id_token(make_config(certificate=cert_pem.decode()), token, "nonce-1")
        assert exc.value.kind == AuthErrorKind.TOKEN_EXPIRED

    async def test_untrusted_issuer(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        token = id_token(key, iss="https://rogue.example.com")
        with pytest.raises(AuthError) as exc:
            await OAuthService().validate_id_token(make_config(certificate=cert_pem.decode()), token, "nonce-1")
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID

    async def test_wrong_audience(self, idp_certificate):
        key, _, cert_pem = idp_certificate
        token = id_token(key, aud="another-client")
        with pytest.raises(AuthError) as exc:
            await OAuthService().validate_id_token(make_config(certificate=cert_pem.decode()), token, "nonce-1")
        assert exc.value.kind == AuthErrorKind.SIGNATURE_INVALID

    async def test_missing_id_token(self, idp_certificate):
        provider = FakeProvider(token_body={"access_token": "at"})
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(
                make_config(certificate=idp_certificate[2].decode()), "secret", "code", nonce="nonce-1", oidc=True
            )
        assert exc.value.kind == AuthErrorKind.TOKEN_MALFORMED


class TestOAuthCallback:
    """Plain OAuth 2.0 reads the user-info endpoint."""

    async def test_user_info_identity(self):
        provider = FakeProvider(user_info={"id": 42, "email": "dev@example.com", "name": "Dev"})
        identity = await provider.service().process_callback(make_config(SsoProvider.OAUTH), "secret", "code")
        assert identity.email == "dev@example.com"
        assert identity.display_name == "Dev"
        assert identity.external_id == "42"
        assert identity.provider == "oauth"
        assert provider.requests[1].headers["Authorization"] == "Bearer provider-access-token"

    async def test_provider_error_parameter(self):
        with pytest.raises(AuthError) as exc:
            await OAuthService().process_callback(make_config(), "secret", None, error="access_denied")
        assert exc.value.kind == AuthErrorKind.INVALID_CREDENTIAL

    async def test_missing_code(self):
        with pytest.raises(AuthError) as exc:
            await OAuthService().process_callback(make_config(), "secret", None)
        assert exc.value.kind == AuthErrorKind.TOKEN_MALFORMED

    async def test_provider_outage(self):
        provider = FakeProvider(status=503)
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(make_config(SsoProvider.OAUTH), "secret", "code")
        assert exc.value.kind == AuthErrorKind.UPSTREAM_UNAVAILABLE

    async def test_rejected_code(self):
        provider = FakeProvider(status=400)
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(make_config(SsoProvider.OAUTH), "secret", "code")
        assert exc.value.kind == AuthErrorKind.INVALID_CREDENTIAL

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        service = OAuthService(transport=httpx.MockTransport(handler))
        with pytest.raises(AuthError) as exc:
            await service.process_callback(make_config(SsoProvider.OAUTH), "secret", "code")
        assert exc.value.kind == AuthErrorKind.UPSTREAM_UNAVAILABLE

    async def test_no_email(self):
        provider = FakeProvider(user_info={"id": 7, "login": "octocat"})
        with pytest.raises(AuthError) as exc:
            await provider.service().process_callback(make_config(SsoProvider.OAUTH), "secret", "code")
        assert exc.value.kind == AuthErrorKind.INVALID_CREDENTIAL


class TestOAuthConfiguration:
    """Structural checks."""

    def test_valid_oidc(self, idp_certificate):
        result = OAuthService().validate_configuration(make_config(certificate=idp_certificate[2].decode()), oidc=True)
        assert result.is_valid is True

    def test_oidc_needs_verification_key(self):
        result = OAuthService().validate_configuration(make_config(), oidc=True)
        assert result.is_valid is False
        assert "A signing certificate or jwks_uri is required to verify ID tokens" in result.errors

    def test_oidc_needs_openid_scope(self, idp_certificate):
        config = make_config(scopes="email profile", certificate=idp_certificate[2].decode())
        result = OAuthService().validate_configuration(config, oidc=True)
        assert "Scopes must include openid" in result.errors

    def test_missing_client_settings(self):
        result = OAuthService().validate_configuration(
            make_config(SsoProvider.OAUTH, client_id=None, client_secret=None), oidc=False
        )
        assert "Client ID is required" in result.errors
        assert "Client secret is required" in result.errors

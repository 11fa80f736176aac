"""
SAML 2.0 service provider.

Builds HTTP-Redirect AuthnRequests and validates signed responses. A
response is only trusted when it carries an XML signature that verifies
against the certificate stored for the tenant; claims are read exclusively
from the signed part of the document.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlencode
import base64
import binascii
import json
import logging
import re
import secrets
import textwrap
import zlib

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from lxml import etree
from signxml import XMLVerifier
from signxml.exceptions import InvalidInput, InvalidSignature

from app.models.sso_configuration import SsoConfiguration
from app.schemas.identity import NormalizedIdentity
from app.schemas.ldap import ValidationResult
from app.services.errors import AuthError, AuthErrorKind

logger = logging.getLogger(__name__)

NS = {
    "samlp": "urn:oasis:names:tc:SAML:2.0:protocol",
    "saml": "urn:oasis:names:tc:SAML:2.0:assertion",
    "ds": "http://www.w3.org/2000/09/xmldsig#",
}
STATUS_SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
BINDING_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
NAMEID_EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
CLOCK_SKEW = timedelta(minutes=2)

# Claim -> attribute names tried in order (case-insensitive)
DEFAULT_ATTRIBUTE_MAPPINGS: Dict[str, List[str]] = {
    "email": [
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
        "email",
        "mail",
        "emailAddress",
        "urn:oid:0.9.2342.19200300.100.1.3",
    ],
    "first_name": [
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/givenname",
        "givenName",
        "firstName",
        "first_name",
        "urn:oid:2.5.4.42",
    ],
    "last_name": [
        "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/surname",
        "sn",
        "surname",
        "lastName",
        "last_name",
        "urn:oid:2.5.4.4",
    ],
    "display_name": [
        "http://schemas.microsoft.com/identity/claims/displayname",
        "displayName",
        "name",
    ],
    "groups": [
        "http://schemas.microsoft.com/ws/2008/06/identity/claims/groups",
        "http://schemas.xmlsoap.org/claims/Group",
        "groups",
        "memberOf",
    ],
}

_parser = etree.XMLParser(
    resolve_entities=False,
    no_network=True,
    remove_comments=True,
    huge_tree=False,
)


def load_certificate(certificate: str) -> x509.Certificate:
    """Load a PEM certificate, or a bare base64 DER body as exported by most IdPs."""
    text = (certificate or "").strip()
    if not text:
        raise ValueError("certificate is empty")
    if "-----BEGIN CERTIFICATE-----" not in text:
        body = re.sub(r"\s+", "", text)
        text = "-----BEGIN CERTIFICATE-----\n" + "\n".join(textwrap.wrap(body, 64)) + "\n-----END CERTIFICATE-----\n"
    return x509.load_pem_x509_certificate(text.encode())


def parse_instant(value: str) -> datetime:
    """Parse an xs:dateTime as an aware UTC datetime."""
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    # Trim fractional seconds beyond microseconds
    value = re.sub(r"(\.\d{6})\d+", r"\1", value)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _instant(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _json(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except ValueError:
        return {}
    return value if isinstance(value, dict) else {}


class SAMLService:
    """SAML 2.0 authentication for one tenant configuration at a time."""

    def sp_entity_id(self, config: SsoConfiguration) -> str:
        extra = _json(config.configuration_json)
        return extra.get("sp_entity_id") or config.callback_url or ""

    # ------------------------------------------------------------------
    # AuthnRequest
    # ------------------------------------------------------------------

    def build_authn_request(self, config: SsoConfiguration, request_id: str, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        root = etree.Element(
            f"{{{NS['samlp']}}}AuthnRequest",
            nsmap={"samlp": NS["samlp"], "saml": NS["saml"]},
            ID=request_id,
            Version="2.0",
            IssueInstant=_instant(now),
            Destination=config.sso_url or "",
            ProtocolBinding=BINDING_POST,
        )
        if config.callback_url:
            root.set("AssertionConsumerServiceURL", config.callback_url)
        issuer = etree.SubElement(root, f"{{{NS['saml']}}}Issuer")
        issuer.text = self.sp_entity_id(config)
        etree.SubElement(root, f"{{{NS['samlp']}}}NameIDPolicy", Format=NAMEID_EMAIL, AllowCreate="true")
        return etree.tostring(root, encoding="unicode")

    def build_authn_request_url(self, config: SsoConfiguration, relay_state: Optional[str] = None) -> Tuple[str, str]:
        """
        Build the HTTP-Redirect URL that starts a login at the IdP.

        Args:
            config: Tenant SAML configuration
            relay_state: Opaque value echoed back by the IdP; generated if absent

        Returns:
            Tuple of (redirect URL, relay state)
        """
        if not config.sso_url:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "SAML SSO URL is not configured")

        request_id = "_" + secrets.token_hex(16)
        xml = self.build_authn_request(config, request_id).encode()
        compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION, zlib.DEFLATED, -15)
        deflated = compressor.compress(xml) + compressor.flush()

        relay_state = relay_state or secrets.token_urlsafe(16)
        query = urlencode({
            "SAMLRequest": base64.b64encode(deflated).decode(),
            "RelayState": relay_state,
        })
        separator = "&" if "?" in config.sso_url else "?"
        return f"{config.sso_url}{separator}{query}", relay_state

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def _parse(self, raw_response: str) -> etree._Element:
        try:
            document = base64.b64decode(raw_response, validate=False)
        except (binascii.Error, ValueError) as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"SAML response is not base64: {e}")
        try:
            root = etree.fromstring(document, parser=_parser)
        except etree.XMLSyntaxError as e:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"SAML response is not XML: {e}")
        if root.tag != f"{{{NS['samlp']}}}Response":
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, f"unexpected root element {root.tag}")
        return root

    def _verify(self, root: etree._Element, certificate: str) -> etree._Element:
        try:
            cert = load_certificate(certificate)
        except ValueError as e:
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, f"stored SAML certificate is unreadable: {e}")
        pem = cert.public_bytes(Encoding.PEM).decode()

        try:
            verified = XMLVerifier().verify(root, x509_cert=pem)
        except (InvalidSignature, InvalidInput) as e:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"XML signature rejected: {e}")
        return verified.signed_xml

    def _check_status(self, root: etree._Element):
        code = root.find("samlp:Status/samlp:StatusCode", NS)
        value = code.get("Value") if code is not None else None
        if value != STATUS_SUCCESS:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, f"IdP returned status {value}")

    def _check_conditions(self, assertion: etree._Element, config: SsoConfiguration, now: datetime):
        conditions = assertion.find("saml:Conditions", NS)
        if conditions is not None:
            not_before = conditions.get("NotBefore")
            if not_before and now + CLOCK_SKEW < parse_instant(not_before):
                raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "assertion is not yet valid")
            not_after = conditions.get("NotOnOrAfter")
            if not_after and now - CLOCK_SKEW >= parse_instant(not_after):
                raise AuthError(AuthErrorKind.TOKEN_EXPIRED, "assertion has expired")

            audiences = [a.text.strip() for a in conditions.iterfind("saml:AudienceRestriction/saml:Audience", NS) if a.text]
            expected = self.sp_entity_id(config)
            if audiences and expected and expected not in audiences:
                raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"assertion audience {audiences} does not include {expected}")

        for data in assertion.iterfind("saml:Subject/saml:SubjectConfirmation/saml:SubjectConfirmationData", NS):
            not_after = data.get("NotOnOrAfter")
            if not_after and now - CLOCK_SKEW >= parse_instant(not_after):
                raise AuthError(AuthErrorKind.TOKEN_EXPIRED, "subject confirmation has expired")

        if config.entity_id:
            issuer = assertion.findtext("saml:Issuer", namespaces=NS)
            if issuer and issuer.strip() != config.entity_id:
                raise AuthError(AuthErrorKind.SIGNATURE_INVALID, f"assertion issuer {issuer} is not {config.entity_id}")

    @staticmethod
    def extract_attributes(assertion: etree._Element) -> Dict[str, List[str]]:
        attributes: Dict[str, List[str]] = {}
        for attribute in assertion.iterfind("saml:AttributeStatement/saml:Attribute", NS):
            name = attribute.get("Name")
            if not name:
                continue
            values = [(v.text or "").strip() for v in attribute.iterfind("saml:AttributeValue", NS)]
            attributes.setdefault(name.lower(), []).extend(v for v in values if v)
        return attributes

    @staticmethod
    def _claim(attributes: Dict[str, List[str]], claim: str, overrides: Dict[str, str]) -> List[str]:
        names = []
        if overrides.get(claim):
            names.append(overrides[claim])
        names.extend(DEFAULT_ATTRIBUTE_MAPPINGS.get(claim, []))
        for name in names:
            values = attributes.get(name.lower())
            if values:
                return values
        return []

    def process_response(self, config: SsoConfiguration, raw_response: str, now: Optional[datetime] = None) -> NormalizedIdentity:
        """
        Validate a base64 SAML response and map it to an identity.

        Raises:
            AuthError: CONFIGURATION_INVALID without a certificate,
                SIGNATURE_INVALID for unsigned or tampered responses,
                TOKEN_EXPIRED / TOKEN_MALFORMED for bad assertions, and
                INVALID_CREDENTIAL when the IdP failed the login or no email
                is asserted
        """
        if not (config.certificate or "").strip():
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, "no signing certificate configured")

        root = self._parse(raw_response)
        if root.find(".//ds:Signature", NS) is None:
            raise AuthError(AuthErrorKind.SIGNATURE_INVALID, "SAML response is not signed")

        self._check_status(root)
        signed = self._verify(root, config.certificate)

        if signed.tag == f"{{{NS['saml']}}}Assertion":
            assertion = signed
        else:
            assertion = signed.find("saml:Assertion", NS)
        if assertion is None:
            raise AuthError(AuthErrorKind.TOKEN_MALFORMED, "signed content holds no plain assertion")

        self._check_conditions(assertion, config, now or datetime.now(timezone.utc))

        name_id = (assertion.findtext("saml:Subject/saml:NameID", namespaces=NS) or "").strip()
        attributes = self.extract_attributes(assertion)
        overrides = {k: str(v) for k, v in _json(config.attribute_mappings).items()}

        emails = self._claim(attributes, "email", overrides)
        email = emails[0] if emails else (name_id if "@" in name_id else "")
        if not email:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "SAML assertion carries no email")

        first = self._claim(attributes, "first_name", overrides)
        last = self._claim(attributes, "last_name", overrides)
        display = self._claim(attributes, "display_name", overrides)
        groups = self._claim(attributes, "groups", overrides)

        return NormalizedIdentity(
            email=email.lower(),
            first_name=first[0] if first else "",
            last_name=last[0] if last else "",
            display_name=display[0] if display else None,
            groups=tuple(groups),
            external_id=name_id or None,
            provider="saml",
        )

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_configuration(self, config: SsoConfiguration, now: Optional[datetime] = None) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []
        now = now or datetime.now(timezone.utc)

        if not config.entity_id:
            errors.append("Entity ID is required")
        if not config.sso_url:
            errors.append("SSO URL is required")
        elif not config.sso_url.startswith("https://"):
            warnings.append("SSO URL does not use HTTPS")
        if not config.callback_url:
            warnings.append("Callback (ACS) URL is not set")

        if not (config.certificate or "").strip():
            errors.append("Signing certificate is required")
        else:
            try:
                cert = load_certificate(config.certificate)
            except ValueError as e:
                errors.append(f"Signing certificate is invalid: {e}")
            else:
                if now < cert.not_valid_before_utc:
                    errors.append("Signing certificate is not yet valid")
                elif now >= cert.not_valid_after_utc:
                    errors.append("Signing certificate has expired")
                elif cert.not_valid_after_utc - now < timedelta(days=30):
                    warnings.append("Signing certificate expires within 30 days")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


_saml_service: Optional[SAMLService] = None


def get_saml_service() -> SAMLService:
    """Get or create the SAML service singleton."""
    global _saml_service
    if _saml_service is None:
        _saml_service = SAMLService()
    return _saml_service

"""
LDAP / Active Directory authentication and synchronisation.

A service account binds and searches for the user; a second connection then
binds as the user's DN with the supplied password. That second bind is the
only proof of the password. ldap3 is synchronous, so every directory
round trip runs in a worker thread under a timeout taken from the tenant's
configuration.
"""

from typing import Any, Callable, Dict, List, Optional
import asyncio
import json
import logging
import ssl

from ldap3 import BASE, NONE, SUBTREE, Connection, Server, Tls
from ldap3.core.exceptions import LDAPException, LDAPInvalidDnError
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn, parse_dn
from sqlalchemy.orm import Session

from app.config import settings
from app.models.ldap_configuration import LdapConfiguration
from app.schemas.identity import AuthenticationResult, NormalizedIdentity
from app.schemas.ldap import (
    LdapConfigurationRequest,
    LdapConfigurationResponse,
    LdapSearchResult,
    LdapSyncResult,
    LdapUser,
    ValidationResult,
)
from app.services import audit_service as audit
from app.services.audit_service import AuditService
from app.services.auth_service import AuthService
from app.services.encryption_service import EncryptionService, get_encryption_service
from app.services.errors import AuthError, AuthErrorKind
from app.services.provisioning_service import IdentityProvisioner
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)

# factory(config, bind_dn, password) -> unbound Connection
ConnectionFactory = Callable[[LdapConfiguration, Optional[str], Optional[str]], Connection]

USERNAME_PLACEHOLDER = "{0}"


def default_connection_factory(config: LdapConfiguration, user: Optional[str], password: Optional[str]) -> Connection:
    """Open a connection to the configured directory. SSL wins when both SSL and StartTLS are set."""
    tls = Tls(validate=ssl.CERT_REQUIRED) if (config.use_ssl or config.use_start_tls) else None
    server = Server(
        config.host,
        port=config.port,
        use_ssl=config.use_ssl,
        tls=tls,
        get_info=NONE,
        connect_timeout=config.connection_timeout,
    )
    conn = Connection(
        server,
        user=user or None,
        password=password or None,
        receive_timeout=config.search_timeout,
        read_only=True,
        raise_exceptions=False,
    )
    conn.open()
    if config.use_start_tls and not config.use_ssl and not conn.start_tls():
        conn.unbind()
        raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"StartTLS negotiation with {config.host} failed")
    return conn


def build_filter(template: str, value: str, allow_wildcard: bool = False) -> str:
    """Substitute an escaped value for the ``{0}`` placeholder."""
    escaped = escape_filter_chars(value)
    if allow_wildcard:
        escaped = escaped.replace("\\2a", "*")
    return template.replace(USERNAME_PLACEHOLDER, escaped)


def leaf_cn(dn: str) -> str:
    """Reduce a group DN to its leaf CN. Values that are not DNs pass through."""
    try:
        components = parse_dn(dn)
    except LDAPInvalidDnError:
        return dn
    if components and components[0][0].lower() == "cn":
        return components[0][1]
    return dn


def _values(attributes: Dict[str, Any], name: str) -> List[str]:
    """Case-insensitive attribute lookup, always returning a list of strings."""
    if not name:
        return []
    for key, value in attributes.items():
        if key.lower() == name.lower():
            if value is None:
                return []
            if isinstance(value, (list, tuple)):
                return [str(v) for v in value if v not in (None, "")]
            return [str(value)] if value != "" else []
    return []


def _first(attributes: Dict[str, Any], name: str) -> Optional[str]:
    values = _values(attributes, name)
    return values[0] if values else None


def parse_role_mappings(raw: Optional[str]) -> Dict[str, str]:
    if not raw:
        return {}
    try:
        mappings = json.loads(raw)
    except ValueError:
        logger.error("Group role mappings are not valid JSON; ignoring them")
        return {}
    return {str(k): str(v) for k, v in mappings.items()} if isinstance(mappings, dict) else {}


class LdapService:
    """Directory authentication, search, synchronisation and configuration."""

    def __init__(
        self,
        db: Session,
        encryption: Optional[EncryptionService] = None,
        connection_factory: Optional[ConnectionFactory] = None,
    ):
        self.db = db
        self.encryption = encryption or get_encryption_service()
        self.connection_factory = connection_factory or default_connection_factory

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    async def _run(self, config: LdapConfiguration, func, *args):
        """Run a blocking directory operation with the configured deadline."""
        timeout = (config.connection_timeout or 30) + (config.search_timeout or 30)
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, config, *args), timeout)
        except asyncio.TimeoutError:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"directory {config.host} timed out after {timeout}s")
        except LDAPException as e:
            raise AuthError(AuthErrorKind.UPSTREAM_UNAVAILABLE, f"directory {config.host}: {e}")

    def _attributes(self, config: LdapConfiguration) -> List[str]:
        names = [
            config.email_attribute,
            config.first_name_attribute,
            config.last_name_attribute,
            config.display_name_attribute,
            config.group_membership_attribute,
            "sAMAccountName",
            "uid",
        ]
        return [n for n in dict.fromkeys(names) if n]

    def _service_connection(self, config: LdapConfiguration) -> Connection:
        password = self.encryption.decrypt_optional(config.bind_password)
        conn = self.connection_factory(config, config.bind_dn or None, password)
        if not conn.bind():
            description = conn.result.get("description") if conn.result else None
            conn.unbind()
            raise AuthError(AuthErrorKind.CONFIGURATION_INVALID, f"service account bind failed: {description}")
        return conn

    @staticmethod
    def _entries(conn: Connection) -> List[dict]:
        return [e for e in (conn.response or []) if e.get("type") == "searchResEntry"]

    def map_entry(self, config: LdapConfiguration, entry: dict, username: Optional[str] = None) -> LdapUser:
        attributes = entry.get("attributes") or {}
        email = _first(attributes, config.email_attribute)
        if not email and username and "@" in username:
            email = username
        return LdapUser(
            dn=entry.get("dn", ""),
            username=username or _first(attributes, "sAMAccountName") or _first(attributes, "uid"),
            email=email.lower() if email else None,
            first_name=_first(attributes, config.first_name_attribute) or "",
            last_name=_first(attributes, config.last_name_attribute) or "",
            display_name=_first(attributes, config.display_name_attribute),
            groups=[leaf_cn(g) for g in _values(attributes, config.group_membership_attribute)],
        )

    def to_identity(self, config: LdapConfiguration, ldap_user: LdapUser) -> NormalizedIdentity:
        mappings = {k.lower(): v for k, v in parse_role_mappings(config.group_role_mappings).items()}
        roles = [mappings[g.lower()] for g in ldap_user.groups if g.lower() in mappings]
        return NormalizedIdentity(
            email=ldap_user.email or "",
            first_name=ldap_user.first_name,
            last_name=ldap_user.last_name,
            display_name=ldap_user.display_name,
            groups=tuple(ldap_user.groups),
            roles=tuple(dict.fromkeys(roles)),
            external_id=ldap_user.dn,
            provider="ldap",
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def _authenticate_blocking(self, config: LdapConfiguration, username: str, password: str) -> LdapUser:
        if config.user_dn_pattern and not config.bind_dn:
            user_dn = config.user_dn_pattern.replace(USERNAME_PLACEHOLDER, escape_rdn(username))
        else:
            conn = self._service_connection(config)
            try:
                conn.search(
                    search_base=config.base_dn,
                    search_filter=build_filter(config.user_search_filter, username),
                    search_scope=SUBTREE,
                    attributes=self._attributes(config),
                    size_limit=1,
                    time_limit=config.search_timeout,
                )
                entries = self._entries(conn)
            finally:
                conn.unbind()
            if not entries:
                raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "no directory entry matched")
            user_dn = entries[0]["dn"]

        user_conn = self.connection_factory(config, user_dn, password)
        try:
            if not user_conn.bind():
                raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "user bind rejected")
            if config.user_dn_pattern and not config.bind_dn:
                user_conn.search(
                    search_base=user_dn,
                    search_filter="(objectClass=*)",
                    search_scope=BASE,
                    attributes=self._attributes(config),
                    time_limit=config.search_timeout,
                )
                found = self._entries(user_conn)
                entry = found[0] if found else {"dn": user_dn, "attributes": {}}
            else:
                entry = entries[0]
        finally:
            user_conn.unbind()

        return self.map_entry(config, entry, username)

    async def authenticate(self, config: LdapConfiguration, username: str, password: str) -> NormalizedIdentity:
        """
        Verify a username and password against the directory.

        Args:
            config: Tenant directory configuration
            username: Login name substituted into the user search filter
            password: Password checked by binding as the user's DN

        Returns:
            NormalizedIdentity for the directory entry

        Raises:
            AuthError: INVALID_CREDENTIAL, CONFIGURATION_INVALID or UPSTREAM_UNAVAILABLE
        """
        # An empty password turns a simple bind into an anonymous one
        if not username or not password:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "empty username or password")

        ldap_user = await self._run(config, self._authenticate_blocking, username, password)
        if not ldap_user.email:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, f"directory entry {ldap_user.dn} has no email")
        return self.to_identity(config, ldap_user)

    async def login(self, tenant_id: str, username: str, password: str, client_ip: Optional[str] = None) -> AuthenticationResult:
        """Authenticate against the tenant's directory and issue a session."""
        config = self.get_configuration(tenant_id)
        if config is None or not config.is_enabled:
            return AuthenticationResult.failure(AuthErrorKind.CONFIGURATION_MISSING)

        try:
            identity = await self.authenticate(config, username, password)
        except AuthError as e:
            log = logger.error if e.kind in (AuthErrorKind.CONFIGURATION_INVALID, AuthErrorKind.UPSTREAM_UNAVAILABLE) else logger.warning
            log(f"LDAP login failed for tenant {tenant_id}: {e.detail}")
            AuditService(self.db).log_action(
                user_id=None,
                user_email=username,
                action=audit.LOGIN_FAILED,
                tenant_id=tenant_id,
                auth_method="ldap",
                success=False,
                failure_reason=e.kind.value,
                user_ip=client_ip,
            )
            return AuthenticationResult.from_error(e)

        config.last_successful_auth = utcnow()
        return AuthService(self.db).sign_in_identity(
            identity,
            tenant_id,
            auto_provision=config.auto_provision_users,
            default_role=config.default_role or settings.SSO_DEFAULT_ROLE,
            auth_method="ldap",
            client_ip=client_ip,
        )

    # ------------------------------------------------------------------
    # Search and synchronisation
    # ------------------------------------------------------------------

    def _search_blocking(self, config: LdapConfiguration, search_term: str, max_results: int) -> List[LdapUser]:
        conn = self._service_connection(config)
        try:
            conn.search(
                search_base=config.base_dn,
                search_filter=build_filter(config.user_search_filter, search_term or "*", allow_wildcard=True),
                search_scope=SUBTREE,
                attributes=self._attributes(config),
                size_limit=max_results,
                time_limit=config.search_timeout,
            )
            entries = self._entries(conn)[:max_results]
        finally:
            conn.unbind()
        return [self.map_entry(config, e) for e in entries]

    async def search_users(self, config: LdapConfiguration, search_term: str = "*", max_results: int = 100) -> List[LdapUser]:
        """Search the directory. '*' in the search term is kept as a wildcard."""
        return await self._run(config, self._search_blocking, search_term, max_results)

    async def search(self, tenant_id: str, search_term: str = "*", max_results: int = 100) -> LdapSearchResult:
        config = self.get_configuration(tenant_id)
        if config is None:
            return LdapSearchResult.failure(AuthErrorKind.CONFIGURATION_MISSING)
        try:
            users = await self.search_users(config, search_term, max_results)
        except AuthError as e:
            logger.error(f"LDAP search failed for tenant {tenant_id}: {e.detail}")
            return LdapSearchResult.from_error(e)
        return LdapSearchResult(success=True, users=users)

    async def synchronize_users(self, tenant_id: str) -> LdapSyncResult:
        """
        Pull directory users into the tenant. Existing users (matched by email)
        get their names refreshed; missing users are created only when
        auto-provisioning is on.
        """
        config = self.get_configuration(tenant_id)
        if config is None or not config.is_enabled:
            return LdapSyncResult.failure(AuthErrorKind.CONFIGURATION_MISSING)

        try:
            ldap_users = await self.search_users(config, "*", settings.LDAP_SYNC_MAX_RESULTS)
        except AuthError as e:
            logger.error(f"LDAP synchronisation failed for tenant {tenant_id}: {e.detail}")
            return LdapSyncResult.from_error(e)

        provisioner = IdentityProvisioner(self.db)
        result = LdapSyncResult(success=True, processed=len(ldap_users))
        default_role = config.default_role or settings.SSO_DEFAULT_ROLE

        for ldap_user in ldap_users:
            if not ldap_user.email:
                result.skipped += 1
                continue
            try:
                user, created = provisioner.upsert(
                    self.to_identity(config, ldap_user), tenant_id, config.auto_provision_users, default_role
                )
            except AuthError as e:
                result.skipped += 1
                result.errors.append(f"{ldap_user.dn}: {e.kind.value}")
                continue
            if user is None:
                result.skipped += 1
            elif created:
                result.created += 1
            else:
                result.updated += 1

        config.last_synchronized = utcnow()
        self.db.commit()

        AuditService(self.db).log_action(
            user_id=None,
            user_email=None,
            action=audit.LDAP_SYNC,
            resource_type="LDAP_CONFIGURATION",
            resource_id=config.id,
            tenant_id=tenant_id,
            auth_method="ldap",
            success=True,
        )
        logger.info(
            f"LDAP sync for tenant {tenant_id}: {result.created} created, "
            f"{result.updated} updated, {result.skipped} skipped"
        )
        result.message = "Synchronization completed"
        return result

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def check_structure(self, config: LdapConfiguration) -> ValidationResult:
        errors: List[str] = []
        warnings: List[str] = []

        if not (config.host or "").strip():
            errors.append("Host is required")
        if not config.port or not 1 <= config.port <= 65535:
            errors.append("Port must be between 1 and 65535")
        if not (config.base_dn or "").strip():
            errors.append("Base DN is required")
        if not (config.user_search_filter or "").strip():
            errors.append("User search filter is required")
        elif USERNAME_PLACEHOLDER not in config.user_search_filter:
            errors.append("User search filter must contain the {0} placeholder")
        if not config.connection_timeout or config.connection_timeout <= 0:
            errors.append("Connection timeout must be positive")
        elif config.connection_timeout > 300:
            warnings.append("Connection timeout is unusually long")
        if not config.search_timeout or config.search_timeout <= 0:
            errors.append("Search timeout must be positive")
        elif config.search_timeout > 300:
            warnings.append("Search timeout is unusually long")
        if config.use_ssl and config.use_start_tls:
            warnings.append("Both SSL and StartTLS are enabled; SSL will be used")
        if not config.use_ssl and not config.use_start_tls:
            warnings.append("Connection is not encrypted")
        if config.bind_dn and not config.bind_password:
            warnings.append("Bind DN is set without a bind password")
        if config.group_role_mappings and not parse_role_mappings(config.group_role_mappings):
            errors.append("Group role mappings must be a JSON object")

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def _test_search_blocking(self, config: LdapConfiguration) -> int:
        conn = self._service_connection(config)
        try:
            conn.search(
                search_base=config.base_dn,
                search_filter="(objectClass=*)",
                search_scope=BASE,
                attributes=[],
                time_limit=config.search_timeout,
            )
            return len(self._entries(conn))
        finally:
            conn.unbind()

    async def test_connection(self, config: LdapConfiguration) -> ValidationResult:
        """Structural checks followed by a live bind and base-DN search."""
        result = self.check_structure(config)
        if not result.is_valid:
            return result
        try:
            found = await self._run(config, self._test_search_blocking)
        except AuthError as e:
            logger.error(f"LDAP connection test failed for {config.host}: {e.detail}")
            result.errors.append(e.detail)
            result.is_valid = False
            return result
        if not found:
            result.errors.append(f"Base DN {config.base_dn} was not found")
            result.is_valid = False
        return result

    async def validate_configuration(self, tenant_id: str) -> ValidationResult:
        """Test the tenant's configuration and persist the outcome."""
        config = self.get_configuration(tenant_id)
        if config is None:
            return ValidationResult(is_valid=False, errors=["LDAP is not configured for this tenant"])

        result = await self.test_connection(config)
        config.is_valid = result.is_valid
        config.validation_error = "; ".join(result.errors) or None
        config.last_validated = utcnow()
        self.db.commit()
        return result

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_configuration(self, tenant_id: str) -> Optional[LdapConfiguration]:
        return self.db.query(LdapConfiguration).filter(LdapConfiguration.tenant_id == tenant_id).first()

    def save_configuration(self, tenant_id: str, request: LdapConfigurationRequest) -> LdapConfiguration:
        """Create or update the tenant's configuration. The bind password is stored encrypted."""
        config = self.get_configuration(tenant_id)
        if config is None:
            config = LdapConfiguration(tenant_id=tenant_id)
            self.db.add(config)

        data = request.model_dump(exclude={"bind_password", "group_role_mappings"})
        for field, value in data.items():
            setattr(config, field, value)
        config.group_role_mappings = json.dumps(request.group_role_mappings) if request.group_role_mappings else None
        if request.bind_password is not None:
            config.bind_password = self.encryption.encrypt_optional(request.bind_password)

        # Stale until validated again
        config.is_valid = False
        config.validation_error = None
        config.last_validated = None
        self.db.commit()
        self.db.refresh(config)
        logger.info(f"LDAP configuration saved for tenant {tenant_id}")
        return config

    @staticmethod
    def to_response(config: LdapConfiguration) -> LdapConfigurationResponse:
        return LdapConfigurationResponse(
            id=config.id,
            tenant_id=config.tenant_id,
            host=config.host,
            port=config.port,
            use_ssl=config.use_ssl,
            use_start_tls=config.use_start_tls,
            base_dn=config.base_dn,
            bind_dn=config.bind_dn,
            has_bind_password=bool(config.bind_password),
            user_search_filter=config.user_search_filter,
            group_search_filter=config.group_search_filter,
            email_attribute=config.email_attribute,
            first_name_attribute=config.first_name_attribute,
            last_name_attribute=config.last_name_attribute,
            display_name_attribute=config.display_name_attribute,
            group_membership_attribute=config.group_membership_attribute,
            is_enabled=config.is_enabled,
            is_required=config.is_required,
            auto_provision_users=config.auto_provision_users,
            default_role=config.default_role,
            group_role_mappings=parse_role_mappings(config.group_role_mappings),
            connection_timeout=config.connection_timeout,
            search_timeout=config.search_timeout,
            is_valid=config.is_valid,
            validation_error=config.validation_error,
            last_validated=config.last_validated,
            last_synchronized=config.last_synchronized,
            last_successful_auth=config.last_successful_auth,
        )

"""Resolve federated identities to local user records."""

from typing import Iterable, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.user import User, UserStatus
from app.models.user_role import UserRole
from app.schemas.identity import NormalizedIdentity
from app.services.errors import AuthError, AuthErrorKind
from app.utils.timezone import utcnow

logger = logging.getLogger(__name__)


class IdentityProvisioner:
    """Find-or-create local users for identities asserted by LDAP, SAML, OAuth or OIDC.

    Changes are flushed, not committed; the caller owns the transaction.
    """

    def __init__(self, db: Session):
        self.db = db

    def find(self, email: str, tenant_id: str) -> Optional[User]:
        return (
            self.db.query(User)
            .filter(User.tenant_id == tenant_id, func.lower(User.email) == email.strip().lower())
            .first()
        )

    def resolve(
        self,
        identity: NormalizedIdentity,
        tenant_id: str,
        auto_provision: bool,
        default_role: Optional[str] = None,
    ) -> User:
        """
        Return the local user for an identity, creating it when allowed.

        Raises:
            AuthError: INVALID_CREDENTIAL when there is no local user and
                auto-provisioning is off, or the identity has no usable email
        """
        user, _ = self.upsert(identity, tenant_id, auto_provision, default_role)
        if user is None:
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL,
                f"no local account for {identity.provider} identity and auto-provisioning is disabled",
            )
        return user

    def upsert(
        self,
        identity: NormalizedIdentity,
        tenant_id: str,
        auto_provision: bool,
        default_role: Optional[str] = None,
    ) -> Tuple[Optional[User], bool]:
        """Returns (user, created). user is None when absent and not provisioned."""
        email = (identity.email or "").strip().lower()
        if "@" not in email:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "identity has no email address")

        user = self.find(email, tenant_id)
        if user is not None:
            self._refresh_profile(user, identity)
            self._grant_roles(user, identity.roles)
            self.db.flush()
            return user, False

        if not auto_provision:
            return None, False

        user = User(
            tenant_id=tenant_id,
            email=email,
            first_name=identity.first_name or "",
            last_name=identity.last_name or "",
            display_name=identity.display_name,
            status=UserStatus.ACTIVE.value,
            email_confirmed=True,
            auth_provider=identity.provider,
            external_auth_id=identity.external_id,
        )
        roles = [default_role] if default_role else []
        roles.extend(identity.roles)

        try:
            # Savepoint: a conflict undoes this insert only, not the caller's earlier work
            with self.db.begin_nested():
                self.db.add(user)
                self._grant_roles(user, roles)
        except IntegrityError:
            # Another request provisioned the same account first
            logger.info(f"Concurrent provisioning detected for tenant {tenant_id}; reloading user")
            user = self.find(email, tenant_id)
            if user is None:
                raise
            self._refresh_profile(user, identity)
            self.db.flush()
            return user, False

        logger.info(f"Provisioned {identity.provider} user {user.id} in tenant {tenant_id}")
        return user, True

    def _refresh_profile(self, user: User, identity: NormalizedIdentity):
        """Sync name fields. Status and confirmation flags are never downgraded."""
        if identity.first_name:
            user.first_name = identity.first_name
        if identity.last_name:
            user.last_name = identity.last_name
        if identity.display_name:
            user.display_name = identity.display_name
        if identity.external_id and not user.external_auth_id:
            user.external_auth_id = identity.external_id
        user.updated_at = utcnow()

    def _grant_roles(self, user: User, roles: Iterable[str]):
        existing = {r.role for r in user.roles}
        for role in roles:
            if role and role not in existing:
                user.roles.append(UserRole(role=role))
                existing.add(role)

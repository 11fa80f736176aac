"""Tests for resolving federated identities to local users."""

import pytest

from app.models.user import User, UserStatus
from app.schemas.identity import NormalizedIdentity
from app.services.errors import AuthError, AuthErrorKind
from app.services.provisioning_service import IdentityProvisioner
from tests.conftest import TENANT_ID


def identity(**fields):
    values = dict(
        email="Fed.User@Example.com",
        first_name="Fed",
        last_name="User",
        external_id="subject-9",
        provider="oidc",
    )
    values.update(fields)
    return NormalizedIdentity(**values)


class TestProvisioning:
    """Find-or-create semantics."""

    def test_creates_user_with_default_role(self, db):
        user, created = IdentityProvisioner(db).upsert(identity(), TENANT_ID, True, "User")
        db.commit()

        assert created is True
        assert user.email == "fed.user@example.com"
        assert user.status == UserStatus.ACTIVE.value
        assert user.email_confirmed is True
        assert user.hashed_password is None
        assert user.auth_provider == "oidc"
        assert user.external_auth_id == "subject-9"
        assert user.role_names == ["User"]

    def test_asserted_roles_are_granted(self, db):
        user = IdentityProvisioner(db).resolve(identity(roles=("Reviewer",)), TENANT_ID, True, "User")
        assert user.role_names == ["Reviewer", "User"]

    def test_existing_user_is_matched_case_insensitively(self, db, make_user):
        existing = make_user(email="fed.user@example.com", first_name="Old")
        user, created = IdentityProvisioner(db).upsert(identity(), TENANT_ID, True, "User")

        assert created is False
        assert user.id == existing.id
        assert user.first_name == "Fed"
        assert db.query(User).count() == 1

    def test_existing_status_is_not_upgraded(self, db, make_user):
        make_user(email="fed.user@example.com", status=UserStatus.INACTIVE.value)
        user = IdentityProvisioner(db).resolve(identity(), TENANT_ID, True, "User")
        assert user.status == UserStatus.INACTIVE.value

    def test_existing_external_id_is_kept(self, db, make_user):
        make_user(email="fed.user@example.com", external_auth_id="cn=fed,dc=example,dc=com")
        user = IdentityProvisioner(db).resolve(identity(), TENANT_ID, True, None)
        assert user.external_auth_id == "cn=fed,dc=example,dc=com"

    def test_users_are_scoped_by_tenant(self, db, make_user):
        make_user(email="fed.user@example.com", tenant_id="tenant-2")
        user, created = IdentityProvisioner(db).upsert(identity(), TENANT_ID, True, None)
        assert created is True
        assert user.tenant_id == TENANT_ID

    def test_no_provisioning(self, db):
        user, created = IdentityProvisioner(db).upsert(identity(), TENANT_ID, False)
        assert user is None
        assert created is False

        with pytest.raises(AuthError) as exc:
            IdentityProvisioner(db).resolve(identity(), TENANT_ID, False)
        assert exc.value.kind == AuthErrorKind.INVALID_CREDENTIAL

    def test_identity_without_email(self, db):
        with pytest.raises(AuthError) as exc:
            IdentityProvisioner(db).resolve(identity(email="not-an-email"), TENANT_ID, True)
        assert exc.value.kind == AuthErrorKind.INVALID_CREDENTIAL

"""Tests for TOTP enrolment, verification, backup codes and recovery."""

import pytest
from datetime import datetime, timedelta

import pyotp

from app.models.mfa_backup_code import MfaBackupCode
from app.services.errors import AuthErrorKind
from app.services.mfa_service import (
    MfaService,
    backup_code_matches,
    generate_backup_code,
    hash_backup_code,
    verify_totp,
)
from app.utils.timezone import utcnow
from tests.conftest import PASSWORD


def enrol(db, user):
    """Run setup and confirm it. Returns (secret, backup_codes)."""
    service = MfaService(db)
    setup = service.setup(user.id)
    assert service.verify_setup(user.id, pyotp.TOTP(setup.secret).now()).success
    db.refresh(user)
    return setup.secret, setup.backup_codes


class TestTotp:
    """RFC 6238 codes with one step of skew either side."""

    def setup_method(self):
        self.secret = pyotp.random_base32(32)
        self.totp = pyotp.TOTP(self.secret)
        self.now = datetime(2026, 1, 1, 12, 0, 0)

    def test_current_code(self):
        assert verify_totp(self.secret, self.totp.at(self.now), for_time=self.now)

    def test_adjacent_steps_are_accepted(self):
        assert verify_totp(self.secret, self.totp.at(self.now - timedelta(seconds=30)), for_time=self.now)
        assert verify_totp(self.secret, self.totp.at(self.now + timedelta(seconds=30)), for_time=self.now)

    def test_codes_outside_window_are_rejected(self):
        assert not verify_totp(self.secret, self.totp.at(self.now - timedelta(seconds=90)), for_time=self.now)
        assert not verify_totp(self.secret, self.totp.at(self.now + timedelta(seconds=90)), for_time=self.now)

    def test_malformed_codes(self):
        assert not verify_totp(self.secret, "", for_time=self.now)
        assert not verify_totp(self.secret, "12345", for_time=self.now)
        assert not verify_totp(self.secret, "abcdef", for_time=self.now)


class TestBackupCodeHashing:
    """Backup codes are stored as salted hashes."""

    def test_generated_codes_are_eight_digits(self):
        code = generate_backup_code()
        assert len(code) == 8
        assert code.isdigit()

    def test_same_code_hashes_differently(self):
        assert hash_backup_code("12345678") != hash_backup_code("12345678")

    def test_matches(self):
        stored = hash_backup_code("12345678")
        assert backup_code_matches("12345678", stored)
        assert not backup_code_matches("87654321", stored)


class TestMfaSetup:
    """Enrolment flow."""

    def test_setup_returns_enrolment_material(self, db, user):
        result = MfaService(db).setup(user.id)

        assert result.success is True
        assert len(result.secret) == 32
        assert result.provisioning_uri.startswith("otpauth://totp/")
        assert result.qr_code.startswith("data:image/svg+xml;base64,")
        assert len(result.backup_codes) == 8
        assert len(set(result.backup_codes)) == 8

        db.refresh(user)
        assert user.mfa_enabled is False
        assert user.mfa_secret and user.mfa_secret != result.secret

    def test_backup_codes_are_not_stored_in_clear(self, db, user):
        result = MfaService(db).setup(user.id)
        stored = [c.code_hash for c in db.query(MfaBackupCode).filter_by(user_id=user.id)]
        assert len(stored) == 8
        assert not set(result.backup_codes) & set(stored)

    def test_verify_setup_enables_mfa(self, db, user):
        enrol(db, user)
        assert user.mfa_enabled is True
        assert user.mfa_enabled_at is not None

    def test_verify_setup_with_wrong_code(self, db, user):
        service = MfaService(db)
        setup = service.setup(user.id)
        wrong = "000000" if pyotp.TOTP(setup.secret).now() != "000000" else "111111"

        result = service.verify_setup(user.id, wrong)
        assert result.error == AuthErrorKind.INVALID_MFA_CODE
        db.refresh(user)
        assert user.mfa_enabled is False

    def test_setup_for_unknown_user(self, db):
        assert MfaService(db).setup("missing").error == AuthErrorKind.NOT_FOUND


class TestMfaVerification:
    """TOTP and backup codes at login."""

    def test_totp_code(self, db, user):
        secret, _ = enrol(db, user)
        assert MfaService(db).verify(user, pyotp.TOTP(secret).now())

    def test_backup_code_works_once(self, db, user):
        _, codes = enrol(db, user)
        service = MfaService(db)

        assert service.verify(user, codes[0], "10.0.0.1") is True
        db.commit()
        assert service.verify(user, codes[0], "10.0.0.1") is False
        assert service.verify(user, codes[1]) is True

        used = db.query(MfaBackupCode).filter_by(user_id=user.id, is_used=True).all()
        assert len(used) == 2
        assert {u.used_from_ip for u in used} == {"10.0.0.1", None}

    def test_disabled_mfa_never_verifies(self, db, user):
        setup = MfaService(db).setup(user.id)
        assert MfaService(db).verify(user, pyotp.TOTP(setup.secret).now()) is False

    def test_regenerate_replaces_whole_set(self, db, user):
        _, old_codes = enrol(db, user)
        service = MfaService(db)

        result = service.regenerate_backup_codes(user.id)
        assert result.success is True
        assert len(result.backup_codes) == 8
        assert service.verify_backup_code(user, old_codes[0]) is False
        assert service.verify_backup_code(user, result.backup_codes[0]) is True

    def test_regenerate_requires_enabled_mfa(self, db, user):
        result = MfaService(db).regenerate_backup_codes(user.id)
        assert result.error == AuthErrorKind.CONFIGURATION_MISSING

    def test_status(self, db, user):
        _, codes = enrol(db, user)
        service = MfaService(db)
        service.verify_backup_code(user, codes[0])
        db.commit()

        status = service.get_status(user.id)
        assert status.mfa_enabled is True
        assert status.backup_codes_remaining == 7
        assert service.is_mfa_enabled(user.id) is True


class TestMfaDisableAndRecovery:
    """Turning MFA off."""

    async def test_disable_requires_password(self, db, user):
        enrol(db, user)
        result = await MfaService(db).disable(user.id, "Wrong-Password-1")
        assert result.error == AuthErrorKind.INVALID_CREDENTIAL
        db.refresh(user)
        assert user.mfa_enabled is True

    async def test_disable_clears_secret_and_codes(self, db, user):
        enrol(db, user)
        result = await MfaService(db).disable(user.id, PASSWORD)

        assert result.success is True
        db.refresh(user)
        assert user.mfa_enabled is False
        assert user.mfa_secret is None
        assert db.query(MfaBackupCode).filter_by(user_id=user.id).count() == 0

    def test_recovery(self, db, user):
        enrol(db, user)
        service = MfaService(db)

        initiated = service.initiate_recovery(user.email, user.tenant_id)
        assert initiated.recovery_token

        result = service.complete_recovery(initiated.recovery_token)
        assert result.success is True
        db.refresh(user)
        assert user.mfa_enabled is False
        assert user.mfa_recovery_token_hash is None

    def test_recovery_for_unknown_account_is_generic(self, db, user):
        service = MfaService(db)
        unknown = service.initiate_recovery("nobody@example.com", user.tenant_id)
        no_mfa = service.initiate_recovery(user.email, user.tenant_id)
        assert unknown.recovery_token is None
        assert no_mfa.recovery_token is None
        assert unknown.message == no_mfa.message

    def test_expired_recovery_token(self, db, user):
        enrol(db, user)
        service = MfaService(db)
        token = service.initiate_recovery(user.email, user.tenant_id).recovery_token
        user.mfa_recovery_token_expires_at = utcnow() - timedelta(seconds=1)
        db.commit()

        assert service.complete_recovery(token).error == AuthErrorKind.TOKEN_EXPIRED

    def test_recovery_targets_the_requested_tenant(self, db, make_user):
        first = make_user(email="shared@example.com", tenant_id="tenant-a")
        second = make_user(email="shared@example.com", tenant_id="tenant-b")
        enrol(db, first)
        enrol(db, second)

        token = MfaService(db).initiate_recovery("shared@example.com", "tenant-b").recovery_token

        db.refresh(first)
        db.refresh(second)
        assert token
        assert second.mfa_recovery_token_hash is not None
        assert first.mfa_recovery_token_hash is None

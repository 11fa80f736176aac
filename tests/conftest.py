"""Pytest configuration and fixtures."""

import os

# Settings are read at import time
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-signing-key-0123456789abcdef0123456789")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.database import Base, get_db
from app.models.user import User, UserStatus
from app.models.user_role import UserRole
from app.services.password_service import hash_password
from app.services.token_service import get_token_service


# Create test database
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

TENANT_ID = "tenant-1"
PASSWORD = "Correct-Horse-42"


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db):
    """Create a test client with overridden database dependency."""
    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    """Factory for persisted users. Password defaults to PASSWORD; pass None for a federated account."""
    def _make_user(
        email="user@example.com",
        password=PASSWORD,
        roles=("User",),
        tenant_id=TENANT_ID,
        status=UserStatus.ACTIVE.value,
        email_confirmed=True,
        **fields,
    ):
        user = User(
            tenant_id=tenant_id,
            email=email.lower(),
            first_name=fields.pop("first_name", "Test"),
            last_name=fields.pop("last_name", "User"),
            status=status,
            email_confirmed=email_confirmed,
            hashed_password=hash_password(password) if password else None,
            **fields,
        )
        db.add(user)
        db.flush()
        for role in roles:
            db.add(UserRole(user_id=user.id, role=role))
        db.commit()
        db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def user(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", roles=("Admin", "User"))


@pytest.fixture
def auth_headers(user):
    """Bearer headers for the default user."""
    token, _ = get_token_service().issue_access_token(user)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(admin):
    """Bearer headers for a tenant administrator."""
    token, _ = get_token_service().issue_access_token(admin)
    return {"Authorization": f"Bearer {token}"}


def make_certificate(common_name="idp.example.com", days=365):
    """Self-signed RSA certificate. Returns (private key, key PEM, certificate PEM)."""
    from datetime import datetime, timedelta, timezone

    from cryptography import x509
    from cryptography.hazmat.primitives import hashes, serialization
    from cryptography.hazmat.primitives.asymmetric import rsa
    from cryptography.x509.oid import NameOID

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.now(timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key, key_pem, cert_pem


@pytest.fixture(scope="session")
def idp_certificate():
    return make_certificate()


@pytest.fixture(scope="session")
def other_certificate():
    return make_certificate("attacker.example.com")

"""Seed script to create a tenant administrator with a local password.

The administrator can then configure LDAP and SSO for the tenant.
"""

import sys
import os
import argparse
import getpass

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.config import settings
from app.database import SessionLocal, init_db
from app.models.user import User, UserStatus
from app.models.user_role import UserRole
from app.services.password_service import evaluate_strength, hash_password


def seed_admin(tenant_id: str, email: str, password: str):
    """Create or update the administrator account."""
    strength = evaluate_strength(password)
    if not strength.is_valid:
        print("ERROR: Password does not meet policy:")
        for message in strength.messages:
            print(f"  - {message}")
        sys.exit(1)

    init_db()
    db = SessionLocal()
    email = email.strip().lower()

    try:
        user = db.query(User).filter(User.tenant_id == tenant_id, User.email == email).first()
        if user:
            user.hashed_password = hash_password(password)
            user.failed_login_attempts = 0
            user.account_locked_until = None
            action = "UPDATED"
        else:
            user = User(
                tenant_id=tenant_id,
                email=email,
                first_name="Tenant",
                last_name="Administrator",
                status=UserStatus.ACTIVE.value,
                email_confirmed=True,
                hashed_password=hash_password(password),
            )
            db.add(user)
            db.flush()
            action = "CREATED"

        if settings.ADMIN_ROLE not in user.role_names:
            db.add(UserRole(user_id=user.id, role=settings.ADMIN_ROLE))
        db.commit()

        print("=" * 70)
        print(f"ADMIN ACCOUNT {action}")
        print("=" * 70)
        print(f"Tenant:   {tenant_id}")
        print(f"Email:    {email}")
        print(f"Role:     {settings.ADMIN_ROLE}")
        print(f"User ID:  {user.id}")
        print("=" * 70)

    except Exception as e:
        print(f"ERROR: Failed to create admin account: {e}")
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Create a tenant administrator")
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    parser.add_argument("--email", required=True, help="Administrator email")
    args = parser.parse_args()

    seed_admin(args.tenant, args.email, getpass.getpass("Password: "))

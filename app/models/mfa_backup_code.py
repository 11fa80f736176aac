"""One-time MFA backup codes."""

import uuid

from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class MfaBackupCode(Base):
    """Single-use fallback credential stored as a salted SHA-256 hash."""

    __tablename__ = "mfa_backup_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    code_hash = Column(String(100), nullable=False)  # "<salt>$<sha256 hex>"
    is_used = Column(Boolean, nullable=False, default=False)
    used_at = Column(DateTime, nullable=True)
    used_from_ip = Column(String(200), nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    user = relationship("User", back_populates="backup_codes")

    __table_args__ = (
        Index("idx_mfa_backup_codes_user", "user_id", "is_used"),
    )

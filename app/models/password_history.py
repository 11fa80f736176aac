"""Previous password hashes retained to prevent reuse."""

import uuid

from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship
from app.database import Base
from app.utils.timezone import utcnow


class PasswordHistoryEntry(Base):
    """One previous password hash. Only the most recent N per user are kept."""

    __tablename__ = "password_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    password_hash = Column(String(255), nullable=False)
    # Set in Python so entries written in one transaction still order correctly
    created_at = Column(DateTime, nullable=False, default=utcnow)

    user = relationship("User", back_populates="password_history")

    __table_args__ = (
        Index("idx_password_history_user_created", "user_id", "created_at"),
    )

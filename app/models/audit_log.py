"""Audit log model for authentication events."""

from sqlalchemy import Column, String, DateTime, Boolean, Integer, Text, Index
from sqlalchemy.sql import func
from app.database import Base


class AuditLog(Base):
    """Audit trail entry for an authentication or account-security action."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    timestamp = Column(DateTime, server_default=func.now())

    # User information
    user_id = Column(String(100), nullable=False)
    user_email = Column(String(255), nullable=False)
    tenant_id = Column(String(36), nullable=True)
    user_ip = Column(String(50), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # Action details
    action = Column(String(50), nullable=False)
    resource_type = Column(String(50), nullable=False)
    resource_id = Column(String(100), nullable=True)
    auth_method = Column(String(20), nullable=True)

    # Request details
    request_body = Column(Text, nullable=True)  # Sanitized

    # Results
    success = Column(Boolean, nullable=False)
    failure_reason = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_audit_timestamp", "timestamp"),
        Index("idx_audit_user_id", "user_id"),
        Index("idx_audit_action", "action"),
    )

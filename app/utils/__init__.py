"""Utility modules for the application."""

from app.utils.timezone import utcnow, from_timestamp

__all__ = ["utcnow", "from_timestamp"]

"""Business logic services for the identity service."""

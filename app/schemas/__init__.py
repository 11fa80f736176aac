"""Pydantic request and result schemas."""

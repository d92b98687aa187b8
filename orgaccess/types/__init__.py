"""Pydantic models shared across the engine."""

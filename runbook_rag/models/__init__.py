"""Frozen pydantic models shared across the pipeline, stores and API."""

"""Business logic: embedding, ingestion, retrieval and request telemetry."""

"""runbook-rag: ingestion and hybrid retrieval for incident runbooks."""

__version__ = "0.1.0"

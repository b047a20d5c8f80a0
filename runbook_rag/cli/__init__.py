"""Command-line tools for the runbook corpus (``runbook-rag`` / ``python -m runbook_rag.cli``)."""

"""Allow ``python -m runbook_rag.cli`` execution."""

from runbook_rag.cli.ingest import main

main()

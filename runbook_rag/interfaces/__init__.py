"""Abstract provider contracts.

Services depend on these ABCs only; concrete adapters live under
``runbook_rag.providers`` and are chosen in ``runbook_rag.factory``.
"""

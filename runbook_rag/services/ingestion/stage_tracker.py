"""Accumulates per-stage elapsed time and counters.

A tracker is created per file and per request.  Stage timings are the main
diagnostic surface for a batch ingestion, so elapsed time is recorded even
when the stage raises.
"""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from runbook_rag.models.pipeline import StageTiming


@dataclass
class _StageRecord:
    """Mutable accumulator; never exposed outside the tracker."""

    ms: float = 0.0
    counts: dict[str, int] = field(default_factory=dict)


class StageTracker:
    """Collects ``stage -> {ms, counts}`` in first-seen order."""

    def __init__(self) -> None:
        self._records: dict[str, _StageRecord] = {}

    @contextmanager
    def measure(self, stage: str) -> Iterator[dict[str, int]]:
        """Time the enclosed block and yield a dict for stage counters.

        Example::

            with tracker.measure("chunk") as counts:
                chunks = chunker.chunk(text)
                counts["chunks"] = len(chunks)
        """
        counts: dict[str, int] = {}
        started = time.perf_counter()
        try:
            yield counts
        finally:
            self.add(stage, (time.perf_counter() - started) * 1000, counts)

    def add(self, stage: str, ms: float, counts: dict[str, int] | None = None) -> None:
        record = self._records.setdefault(stage, _StageRecord())
        record.ms += ms
        for key, value in (counts or {}).items():
            record.counts[key] = record.counts.get(key, 0) + value

    def merge(self, other: StageTracker) -> None:
        """Add every stage of *other* into this tracker."""
        for stage, record in other._records.items():
            self.add(stage, record.ms, record.counts)

    def elapsed_ms(self, stage: str) -> float:
        record = self._records.get(stage)
        return record.ms if record else 0.0

    def counts(self, stage: str) -> dict[str, int]:
        record = self._records.get(stage)
        return dict(record.counts) if record else {}

    def snapshot(self) -> dict[str, StageTiming]:
        return {
            stage: StageTiming(ms=round(record.ms, 2), counts=dict(record.counts))
            for stage, record in self._records.items()
        }

    def payload(self) -> dict[str, Any]:
        """Plain-dict form for JSON columns and error responses."""
        return {stage: timing.model_dump() for stage, timing in self.snapshot().items()}

"""Unit tests for StageTracker timing and counter accumulation."""

from __future__ import annotations

import pytest

from runbook_rag.services.ingestion.stage_tracker import StageTracker


def test_measure_records_time_and_counts() -> None:
    tracker = StageTracker()

    with tracker.measure("chunk") as counts:
        counts["chunks"] = 4

    assert tracker.elapsed_ms("chunk") >= 0.0
    assert tracker.counts("chunk") == {"chunks": 4}


def test_time_is_recorded_when_the_stage_raises() -> None:
    tracker = StageTracker()

    with pytest.raises(ValueError):
        with tracker.measure("extract") as counts:
            counts["bytes"] = 10
            raise ValueError("bad pdf")

    assert "extract" in tracker.snapshot()
    assert tracker.counts("extract") == {"bytes": 10}


def test_repeated_stages_accumulate() -> None:
    tracker = StageTracker()
    tracker.add("embed", 10.0, {"vectors": 3})
    tracker.add("embed", 5.0, {"vectors": 2})

    assert tracker.elapsed_ms("embed") == 15.0
    assert tracker.counts("embed") == {"vectors": 5}


def test_merge_sums_other_tracker() -> None:
    request = StageTracker()
    request.add("validate", 1.0)
    per_file = StageTracker()
    per_file.add("embed", 7.5, {"vectors": 2})

    request.merge(per_file)
    request.merge(per_file)

    assert list(request.snapshot()) == ["validate", "embed"]
    assert request.elapsed_ms("embed") == 15.0
    assert request.counts("embed") == {"vectors": 4}


def test_unknown_stage_reads_as_empty() -> None:
    tracker = StageTracker()
    assert tracker.elapsed_ms("persist") == 0.0
    assert tracker.counts("persist") == {}


def test_payload_is_plain_dicts() -> None:
    tracker = StageTracker()
    tracker.add("persist", 3.456, {"rows": 2})

    assert tracker.payload() == {"persist": {"ms": 3.46, "counts": {"rows": 2}}}

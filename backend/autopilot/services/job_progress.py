"""
Progress accounting shared by batch generation and automated publishing.

Both progress models carry `total`, `failed`, `processing`, `percentage`,
`current_stage` and `estimated_time_remaining`; the success counter is
`completed` for batches and `published` for publishing jobs.

Invariant kept by every helper: success + failed <= total, processing >= 0.
"""
from __future__ import annotations

from typing import Any

MINUTES_PER_ITEM = 2


def round_percent(done: int, total: int) -> int:
    """Half-up rounding of done/total as a percentage."""
    if total <= 0:
        return 100
    return int(done * 100 / total + 0.5)


def time_remaining(remaining: int) -> str:
    return f"{remaining * MINUTES_PER_ITEM} minutes" if remaining > 0 else ""


def done_count(progress: Any, success_attr: str) -> int:
    return getattr(progress, success_attr) + progress.failed


def mark_started(progress: Any) -> None:
    progress.processing += 1


def release_processing(progress: Any) -> None:
    progress.processing = max(0, progress.processing - 1)


def refresh(progress: Any, success_attr: str) -> None:
    done = done_count(progress, success_attr)
    progress.percentage = round_percent(done, progress.total)
    progress.estimated_time_remaining = time_remaining(progress.total - done)


def record_outcome(progress: Any, *, success: bool, success_attr: str, was_processing: bool) -> bool:
    """Count one finished item. Returns True once every item is accounted for.

    Callers must only invoke this for items that are not yet terminal.
    """
    if done_count(progress, success_attr) >= progress.total:
        raise ValueError("progress already complete")
    if was_processing:
        release_processing(progress)
    if success:
        setattr(progress, success_attr, getattr(progress, success_attr) + 1)
    else:
        progress.failed += 1
    refresh(progress, success_attr)
    return done_count(progress, success_attr) >= progress.total

"""
Score statistics over time windows.

Buckets are fixed-width windows walked from the start of a window to its
end. Only completed records count, and empty buckets are skipped rather
than zero-filled, so a chart shows gaps where nothing was recorded.

Everything here is a pure function of the record mapping; callers
recompute on every snapshot instead of caching.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta

from app.schemas.feedback import FeedbackRecord, StatBucket

HOURLY_WIDTH = timedelta(hours=1)
HOURLY_WINDOW = timedelta(hours=24)
DAILY_WIDTH = timedelta(days=1)
DAILY_WINDOW = timedelta(days=7)
WEEKLY_WIDTH = timedelta(weeks=1)
WEEKLY_WINDOW = timedelta(days=28)


@dataclass(frozen=True)
class TrailingStats:
    """The three chart series shown on the profile screen."""
    hourly: list[StatBucket]
    daily: list[StatBucket]
    weekly: list[StatBucket]


def aggregate(
    records: Mapping[str, FeedbackRecord],
    window_start: datetime,
    window_end: datetime,
    bucket_width: timedelta,
) -> list[StatBucket]:
    """Average completed scores per bucket between window_start and window_end.

    The cursor starts at window_start and keeps stepping by bucket_width
    while it is still <= window_end, so the last bucket may reach past
    window_end. Each bucket covers [cursor, cursor + bucket_width).

    Raises:
        ValueError: If bucket_width is not positive.
    """
    if bucket_width <= timedelta(0):
        raise ValueError("bucket_width must be positive")

    completed = [r for r in records.values() if r.is_completed]
    buckets: list[StatBucket] = []
    cursor = window_start

    while cursor <= window_end:
        next_cursor = cursor + bucket_width
        scores = [r.score for r in completed if cursor <= r.created_at < next_cursor]

        if scores:
            buckets.append(StatBucket(
                bucket_start=cursor,
                average_score=sum(scores) / len(scores),
                count=len(scores),
            ))

        cursor = next_cursor

    return buckets


def trailing_stats(records: Mapping[str, FeedbackRecord], now: datetime) -> TrailingStats:
    """Hourly over the last 24 hours, daily over 7 days, weekly over 28 days."""
    return TrailingStats(
        hourly=aggregate(records, now - HOURLY_WINDOW, now, HOURLY_WIDTH),
        daily=aggregate(records, now - DAILY_WINDOW, now, DAILY_WIDTH),
        weekly=aggregate(records, now - WEEKLY_WINDOW, now, WEEKLY_WIDTH),
    )

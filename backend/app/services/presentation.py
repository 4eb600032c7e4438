"""
List views over a feedback mapping: period filters, sorting, pagination.

These are stateless transforms recomputed on demand from the current
snapshot. Nothing is cached between calls.
"""

import calendar
import math
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Generic, TypeVar

from app.schemas.feedback import FeedbackRecord, PeriodSummary

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 5


class TimePeriod(str, Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


class SortOption(str, Enum):
    DATE = "date"
    SCORE = "score"


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    page: int
    total_pages: int
    total: int


def _months_before(moment: datetime, months: int) -> datetime:
    """Same wall-clock time `months` calendar months earlier.

    The day is clamped to the target month's length (Mar 31 -> Feb 28).
    """
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def period_start(period: TimePeriod, now: datetime) -> datetime:
    """Earliest created_at still inside `period`, relative to now."""
    if period == TimePeriod.DAY:
        return now - timedelta(hours=24)
    if period == TimePeriod.WEEK:
        return now - timedelta(days=7)
    if period == TimePeriod.MONTH:
        return _months_before(now, 1)
    return _months_before(now, 12)


def filter_by_period(
    records: Iterable[FeedbackRecord],
    period: TimePeriod,
    now: datetime,
) -> list[FeedbackRecord]:
    start = period_start(period, now)
    return [r for r in records if r.created_at >= start]


def sort_records(records: Iterable[FeedbackRecord], option: SortOption) -> list[FeedbackRecord]:
    """Newest first for DATE, highest first for SCORE."""
    if option == SortOption.SCORE:
        return sorted(records, key=lambda r: r.score, reverse=True)
    return sorted(records, key=lambda r: r.created_at, reverse=True)


def paginate(items: Sequence[T], page: int, page_size: int = DEFAULT_PAGE_SIZE) -> Page[T]:
    """Slice one page out of items.

    total_pages is ceil(len(items) / page_size). The requested page is
    clamped into [1, total_pages]; an empty list yields page 1 of 0.

    Raises:
        ValueError: If page_size is not positive.
    """
    if page_size <= 0:
        raise ValueError("page_size must be positive")

    total = len(items)
    total_pages = math.ceil(total / page_size)
    page = max(1, min(page, total_pages))

    start = (page - 1) * page_size
    return Page(
        items=list(items[start:start + page_size]),
        page=page,
        total_pages=total_pages,
        total=total,
    )


def summarize_period(
    records: Mapping[str, FeedbackRecord],
    period: TimePeriod,
    now: datetime,
) -> PeriodSummary:
    """Record count for the period and the mean score of its completed records."""
    in_period = filter_by_period(records.values(), period, now)
    completed = [r.score for r in in_period if r.is_completed]
    average = sum(completed) / len(completed) if completed else 0.0
    return PeriodSummary(count=len(in_period), average_score=average)

"""
Billing query validation, ordering and pagination.

Read path for billed sessions and usage entries. Requests are validated
before any data is read; totals are always computed over the full
filtered set, never just the returned page.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

from .errors import InvalidArgumentError
from usage_ledger.storage.models import Usage, WorkspaceInstanceUsage

T = TypeVar("T")

MAX_QUERY_RANGE = timedelta(days=31)


class Ordering(Enum):
    """Result ordering by start or effective time."""
    DESCENDING = 0
    ASCENDING = 1


@dataclass(frozen=True)
class PaginatedRequest:
    per_page: int
    page: int

    def __post_init__(self):
        if self.per_page < 1:
            raise InvalidArgumentError(f"per_page must be >= 1, got {self.per_page}")
        if self.page < 1:
            raise InvalidArgumentError(f"page must be >= 1, got {self.page}")


@dataclass(frozen=True)
class PaginatedResponse:
    per_page: int
    total_pages: int
    total: int
    page: int


@dataclass
class Page(Generic[T]):
    items: List[T]
    pagination: PaginatedResponse


@dataclass
class BilledUsagePage:
    sessions: List[WorkspaceInstanceUsage] = field(default_factory=list)
    total_credits_used: float = 0.0
    pagination: Optional[PaginatedResponse] = None


def validate_time_range(from_: datetime, to: datetime) -> None:
    """Check a query range is ordered and spans at most 31 days.

    Raises:
        InvalidArgumentError: If the range is invalid
    """
    if from_ > to:
        raise InvalidArgumentError(f"Maximum range exceeded: from ({from_}) is after to ({to})")
    if to - from_ > MAX_QUERY_RANGE:
        raise InvalidArgumentError(
            f"Maximum range exceeded: range of {to - from_} is longer than {MAX_QUERY_RANGE.days} days"
        )


def paginate(items: Sequence[T], pagination: Optional[PaginatedRequest]) -> Page[T]:
    """Slice out the requested page.

    Without pagination the result is a single page holding everything. A
    page past the last one is empty, not an error.
    """
    total = len(items)
    if pagination is None:
        return Page(
            items=list(items),
            pagination=PaginatedResponse(
                per_page=total,
                total_pages=1 if total else 0,
                total=total,
                page=1,
            ),
        )

    start = (pagination.page - 1) * pagination.per_page
    return Page(
        items=list(items[start:start + pagination.per_page]),
        pagination=PaginatedResponse(
            per_page=pagination.per_page,
            total_pages=math.ceil(total / pagination.per_page),
            total=total,
            page=pagination.page,
        ),
    )


def _ordered(items: Sequence[T], key: Callable[[T], datetime], order: Ordering) -> List[T]:
    ascending = sorted(items, key=key)
    if order == Ordering.DESCENDING:
        # Exact mirror of ascending, ties included
        ascending.reverse()
    return ascending


def list_billed_sessions(
    sessions: Sequence[WorkspaceInstanceUsage],
    order: Ordering = Ordering.DESCENDING,
    pagination: Optional[PaginatedRequest] = None,
) -> BilledUsagePage:
    """Order and page billed sessions by start time, totalling all credits."""
    ordered = _ordered(sessions, lambda s: s.started_at, order)
    page = paginate(ordered, pagination)
    return BilledUsagePage(
        sessions=page.items,
        total_credits_used=sum(s.credits_used for s in ordered),
        pagination=page.pagination,
    )


def list_usage_entries(
    entries: Sequence[Usage],
    order: Ordering = Ordering.DESCENDING,
    pagination: Optional[PaginatedRequest] = None,
) -> Page[Usage]:
    """Order and page usage entries by effective time."""
    return paginate(_ordered(entries, lambda u: u.effective_time, order), pagination)

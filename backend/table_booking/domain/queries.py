"""
Query value objects: store filters, listing options and the page envelope.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Generic, Optional, TypeVar

from table_booking.domain.reservation import ReservationStatus

T = TypeVar("T")

MAX_PAGE_SIZE = 100

SORTABLE_FIELDS = frozenset({
    "arrival_time",
    "created_at",
    "updated_at",
    "table_size",
    "guest_name",
    "status",
})


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class ReservationFilter:
    """Conjunctive filter understood by every ReservationStore.

    `arrival_from` and `arrival_to` are inclusive; `arrival_before` is exclusive
    and is used for half-open day windows.
    """

    user_id: Optional[int] = None
    statuses: Optional[frozenset[ReservationStatus]] = None
    search: Optional[str] = None
    arrival_from: Optional[datetime] = None
    arrival_to: Optional[datetime] = None
    arrival_before: Optional[datetime] = None
    exclude_id: Optional[int] = None


@dataclass(frozen=True)
class SortSpec:
    field: str = "arrival_time"
    order: SortOrder = SortOrder.DESC


@dataclass
class ListOptions:
    page: int = 1
    limit: int = 10
    status: Optional[str] = None
    sort_by: str = "arrival_time"
    sort_order: str = "desc"


@dataclass
class AdminFilters:
    status: Optional[str] = None
    user_id: Optional[int] = None
    search: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class Page(Generic[T]):
    items: list[T]
    page: int
    limit: int
    total: int
    total_pages: int = field(init=False)
    has_next_page: bool = field(init=False)
    has_prev_page: bool = field(init=False)

    def __post_init__(self):
        self.total_pages = math.ceil(self.total / self.limit) if self.limit else 0
        self.has_next_page = self.page < self.total_pages
        self.has_prev_page = self.page > 1

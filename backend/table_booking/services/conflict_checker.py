"""
Double-booking detection.

A user may not hold two active reservations whose arrival times are within
CONFLICT_WINDOW of each other. Bounds are inclusive: arrivals exactly two
hours apart conflict.

`ensure_no_conflict` is the early read the service makes before writing.
Stores re-count the same window inside the write itself (see
`ReservationStore.insert` and `atomic_update`) and raise `conflict_error`.
"""

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from table_booking.core.exceptions import SchedulingConflict
from table_booking.core.logging import get_logger
from table_booking.core.metrics import scheduling_conflicts
from table_booking.domain.queries import ReservationFilter
from table_booking.domain.reservation import ACTIVE_STATUSES, CONFLICT_WINDOW

if TYPE_CHECKING:
    from table_booking.services.interfaces.reservation_store import ReservationStore

logger = get_logger(__name__)


def conflict_error(window: ReservationFilter) -> SchedulingConflict:
    """Count and log a conflict found in `window`, returning the error to raise."""
    scheduling_conflicts.inc()
    logger.warning(
        "scheduling_conflict",
        user_id=window.user_id,
        arrival_time=(window.arrival_from + CONFLICT_WINDOW).isoformat(),
        excluded_reservation_id=window.exclude_id,
    )
    return SchedulingConflict("arrival_time")


class ConflictChecker:
    def __init__(self, store: "ReservationStore"):
        self.store = store

    def window_filter(
        self,
        user_id: int,
        candidate_arrival_time: datetime,
        exclude_reservation_id: Optional[int] = None,
    ) -> ReservationFilter:
        return ReservationFilter(
            user_id=user_id,
            statuses=ACTIVE_STATUSES,
            arrival_from=candidate_arrival_time - CONFLICT_WINDOW,
            arrival_to=candidate_arrival_time + CONFLICT_WINDOW,
            exclude_id=exclude_reservation_id,
        )

    async def has_conflict(
        self,
        user_id: int,
        candidate_arrival_time: datetime,
        exclude_reservation_id: Optional[int] = None,
    ) -> bool:
        window = self.window_filter(user_id, candidate_arrival_time, exclude_reservation_id)
        return await self.store.count(window) > 0

    async def ensure_no_conflict(
        self,
        user_id: int,
        candidate_arrival_time: datetime,
        exclude_reservation_id: Optional[int] = None,
    ) -> None:
        window = self.window_filter(user_id, candidate_arrival_time, exclude_reservation_id)
        if await self.store.count(window) > 0:
            raise conflict_error(window)

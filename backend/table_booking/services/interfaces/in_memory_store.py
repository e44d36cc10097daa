"""
In-memory reservation store.
Single-process only; state is lost on restart.
"""

import asyncio
import copy
import itertools
from collections import defaultdict
from contextlib import AsyncExitStack
from typing import Optional

from table_booking.core.exceptions import ConcurrentModification, NotFound
from table_booking.domain.queries import ReservationFilter, SortOrder, SortSpec
from table_booking.domain.reservation import Reservation, ReservationStatus
from table_booking.services.audit_trail import ensure_append_only
from table_booking.services.conflict_checker import conflict_error
from table_booking.services.interfaces.reservation_store import Mutation, ReservationStore


def matches(reservation: Reservation, filter: ReservationFilter) -> bool:
    if filter.user_id is not None and reservation.user_id != filter.user_id:
        return False
    if filter.statuses is not None and reservation.status not in filter.statuses:
        return False
    if filter.exclude_id is not None and reservation.id == filter.exclude_id:
        return False
    if filter.arrival_from is not None and reservation.arrival_time < filter.arrival_from:
        return False
    if filter.arrival_to is not None and reservation.arrival_time > filter.arrival_to:
        return False
    if filter.arrival_before is not None and reservation.arrival_time >= filter.arrival_before:
        return False
    if filter.search:
        term = filter.search.lower()
        if term not in reservation.guest_name.lower() and term not in reservation.email.lower():
            return False
    return True


class InMemoryReservationStore(ReservationStore):
    """
    Dict-backed store.

    Every atomic_update holds a per-id asyncio.Lock for the whole
    read-modify-write, so two status changes on one reservation are applied
    one after the other while different ids never wait on each other.

    Writes that carry a conflict window also hold the owner's lock (taken
    before the id lock) while they count the window and write, so one user's
    bookings are checked against each other one at a time.
    """

    name = "memory"

    def __init__(self):
        self._rows: dict[int, Reservation] = {}
        self._ids = itertools.count(1)
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._user_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def insert(
        self,
        reservation: Reservation,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        async with AsyncExitStack() as stack:
            if conflict_window is not None:
                await stack.enter_async_context(self._user_locks[conflict_window.user_id])
                await self._ensure_window_clear(conflict_window)

            stored = copy.deepcopy(reservation)
            stored.id = next(self._ids)
            stored.version = 1
            self._rows[stored.id] = stored
            return copy.deepcopy(stored)

    async def find_by_id(self, reservation_id: int) -> Optional[Reservation]:
        stored = self._rows.get(reservation_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def find_many(
        self,
        filter: ReservationFilter,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[Reservation]:
        rows = [r for r in self._rows.values() if matches(r, filter)]
        # id as tiebreaker keeps paging stable
        rows.sort(
            key=lambda r: (_sort_value(r, sort.field), r.id),
            reverse=sort.order == SortOrder.DESC,
        )
        end = None if limit is None else skip + limit
        return [copy.deepcopy(r) for r in rows[skip:end]]

    async def count(self, filter: ReservationFilter) -> int:
        return sum(1 for r in self._rows.values() if matches(r, filter))

    async def atomic_update(
        self,
        reservation_id: int,
        mutate: Mutation,
        expected_status: Optional[ReservationStatus] = None,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        async with AsyncExitStack() as stack:
            if conflict_window is not None:
                await stack.enter_async_context(self._user_locks[conflict_window.user_id])
            await stack.enter_async_context(self._locks[reservation_id])

            current = self._rows.get(reservation_id)
            if current is None:
                raise NotFound(reservation_id)
            if expected_status is not None and current.status != expected_status:
                raise ConcurrentModification(reservation_id)
            if conflict_window is not None:
                await self._ensure_window_clear(conflict_window)

            updated = mutate(copy.deepcopy(current))
            ensure_append_only(current, updated)

            updated.id = reservation_id
            updated.created_at = current.created_at
            updated.version = current.version + 1
            self._rows[reservation_id] = updated
            return copy.deepcopy(updated)

    async def _ensure_window_clear(self, window: ReservationFilter) -> None:
        if await self.count(window) > 0:
            raise conflict_error(window)


def _sort_value(reservation: Reservation, field: str):
    value = getattr(reservation, field)
    if isinstance(value, ReservationStatus):
        return value.value
    if isinstance(value, str):
        return value.lower()
    return value

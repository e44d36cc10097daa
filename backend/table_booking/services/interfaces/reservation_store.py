"""
Reservation store interface.
Allows swapping persistence engines without changing lifecycle logic.
"""

from abc import ABC, abstractmethod
from typing import Callable, Optional

from table_booking.domain.queries import ReservationFilter, SortSpec
from table_booking.domain.reservation import Reservation, ReservationStatus

Mutation = Callable[[Reservation], Reservation]


class ReservationStore(ABC):
    """
    Persistence abstraction for reservations and their status history.

    Implementations:
    - InMemoryReservationStore: per-id asyncio.Lock around read-modify-write,
      per-user lock around conflict re-checks
    - SqlReservationStore: conditional UPDATE on version and status, with retry;
      per-user advisory lock on PostgreSQL

    Stores return detached copies; mutating a returned Reservation never
    changes stored state. Driver failures are raised as StoreUnavailable.
    """

    name: str = "abstract"

    @abstractmethod
    async def insert(
        self,
        reservation: Reservation,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        """
        Persist a new reservation with its initial history. Returns it with `id` assigned.

        With `conflict_window`, the window is counted and the row inserted while
        holding the window owner's lock; any match raises SchedulingConflict.
        """

    @abstractmethod
    async def find_by_id(self, reservation_id: int) -> Optional[Reservation]:
        """Return the reservation with its full history, or None."""

    @abstractmethod
    async def find_many(
        self,
        filter: ReservationFilter,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[Reservation]:
        """Return matching reservations, sorted, after skipping `skip` rows."""

    @abstractmethod
    async def count(self, filter: ReservationFilter) -> int:
        """Count matching reservations."""

    @abstractmethod
    async def atomic_update(
        self,
        reservation_id: int,
        mutate: Mutation,
        expected_status: Optional[ReservationStatus] = None,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        """
        Apply `mutate` to a fresh copy of the reservation and persist the result
        atomically, appending any new history entries.

        `conflict_window` is re-counted under the owner's lock before the write,
        the same way `insert` does it.

        Raises:
            NotFound: unknown id
            ConcurrentModification: stored status differs from `expected_status`
            SchedulingConflict: another active reservation falls in `conflict_window`
            Any ReservationError raised by `mutate` (nothing is written)
        """

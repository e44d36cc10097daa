"""
SQLAlchemy-backed reservation store.

CONCURRENCY STRATEGY: Optimistic Locking with Retry
====================================================

Problem:
  An admin completes a reservation while its owner cancels it. Both read
  status=Approved, both pass the state machine, both write.
  Result: Two terminal states and a history that disagrees with itself.

Solution:
  1. Read the reservation with its history and current `version`
  2. Run the caller's mutation on a detached copy
  3. UPDATE reservations SET ..., version = version + 1
     WHERE id = :id AND version = :version AND status = :status
  4. INSERT only the newly appended history rows, then COMMIT
  5. If rows_affected == 0, someone else wrote first -> re-read and retry

  If the caller passed `expected_status` and the fresh read shows another
  status, the caller's decision is stale: raise ConcurrentModification
  instead of retrying. Version-only conflicts (a concurrent field edit) are
  retried with the mutation re-applied to the fresh row.

  (reservation_id, position) is unique in the history table, so even a
  misbehaving writer cannot append two entries into the same slot.

Double booking:
  Writes that carry a conflict window first take the owner's lock, then
  count the window inside the same transaction. On PostgreSQL the lock is
  pg_advisory_xact_lock(user_id), held until COMMIT or ROLLBACK, so it also
  serializes writers in other processes. Other dialects fall back to a
  process-local asyncio.Lock per user.
"""

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from table_booking.core.exceptions import ConcurrentModification, NotFound, StoreUnavailable
from table_booking.core.logging import get_logger
from table_booking.core.metrics import record_store_operation, store_errors
from table_booking.domain.queries import ReservationFilter, SortOrder, SortSpec
from table_booking.domain.reservation import Reservation, ReservationStatus, StatusHistoryEntry
from table_booking.models.reservation import ReservationRecord, StatusHistoryRecord
from table_booking.services.audit_trail import ensure_append_only
from table_booking.services.conflict_checker import conflict_error
from table_booking.services.interfaces.reservation_store import Mutation, ReservationStore

logger = get_logger(__name__)

MAX_RETRY_ATTEMPTS = 3


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def to_domain(record: ReservationRecord) -> Reservation:
    return Reservation(
        id=record.id,
        user_id=record.user_id,
        guest_name=record.guest_name,
        phone_number=record.phone_number,
        email=record.email,
        arrival_time=_as_utc(record.arrival_time),
        table_size=record.table_size,
        status=ReservationStatus(record.status),
        special_requests=record.special_requests,
        cancellation_reason=record.cancellation_reason,
        status_history=[
            StatusHistoryEntry(
                status=ReservationStatus(entry.status),
                changed_at=_as_utc(entry.changed_at),
                reason=entry.reason,
                changed_by=entry.changed_by,
            )
            for entry in record.history
        ],
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
        version=record.version,
    )


def _history_record(entry: StatusHistoryEntry, position: int) -> StatusHistoryRecord:
    return StatusHistoryRecord(
        position=position,
        status=entry.status.value,
        reason=entry.reason,
        changed_at=_as_utc(entry.changed_at),
        changed_by=entry.changed_by,
    )


def _conditions(filter: ReservationFilter) -> list:
    conditions = []
    if filter.user_id is not None:
        conditions.append(ReservationRecord.user_id == filter.user_id)
    if filter.statuses is not None:
        conditions.append(ReservationRecord.status.in_([s.value for s in filter.statuses]))
    if filter.exclude_id is not None:
        conditions.append(ReservationRecord.id != filter.exclude_id)
    if filter.arrival_from is not None:
        conditions.append(ReservationRecord.arrival_time >= _as_utc(filter.arrival_from))
    if filter.arrival_to is not None:
        conditions.append(ReservationRecord.arrival_time <= _as_utc(filter.arrival_to))
    if filter.arrival_before is not None:
        conditions.append(ReservationRecord.arrival_time < _as_utc(filter.arrival_before))
    if filter.search:
        pattern = f"%{_escape_like(filter.search)}%"
        conditions.append(or_(
            ReservationRecord.guest_name.ilike(pattern, escape="\\"),
            ReservationRecord.email.ilike(pattern, escape="\\"),
        ))
    return conditions


class SqlReservationStore(ReservationStore):
    name = "sql"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self._user_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    @contextmanager
    def _guard(self, operation: str):
        record_store_operation(operation)
        try:
            yield
        except (SQLAlchemyError, OSError) as exc:
            store_errors.labels(operation=operation).inc()
            logger.error("store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(operation) from exc

    @asynccontextmanager
    async def _owner_lock(self, session: AsyncSession, window: Optional[ReservationFilter]):
        if window is None:
            yield
        elif session.get_bind().dialect.name == "postgresql":
            await session.execute(select(func.pg_advisory_xact_lock(window.user_id)))
            yield
        else:
            async with self._user_locks[window.user_id]:
                yield

    async def _ensure_window_clear(self, session: AsyncSession, window: ReservationFilter) -> None:
        query = select(func.count(ReservationRecord.id)).where(*_conditions(window))
        if (await session.execute(query)).scalar_one() > 0:
            raise conflict_error(window)

    async def insert(
        self,
        reservation: Reservation,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        with self._guard("insert"):
            async with self._session_factory() as session, self._owner_lock(session, conflict_window):
                if conflict_window is not None:
                    await self._ensure_window_clear(session, conflict_window)

                record = ReservationRecord(
                    user_id=reservation.user_id,
                    guest_name=reservation.guest_name,
                    phone_number=reservation.phone_number,
                    email=reservation.email,
                    arrival_time=_as_utc(reservation.arrival_time),
                    table_size=reservation.table_size,
                    status=reservation.status.value,
                    special_requests=reservation.special_requests,
                    cancellation_reason=reservation.cancellation_reason,
                    created_at=_as_utc(reservation.created_at),
                    updated_at=_as_utc(reservation.updated_at),
                    version=1,
                )
                record.history = [
                    _history_record(entry, position)
                    for position, entry in enumerate(reservation.status_history)
                ]
                session.add(record)
                await session.commit()
                return to_domain(record)

    async def find_by_id(self, reservation_id: int) -> Optional[Reservation]:
        with self._guard("find"):
            async with self._session_factory() as session:
                record = await self._load(session, reservation_id)
                return to_domain(record) if record is not None else None

    async def find_many(
        self,
        filter: ReservationFilter,
        sort: SortSpec,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> list[Reservation]:
        column = getattr(ReservationRecord, sort.field)
        if sort.order == SortOrder.DESC:
            ordering = (column.desc(), ReservationRecord.id.desc())
        else:
            ordering = (column.asc(), ReservationRecord.id.asc())

        query = select(ReservationRecord).where(*_conditions(filter)).order_by(*ordering).offset(skip)
        if limit is not None:
            query = query.limit(limit)

        with self._guard("find"):
            async with self._session_factory() as session:
                result = await session.execute(query)
                return [to_domain(record) for record in result.scalars().all()]

    async def count(self, filter: ReservationFilter) -> int:
        query = select(func.count(ReservationRecord.id)).where(*_conditions(filter))
        with self._guard("count"):
            async with self._session_factory() as session:
                return (await session.execute(query)).scalar_one()

    async def atomic_update(
        self,
        reservation_id: int,
        mutate: Mutation,
        expected_status: Optional[ReservationStatus] = None,
        conflict_window: Optional[ReservationFilter] = None,
    ) -> Reservation:
        for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
            with self._guard("update"):
                async with self._session_factory() as session, self._owner_lock(session, conflict_window):
                    updated = await self._try_update(session, reservation_id, mutate, expected_status, conflict_window)
            if updated is not None:
                return updated

            record_store_operation("retry")
            logger.info(
                "store_retry",
                reservation_id=reservation_id,
                attempt=attempt,
                reason="version_conflict",
            )

        logger.warning("store_retries_exhausted", reservation_id=reservation_id, attempts=MAX_RETRY_ATTEMPTS)
        raise ConcurrentModification(reservation_id)

    async def _try_update(
        self,
        session: AsyncSession,
        reservation_id: int,
        mutate: Mutation,
        expected_status: Optional[ReservationStatus],
        conflict_window: Optional[ReservationFilter],
    ) -> Optional[Reservation]:
        """One read-modify-write attempt. Returns None when the version moved underneath it."""
        record = await self._load(session, reservation_id)
        if record is None:
            raise NotFound(reservation_id)

        current = to_domain(record)
        if expected_status is not None and current.status != expected_status:
            raise ConcurrentModification(reservation_id)
        if conflict_window is not None:
            await self._ensure_window_clear(session, conflict_window)

        updated = mutate(copy.deepcopy(current))
        ensure_append_only(current, updated)

        result = await session.execute(
            update(ReservationRecord)
            .where(
                ReservationRecord.id == reservation_id,
                ReservationRecord.version == current.version,
                ReservationRecord.status == current.status.value,
            )
            .values(
                guest_name=updated.guest_name,
                phone_number=updated.phone_number,
                email=updated.email,
                arrival_time=_as_utc(updated.arrival_time),
                table_size=updated.table_size,
                status=updated.status.value,
                special_requests=updated.special_requests,
                cancellation_reason=updated.cancellation_reason,
                updated_at=_as_utc(updated.updated_at),
                version=current.version + 1,
            )
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            # Version conflict - another transaction modified this reservation
            await session.rollback()
            return None

        start = len(current.status_history)
        for position, entry in enumerate(updated.status_history[start:], start=start):
            appended = _history_record(entry, position)
            appended.reservation_id = reservation_id
            session.add(appended)
        await session.commit()

        updated.id = reservation_id
        updated.created_at = current.created_at
        updated.version = current.version + 1
        return updated

    async def _load(self, session: AsyncSession, reservation_id: int) -> Optional[ReservationRecord]:
        result = await session.execute(select(ReservationRecord).where(ReservationRecord.id == reservation_id))
        return result.scalar_one_or_none()

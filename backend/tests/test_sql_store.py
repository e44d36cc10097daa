"""
Tests for the SQLAlchemy reservation store against a throwaway SQLite database.

Uses a file-backed database per test so every session gets its own
connection, the same way the pool hands them out in production.
"""

import asyncio
from datetime import timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import NOW, at, make_draft
from table_booking.core.exceptions import (
    AuditTrailViolation,
    ConcurrentModification,
    InvalidStateTransition,
    NotFound,
    SchedulingConflict,
    StoreUnavailable,
)
from table_booking.db.base import Base
from table_booking.domain.queries import ListOptions, ReservationFilter, SortOrder, SortSpec
from table_booking.domain.reservation import ReservationStatus
from table_booking.infrastructure.sql_reservation_store import MAX_RETRY_ATTEMPTS, SqlReservationStore
from table_booking.models.reservation import ReservationRecord, StatusHistoryRecord
from table_booking.services.reservation_service import ReservationLifecycleService


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reservations.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def sql_store(session_factory) -> SqlReservationStore:
    return SqlReservationStore(session_factory)


@pytest.fixture
def sql_service(sql_store) -> ReservationLifecycleService:
    return ReservationLifecycleService(sql_store, clock=lambda: NOW, tz=timezone.utc)


@pytest.mark.asyncio
async def test_insert_and_find(sql_service, sql_store, user):
    created = await sql_service.create_reservation(user, make_draft())

    found = await sql_store.find_by_id(created.id)

    assert found is not None
    assert found.guest_name == "Li Wei"
    assert found.arrival_time == at(1, 19)
    assert found.arrival_time.tzinfo is not None
    assert found.status == ReservationStatus.REQUESTED
    assert found.version == 1
    assert [e.status for e in found.status_history] == [ReservationStatus.REQUESTED]
    assert found.status_history[0].changed_by == user.id


@pytest.mark.asyncio
async def test_find_missing_returns_none(sql_store):
    assert await sql_store.find_by_id(12345) is None


@pytest.mark.asyncio
async def test_transitions_append_history_rows(sql_service, session_factory, user, admin):
    created = await sql_service.create_reservation(user, make_draft())

    await sql_service.update_reservation_status(admin, created.id, "Approved")
    cancelled = await sql_service.cancel_reservation(user, created.id, "guest sick")

    assert cancelled.version == 3
    assert cancelled.cancellation_reason == "guest sick"

    async with session_factory() as session:
        rows = (
            await session.execute(
                select(StatusHistoryRecord)
                .where(StatusHistoryRecord.reservation_id == created.id)
                .order_by(StatusHistoryRecord.position)
            )
        ).scalars().all()

    assert [(r.position, r.status, r.reason) for r in rows] == [
        (0, "Requested", None),
        (1, "Approved", None),
        (2, "Cancelled", "guest sick"),
    ]
    assert rows[1].changed_by == admin.id


@pytest.mark.asyncio
async def test_rejected_transition_writes_nothing(sql_service, sql_store, user, admin):
    created = await sql_service.create_reservation(user, make_draft())

    with pytest.raises(InvalidStateTransition):
        await sql_service.update_reservation_status(admin, created.id, "Completed")

    stored = await sql_store.find_by_id(created.id)
    assert stored.status == ReservationStatus.REQUESTED
    assert stored.version == 1
    assert len(stored.status_history) == 1


@pytest.mark.asyncio
async def test_stale_expected_status_is_concurrent_modification(sql_service, sql_store, user, admin):
    created = await sql_service.create_reservation(user, make_draft())
    await sql_service.update_reservation_status(admin, created.id, "Approved")

    with pytest.raises(ConcurrentModification):
        await sql_store.atomic_update(
            created.id,
            lambda r: r,
            expected_status=ReservationStatus.REQUESTED,
        )


@pytest.mark.asyncio
async def test_history_rewrite_is_refused(sql_service, sql_store, user):
    created = await sql_service.create_reservation(user, make_draft())

    def drop_history(reservation):
        reservation.status_history.clear()
        return reservation

    with pytest.raises(AuditTrailViolation):
        await sql_store.atomic_update(created.id, drop_history)

    stored = await sql_store.find_by_id(created.id)
    assert len(stored.status_history) == 1


@pytest.mark.asyncio
async def test_atomic_update_missing_reservation(sql_store):
    with pytest.raises(NotFound):
        await sql_store.atomic_update(999, lambda r: r)


@pytest.mark.asyncio
async def test_field_update_keeps_history(sql_service, sql_store, user):
    created = await sql_service.create_reservation(user, make_draft())

    updated = await sql_service.update_reservation(user, created.id, {"arrival_time": at(1, 20), "table_size": 2})

    stored = await sql_store.find_by_id(created.id)
    assert stored.arrival_time == at(1, 20)
    assert stored.table_size == 2
    assert stored.version == updated.version == 2
    assert len(stored.status_history) == 1


@pytest.mark.asyncio
async def test_conflict_check_uses_sql_window(sql_service, user, admin):
    created = await sql_service.create_reservation(user, make_draft())
    await sql_service.update_reservation_status(admin, created.id, "Approved")

    with pytest.raises(SchedulingConflict):
        await sql_service.create_reservation(user, make_draft(arrival_time=at(1, 21)))

    await sql_service.cancel_reservation(user, created.id, "changed plans")
    again = await sql_service.create_reservation(user, make_draft(arrival_time=at(1, 21)))
    assert again.status == ReservationStatus.REQUESTED


@pytest.mark.asyncio
async def test_find_many_filters_and_sorts(sql_service, sql_store, user, other_user):
    await sql_service.create_reservation(user, make_draft(guest_name="Li Wei", arrival_time=at(1, 19)))
    await sql_service.create_reservation(user, make_draft(guest_name="Li Na", arrival_time=at(3, 12)))
    await sql_service.create_reservation(
        other_user, make_draft(guest_name="Wang Fang", email="wf@example.com", arrival_time=at(2, 12))
    )

    by_name = await sql_store.find_many(
        ReservationFilter(search="LI"),
        SortSpec("arrival_time", SortOrder.ASC),
    )
    assert [r.guest_name for r in by_name] == ["Li Wei", "Li Na"]

    window = ReservationFilter(arrival_from=at(2, 0), arrival_before=at(3, 12))
    assert [r.guest_name for r in await sql_store.find_many(window, SortSpec())] == ["Wang Fang"]
    assert await sql_store.count(ReservationFilter(user_id=user.id)) == 2


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(sql_service, sql_store, user):
    await sql_service.create_reservation(user, make_draft(guest_name="Li Wei"))

    assert await sql_store.count(ReservationFilter(search="%")) == 0
    assert await sql_store.count(ReservationFilter(search="_")) == 0


@pytest.mark.asyncio
async def test_paginated_listing(sql_service, user):
    for day in range(1, 4):
        await sql_service.create_reservation(user, make_draft(arrival_time=at(day, 19)))

    page = await sql_service.list_reservations_for_user(user.id, ListOptions(page=1, limit=2))

    assert page.total == 3
    assert page.total_pages == 2
    assert [r.arrival_time for r in page.items] == [at(3, 19), at(2, 19)]


@pytest.mark.asyncio
async def test_unopenable_database_is_store_unavailable(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'reservations.db'}")
    store = SqlReservationStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    try:
        with pytest.raises(StoreUnavailable) as exc_info:
            await store.find_by_id(1)
    finally:
        await engine.dispose()

    assert exc_info.value.operation == "find"


class ContendedStore(SqlReservationStore):
    """Bumps the row's version from another session right after the first `contended_reads` reads."""

    def __init__(self, session_factory, contended_reads: int):
        super().__init__(session_factory)
        self.contended_reads = contended_reads
        self.loads = 0

    async def _load(self, session, reservation_id):
        record = await super()._load(session, reservation_id)
        if record is not None and self.loads < self.contended_reads:
            self.loads += 1
            async with self._session_factory() as other:
                await other.execute(
                    update(ReservationRecord)
                    .where(ReservationRecord.id == reservation_id)
                    .values(version=ReservationRecord.version + 1)
                )
                await other.commit()
        return record


def _resize(reservation):
    reservation.table_size = 2
    return reservation


@pytest.mark.asyncio
async def test_version_conflict_is_retried(sql_service, session_factory, user):
    created = await sql_service.create_reservation(user, make_draft())
    store = ContendedStore(session_factory, contended_reads=1)

    updated = await store.atomic_update(created.id, _resize)

    assert store.loads == 1
    assert updated.table_size == 2
    assert updated.version == 3

    stored = await store.find_by_id(created.id)
    assert stored.table_size == 2
    assert stored.version == 3


@pytest.mark.asyncio
async def test_retries_exhausted_is_concurrent_modification(sql_service, session_factory, user):
    created = await sql_service.create_reservation(user, make_draft())
    store = ContendedStore(session_factory, contended_reads=MAX_RETRY_ATTEMPTS)

    with pytest.raises(ConcurrentModification):
        await store.atomic_update(created.id, _resize)

    stored = await store.find_by_id(created.id)
    assert stored.table_size == created.table_size
    assert stored.version == 1 + MAX_RETRY_ATTEMPTS
    assert len(stored.status_history) == 1


@pytest.mark.asyncio
async def test_insert_rechecks_conflict_window(sql_service, sql_store, user):
    created = await sql_service.create_reservation(user, make_draft())
    window = sql_service.conflicts.window_filter(user.id, at(1, 20))

    with pytest.raises(SchedulingConflict):
        await sql_store.insert(created, conflict_window=window)

    assert await sql_store.count(ReservationFilter(user_id=user.id)) == 1


@pytest.mark.asyncio
async def test_update_rechecks_conflict_window(sql_service, sql_store, user):
    await sql_service.create_reservation(user, make_draft())
    lunch = await sql_service.create_reservation(user, make_draft(arrival_time=at(1, 12)))
    window = sql_service.conflicts.window_filter(user.id, at(1, 18), exclude_reservation_id=lunch.id)

    def move(reservation):
        reservation.arrival_time = at(1, 18)
        return reservation

    with pytest.raises(SchedulingConflict):
        await sql_store.atomic_update(lunch.id, move, conflict_window=window)

    stored = await sql_store.find_by_id(lunch.id)
    assert stored.arrival_time == at(1, 12)
    assert stored.version == 1


@pytest.mark.asyncio
async def test_concurrent_bookings_by_one_user_cannot_overlap(sql_service, sql_store, user):
    results = await asyncio.gather(
        sql_service.create_reservation(user, make_draft(arrival_time=at(2, 19))),
        sql_service.create_reservation(user, make_draft(arrival_time=at(2, 19, 30))),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], SchedulingConflict)
    assert await sql_store.count(ReservationFilter(user_id=user.id)) == 1

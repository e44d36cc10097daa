"""
Reservation lifecycle service: the single entry point REST routes and
GraphQL resolvers call into.

CONSISTENCY STRATEGY
====================

Every write is one `ReservationStore.atomic_update` (or one `insert`). The
mutation passed to the store re-runs the business checks against the fresh
snapshot it receives, so checks made on the earlier read are only a fast
path; the store's critical section is what actually serializes two
operations on the same reservation.

  - Status changes pass `expected_status`: if another request moved the
    reservation in between, the store raises ConcurrentModification and
    nothing is written.
  - Field edits re-check `can_edit` inside the mutation instead, so a
    concurrent approval does not reject an otherwise valid edit.
  - Writes that set an arrival time pass the user's conflict window. The
    store re-counts it while holding that user's lock, so two concurrent
    bookings for one user cannot both land inside the window.

Field rules live in the pydantic schemas (`ReservationFields`,
`ReservationFieldUpdates`) and surface as one ValidationFailure naming every
bad field.

Status only changes through `state_machine.transition`, which appends exactly
one audit entry per change; field edits never touch the history.

Every store call is bounded by STORE_TIMEOUT_SECONDS and surfaced as
StoreUnavailable on timeout. Nothing is retried here.
"""

import asyncio
import functools
import time
from dataclasses import asdict
from datetime import datetime, time as dt_time, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, Mapping, Optional, TypeVar, Union

from pydantic import BaseModel, ValidationError

from table_booking.core.config import get_settings
from table_booking.core.exceptions import (
    Forbidden,
    InvalidQuery,
    MissingReason,
    NotFound,
    ReservationError,
    StoreUnavailable,
    ValidationFailure,
)
from table_booking.core.logging import get_logger
from table_booking.core.metrics import record_operation, record_transition, store_errors, store_latency
from table_booking.domain.queries import (
    MAX_PAGE_SIZE,
    SORTABLE_FIELDS,
    AdminFilters,
    ListOptions,
    Page,
    ReservationFilter,
    SortOrder,
    SortSpec,
)
from table_booking.domain.reservation import (
    CLOSING_HOUR,
    OPENING_HOUR,
    Actor,
    Reservation,
    ReservationDraft,
    ReservationStatus,
)
from table_booking.schemas.reservation import ReservationFieldUpdates, ReservationFields, field_errors
from table_booking.services import audit_trail, state_machine
from table_booking.services.conflict_checker import ConflictChecker
from table_booking.services.interfaces.reservation_store import ReservationStore

logger = get_logger(__name__)

T = TypeVar("T")

EDITABLE_FIELDS = frozenset(ReservationFieldUpdates.model_fields)

USER_LIST_DEFAULT_LIMIT = 10
ADMIN_LIST_DEFAULT_LIMIT = 20


def instrumented(operation: str):
    """Count each call of a lifecycle operation by outcome."""

    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                result = await func(*args, **kwargs)
            except ReservationError as exc:
                record_operation(operation, exc.error_code)
                raise
            record_operation(operation)
            return result

        return wrapper

    return decorator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ReservationLifecycleService:
    def __init__(
        self,
        store: ReservationStore,
        clock: Optional[Callable[[], datetime]] = None,
        tz: Optional[tzinfo] = None,
        store_timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.store = store
        self.conflicts = ConflictChecker(store)
        self.clock = clock or _utc_now
        self.tz = tz or settings.restaurant_tz
        self.store_timeout = store_timeout if store_timeout is not None else settings.STORE_TIMEOUT_SECONDS

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    @instrumented("create")
    async def create_reservation(self, actor: Actor, draft: ReservationDraft) -> Reservation:
        now = self.clock()
        values = self._validated(ReservationFields, asdict(draft))
        self._check_arrival_window(values["arrival_time"], now)

        await self._store_call(
            "conflict_check",
            self.conflicts.ensure_no_conflict(actor.id, values["arrival_time"]),
        )
        window = self.conflicts.window_filter(actor.id, values["arrival_time"])

        reservation = Reservation(
            user_id=actor.id,
            created_at=now,
            updated_at=now,
            status=ReservationStatus.REQUESTED,
            status_history=[audit_trail.initial_entry(actor, now)],
            **values,
        )
        created = await self._store_call("insert", self.store.insert(reservation, conflict_window=window))

        logger.info(
            "reservation_created",
            reservation_id=created.id,
            user_id=actor.id,
            arrival_time=created.arrival_time.isoformat(),
            table_size=created.table_size,
        )
        return created

    @instrumented("update")
    async def update_reservation(
        self,
        actor: Actor,
        reservation_id: int,
        updates: Mapping[str, Any],
    ) -> Reservation:
        reservation = await self._get(reservation_id)

        if not reservation.is_owned_by(actor):
            logger.warning(
                "reservation_update_denied",
                reservation_id=reservation_id,
                actor_id=actor.id,
                owner_id=reservation.user_id,
            )
            raise Forbidden("You can only modify your own reservations")
        if not reservation.can_edit:
            raise Forbidden("Reservation state does not allow editing")

        changes = {key: value for key, value in updates.items() if key in EDITABLE_FIELDS}
        if not changes:
            return reservation

        now = self.clock()
        values = self._validated(ReservationFieldUpdates, changes)

        window = None
        new_arrival = values.get("arrival_time")
        if new_arrival is not None and new_arrival != reservation.arrival_time:
            self._check_arrival_window(new_arrival, now)
            await self._store_call(
                "conflict_check",
                self.conflicts.ensure_no_conflict(actor.id, new_arrival, exclude_reservation_id=reservation_id),
            )
            window = self.conflicts.window_filter(actor.id, new_arrival, exclude_reservation_id=reservation_id)

        def apply(fresh: Reservation) -> Reservation:
            if not fresh.can_edit:
                raise Forbidden("Reservation state does not allow editing")
            for name, value in values.items():
                setattr(fresh, name, value)
            fresh.updated_at = now
            return fresh

        updated = await self._store_call(
            "update",
            self.store.atomic_update(reservation_id, apply, conflict_window=window),
        )
        logger.info("reservation_updated", reservation_id=reservation_id, fields=sorted(values))
        return updated

    @instrumented("status")
    async def update_reservation_status(
        self,
        actor: Optional[Actor],
        reservation_id: int,
        status: Union[ReservationStatus, str],
        reason: Optional[str] = None,
    ) -> Reservation:
        """
        Administrative status change. Privilege is checked by the caller.

        `actor=None` is a system change (a scheduled job, an import): it is
        allowed and its history entry has `changed_by=None`.
        """
        target = self._parse_status(status, error=ValidationFailure)
        reservation = await self._get(reservation_id)
        return await self._transition(reservation, target, reason, actor)

    @instrumented("cancel")
    async def cancel_reservation(self, actor: Actor, reservation_id: int, reason: Optional[str]) -> Reservation:
        reservation = await self._get(reservation_id)

        if not reservation.is_owned_by(actor):
            logger.warning(
                "reservation_cancel_denied",
                reservation_id=reservation_id,
                actor_id=actor.id,
                owner_id=reservation.user_id,
            )
            raise Forbidden("You can only cancel your own reservations")
        if state_machine.normalize_reason(reason) is None:
            raise MissingReason()
        if not reservation.can_cancel:
            raise Forbidden("Reservation state does not allow cancelling")

        return await self._transition(reservation, ReservationStatus.CANCELLED, reason, actor)

    async def _transition(
        self,
        reservation: Reservation,
        target: ReservationStatus,
        reason: Optional[str],
        actor: Optional[Actor],
    ) -> Reservation:
        now = self.clock()

        def apply(fresh: Reservation) -> Reservation:
            return state_machine.transition(fresh, target, reason, actor, now)

        updated = await self._store_call(
            "update",
            self.store.atomic_update(reservation.id, apply, expected_status=reservation.status),
        )

        record_transition(reservation.status.value, target.value)
        logger.info(
            "reservation_status_changed",
            reservation_id=reservation.id,
            from_status=reservation.status.value,
            to_status=target.value,
            changed_by=actor.id if actor else None,
        )
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_reservation_by_id(self, reservation_id: int, actor: Optional[Actor] = None) -> Reservation:
        """Fetch one reservation. With an actor, non-admins may only read their own."""
        reservation = await self._get(reservation_id)
        if actor is not None and not actor.is_admin and not reservation.is_owned_by(actor):
            raise Forbidden("You can only view your own reservations")
        return reservation

    async def list_reservations_for_user(
        self,
        user_id: int,
        options: Optional[ListOptions] = None,
    ) -> Page[Reservation]:
        options = options or ListOptions(limit=USER_LIST_DEFAULT_LIMIT)
        statuses = self._status_set(options.status)
        return await self._page(ReservationFilter(user_id=user_id, statuses=statuses), options)

    async def list_all_reservations(
        self,
        filters: Optional[AdminFilters] = None,
        options: Optional[ListOptions] = None,
    ) -> Page[Reservation]:
        filters = filters or AdminFilters()
        options = options or ListOptions(limit=ADMIN_LIST_DEFAULT_LIMIT)

        start = self._localize(filters.start_date)
        end = self._localize(filters.end_date)
        if start is not None and end is not None and start > end:
            raise ValidationFailure({"start_date": "must not be after end_date"})

        query = ReservationFilter(
            user_id=filters.user_id,
            statuses=self._status_set(filters.status),
            search=filters.search.strip() if filters.search and filters.search.strip() else None,
            arrival_from=start,
            arrival_to=end,
        )
        return await self._page(query, options)

    async def list_today_reservations(self, status: Optional[str] = None) -> list[Reservation]:
        local_today = self.clock().astimezone(self.tz).date()
        start = datetime.combine(local_today, dt_time.min, tzinfo=self.tz)
        end = datetime.combine(local_today + timedelta(days=1), dt_time.min, tzinfo=self.tz)

        query = ReservationFilter(
            statuses=self._status_set(status),
            arrival_from=start.astimezone(timezone.utc),
            arrival_before=end.astimezone(timezone.utc),
        )
        return await self._store_call(
            "find",
            self.store.find_many(query, SortSpec("arrival_time", SortOrder.ASC)),
        )

    async def list_reservations_by_date_range(
        self,
        start: datetime,
        end: datetime,
        status: Optional[str] = None,
    ) -> list[Reservation]:
        start, end = self._localize(start), self._localize(end)
        if start > end:
            raise ValidationFailure({"start_date": "must not be after end_date"})

        query = ReservationFilter(statuses=self._status_set(status), arrival_from=start, arrival_to=end)
        return await self._store_call(
            "find",
            self.store.find_many(query, SortSpec("arrival_time", SortOrder.ASC)),
        )

    async def _get(self, reservation_id: int) -> Reservation:
        reservation = await self._store_call("find", self.store.find_by_id(reservation_id))
        if reservation is None:
            raise NotFound(reservation_id)
        return reservation

    async def _page(self, query: ReservationFilter, options: ListOptions) -> Page[Reservation]:
        sort = self._validate_options(options)
        skip = (options.page - 1) * options.limit

        # Page and total are read separately; under concurrent writes they are best-effort consistent
        results = await asyncio.gather(
            self._store_call("find", self.store.find_many(query, sort, skip=skip, limit=options.limit)),
            self._store_call("count", self.store.count(query)),
            return_exceptions=True,
        )
        # Both reads settle before an error is raised, so neither is left running
        for result in results:
            if isinstance(result, BaseException):
                raise result
        items, total = results
        return Page(items=items, page=options.page, limit=options.limit, total=total)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate_options(self, options: ListOptions) -> SortSpec:
        errors = {}
        if not isinstance(options.page, int) or options.page < 1:
            errors["page"] = "must be 1 or greater"
        if not isinstance(options.limit, int) or not 1 <= options.limit <= MAX_PAGE_SIZE:
            errors["limit"] = f"must be between 1 and {MAX_PAGE_SIZE}"
        if options.sort_by not in SORTABLE_FIELDS:
            errors["sort_by"] = f"must be one of {', '.join(sorted(SORTABLE_FIELDS))}"
        if options.sort_order not in (SortOrder.ASC.value, SortOrder.DESC.value):
            errors["sort_order"] = "must be asc or desc"
        if errors:
            raise InvalidQuery(errors)
        return SortSpec(options.sort_by, SortOrder(options.sort_order))

    def _parse_status(self, status: Union[ReservationStatus, str], error=InvalidQuery) -> ReservationStatus:
        try:
            return ReservationStatus(status)
        except ValueError:
            allowed = ", ".join(s.value for s in ReservationStatus)
            raise error({"status": f"must be one of {allowed}"})

    def _status_set(self, status: Optional[str]) -> Optional[frozenset[ReservationStatus]]:
        if not status:
            return None
        return frozenset({self._parse_status(status)})

    def _localize(self, value: Optional[datetime]) -> Optional[datetime]:
        """Naive datetimes are restaurant-local wall-clock times. Returns UTC."""
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=self.tz)
        return value.astimezone(timezone.utc)

    def _check_arrival_window(self, arrival_time: datetime, now: datetime) -> None:
        if arrival_time <= now:
            raise ValidationFailure({"arrival_time": "must be later than the current time"})
        local_hour = arrival_time.astimezone(self.tz).hour
        if not OPENING_HOUR <= local_hour < CLOSING_HOUR:
            raise ValidationFailure({
                "arrival_time": f"must be within business hours ({OPENING_HOUR:02d}:00-{CLOSING_HOUR:02d}:00)",
            })

    def _validated(self, schema: type[BaseModel], values: Mapping[str, Any]) -> dict[str, Any]:
        """Normalize the given fields through `schema`; every bad field lands in one ValidationFailure."""
        try:
            cleaned = schema.model_validate(dict(values)).model_dump(exclude_unset=True)
        except ValidationError as exc:
            raise ValidationFailure(field_errors(exc)) from exc

        if cleaned.get("arrival_time") is not None:
            cleaned["arrival_time"] = self._localize(cleaned["arrival_time"])
        return cleaned

    # ------------------------------------------------------------------
    # Store access
    # ------------------------------------------------------------------

    async def _store_call(self, operation: str, awaitable: Awaitable[T]) -> T:
        start = time.perf_counter()
        try:
            return await asyncio.wait_for(awaitable, timeout=self.store_timeout)
        except asyncio.TimeoutError as exc:
            store_errors.labels(operation=operation).inc()
            logger.error(
                "store_unavailable",
                operation=operation,
                reason="timeout",
                timeout_seconds=self.store_timeout,
            )
            raise StoreUnavailable(operation) from exc
        finally:
            store_latency.labels(operation=operation).observe(time.perf_counter() - start)

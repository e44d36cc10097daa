"""
Reservation endpoints. Thin adapter over ReservationLifecycleService:
every rule lives in the service, errors are rendered by the
ReservationError handler registered in main.
"""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from table_booking.core.logging import get_logger
from table_booking.core.security import get_current_actor, require_admin
from table_booking.domain.queries import AdminFilters, ListOptions
from table_booking.domain.reservation import Actor
from table_booking.schemas.reservation import (
    ApiResponse,
    CancelRequest,
    ReservationCreate,
    ReservationResponse,
    ReservationUpdate,
    StatusUpdate,
    page_response,
)
from table_booking.services.cache_service import get_cached_today, invalidate_reservation_cache, set_cached_today
from table_booking.services.reservation_service import ReservationLifecycleService
from table_booking.services.store_factory import get_reservation_service

logger = get_logger(__name__)
router = APIRouter(prefix="/reservations", tags=["Reservations"])

ReservationEnvelope = ApiResponse[ReservationResponse]
ReservationListEnvelope = ApiResponse[list[ReservationResponse]]


def _envelope(reservation, message: str = "success") -> ReservationEnvelope:
    return ReservationEnvelope(message=message, data=ReservationResponse.model_validate(reservation))


def _list_envelope(reservations, message: str = "success") -> ReservationListEnvelope:
    return ReservationListEnvelope(
        message=message,
        data=[ReservationResponse.model_validate(r) for r in reservations],
        total=len(reservations),
    )


@router.post("/", response_model=ReservationEnvelope, status_code=status.HTTP_201_CREATED)
async def create_reservation_endpoint(
    payload: ReservationCreate,
    actor: Actor = Depends(get_current_actor),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Request a table. The reservation starts in Requested status."""
    reservation = await service.create_reservation(actor, payload.to_draft())
    await invalidate_reservation_cache()
    return _envelope(reservation, "Reservation created")


@router.get("/", response_model=ReservationListEnvelope)
async def list_my_reservations(
    page: int = Query(1),
    limit: int = Query(10),
    status_filter: Optional[str] = Query(None, alias="status"),
    sort_by: str = Query("arrival_time"),
    sort_order: str = Query("desc"),
    actor: Actor = Depends(get_current_actor),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Paginated list of the caller's own reservations."""
    options = ListOptions(page=page, limit=limit, status=status_filter, sort_by=sort_by, sort_order=sort_order)
    result = await service.list_reservations_for_user(actor.id, options)
    return page_response(result)


@router.get("/today", response_model=ReservationListEnvelope)
async def list_today_reservations(
    status_filter: Optional[str] = Query(None, alias="status"),
    _: Actor = Depends(require_admin),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """
    Today's reservations in arrival order.
    Served from Redis when possible; every write invalidates the cache.
    """
    day = service.clock().astimezone(service.tz).date()
    cached = await get_cached_today(day, status_filter)
    if cached:
        logger.info("today_list_cache_hit", day=day.isoformat())
        return ReservationListEnvelope(**cached)

    reservations = await service.list_today_reservations(status_filter)
    response = _list_envelope(reservations)
    await set_cached_today(day, status_filter, response.model_dump(mode="json"))
    return response


@router.get("/admin", response_model=ReservationListEnvelope)
async def list_all_reservations(
    page: int = Query(1),
    limit: int = Query(20),
    status_filter: Optional[str] = Query(None, alias="status"),
    user_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    sort_by: str = Query("arrival_time"),
    sort_order: str = Query("desc"),
    _: Actor = Depends(require_admin),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """All reservations, filterable by status, owner, guest name/email and arrival range."""
    filters = AdminFilters(
        status=status_filter,
        user_id=user_id,
        search=search,
        start_date=start_date,
        end_date=end_date,
    )
    options = ListOptions(page=page, limit=limit, sort_by=sort_by, sort_order=sort_order)
    result = await service.list_all_reservations(filters, options)
    return page_response(result)


@router.get("/range", response_model=ReservationListEnvelope)
async def list_reservations_in_range(
    start_date: datetime = Query(...),
    end_date: datetime = Query(...),
    status_filter: Optional[str] = Query(None, alias="status"),
    _: Actor = Depends(require_admin),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Reservations arriving between two instants (inclusive), in arrival order."""
    reservations = await service.list_reservations_by_date_range(start_date, end_date, status_filter)
    return _list_envelope(reservations)


@router.get("/{reservation_id}", response_model=ReservationEnvelope)
async def get_reservation_endpoint(
    reservation_id: int,
    actor: Actor = Depends(get_current_actor),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Reservation detail with full status history. Owners and admins only."""
    reservation = await service.get_reservation_by_id(reservation_id, actor=actor)
    return _envelope(reservation)


@router.put("/{reservation_id}", response_model=ReservationEnvelope)
async def update_reservation_endpoint(
    reservation_id: int,
    payload: ReservationUpdate,
    actor: Actor = Depends(get_current_actor),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Edit guest details or scheduling while the reservation is still active."""
    reservation = await service.update_reservation(
        actor, reservation_id, payload.model_dump(exclude_unset=True)
    )
    await invalidate_reservation_cache()
    return _envelope(reservation, "Reservation updated")


@router.put("/{reservation_id}/status", response_model=ReservationEnvelope)
async def update_reservation_status_endpoint(
    reservation_id: int,
    payload: StatusUpdate,
    actor: Actor = Depends(require_admin),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Approve, complete or cancel a reservation (staff only)."""
    reservation = await service.update_reservation_status(actor, reservation_id, payload.status, payload.reason)
    await invalidate_reservation_cache()
    return _envelope(reservation, "Reservation status updated")


@router.put("/{reservation_id}/cancel", response_model=ReservationEnvelope)
async def cancel_reservation_endpoint(
    reservation_id: int,
    payload: CancelRequest,
    actor: Actor = Depends(get_current_actor),
    service: ReservationLifecycleService = Depends(get_reservation_service),
):
    """Cancel one of the caller's own reservations. A reason is required."""
    reservation = await service.cancel_reservation(actor, reservation_id, payload.reason)
    await invalidate_reservation_cache()
    return _envelope(reservation, "Reservation cancelled")

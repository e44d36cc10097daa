"""
GraphQL-shaped payloads for resolvers.

Resolvers call the same lifecycle service as the REST routes and pass the
result through these helpers. Field names are camelCase, timestamps are ISO
strings and actor references are strings, matching the GraphQL schema types
`Reservation`, `StatusHistory` and `PaginatedReservations`.
"""

from datetime import tzinfo
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from table_booking.domain.queries import Page
from table_booking.domain.reservation import Reservation


class GraphModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GraphStatusHistory(GraphModel):
    status: str
    reason: Optional[str] = None
    changed_at: str
    changed_by: Optional[str] = None


class GraphReservation(GraphModel):
    id: str
    user_id: str
    guest_name: str
    phone_number: str
    email: str
    arrival_time: str
    formatted_arrival_time: str
    table_size: int
    status: str
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None
    status_history: list[GraphStatusHistory]
    can_edit: bool
    can_cancel: bool
    created_at: str
    updated_at: str


class GraphPagination(GraphModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_next_page: bool
    has_prev_page: bool


class GraphPaginatedReservations(GraphModel):
    reservations: list[GraphReservation]
    pagination: GraphPagination


def format_arrival_time(reservation: Reservation, tz: tzinfo) -> str:
    return reservation.arrival_time.astimezone(tz).strftime("%Y/%m/%d %H:%M")


def to_graph_reservation(reservation: Reservation, tz: tzinfo) -> dict:
    payload = GraphReservation(
        id=str(reservation.id),
        user_id=str(reservation.user_id),
        guest_name=reservation.guest_name,
        phone_number=reservation.phone_number,
        email=reservation.email,
        arrival_time=reservation.arrival_time.isoformat(),
        formatted_arrival_time=format_arrival_time(reservation, tz),
        table_size=reservation.table_size,
        status=reservation.status.value,
        special_requests=reservation.special_requests,
        cancellation_reason=reservation.cancellation_reason,
        status_history=[
            GraphStatusHistory(
                status=entry.status.value,
                reason=entry.reason,
                changed_at=entry.changed_at.isoformat(),
                changed_by=str(entry.changed_by) if entry.changed_by is not None else None,
            )
            for entry in reservation.status_history
        ],
        can_edit=reservation.can_edit,
        can_cancel=reservation.can_cancel,
        created_at=reservation.created_at.isoformat(),
        updated_at=reservation.updated_at.isoformat(),
    )
    return payload.model_dump(by_alias=True)


def to_graph_page(page: Page[Reservation], tz: tzinfo) -> dict:
    payload = GraphPaginatedReservations(
        reservations=[GraphReservation.model_validate(to_graph_reservation(r, tz)) for r in page.items],
        pagination=GraphPagination(
            page=page.page,
            limit=page.limit,
            total=page.total,
            total_pages=page.total_pages,
            has_next_page=page.has_next_page,
            has_prev_page=page.has_prev_page,
        ),
    )
    return payload.model_dump(by_alias=True)

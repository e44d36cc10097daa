from table_booking.schemas.reservation import (
    ApiResponse,
    CancelRequest,
    PaginationInfo,
    ReservationCreate,
    ReservationFieldUpdates,
    ReservationFields,
    ReservationResponse,
    ReservationUpdate,
    StatusUpdate,
)
from table_booking.schemas.graph import to_graph_page, to_graph_reservation

__all__ = [
    "ApiResponse", "CancelRequest", "PaginationInfo",
    "ReservationCreate", "ReservationFields", "ReservationFieldUpdates",
    "ReservationResponse", "ReservationUpdate", "StatusUpdate",
    "to_graph_page", "to_graph_reservation",
]

"""
Core reservation entities.

These are plain dataclasses shared by the lifecycle service and both store
implementations. Persistence models live in `table_booking.models`; transport
shapes live in `table_booking.schemas`.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

# Business policy
OPENING_HOUR = 10
CLOSING_HOUR = 22
CONFLICT_WINDOW = timedelta(hours=2)


class ReservationStatus(str, Enum):
    REQUESTED = "Requested"
    APPROVED = "Approved"
    CANCELLED = "Cancelled"
    COMPLETED = "Completed"


ACTIVE_STATUSES = frozenset({ReservationStatus.REQUESTED, ReservationStatus.APPROVED})


class ActorRole(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    id: int
    role: ActorRole = ActorRole.USER

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN


@dataclass(frozen=True)
class StatusHistoryEntry:
    status: ReservationStatus
    changed_at: datetime
    reason: Optional[str] = None
    # None means the change was made by the system, not an authenticated actor
    changed_by: Optional[int] = None


@dataclass
class ReservationDraft:
    """Input for a new reservation, already shape-validated by the caller."""

    guest_name: str
    phone_number: str
    email: str
    arrival_time: datetime
    table_size: int
    special_requests: Optional[str] = None


@dataclass
class Reservation:
    user_id: int
    guest_name: str
    phone_number: str
    email: str
    arrival_time: datetime
    table_size: int
    created_at: datetime
    updated_at: datetime
    status: ReservationStatus = ReservationStatus.REQUESTED
    special_requests: Optional[str] = None
    cancellation_reason: Optional[str] = None
    status_history: list[StatusHistoryEntry] = field(default_factory=list)
    id: Optional[int] = None
    version: int = 1

    @property
    def can_edit(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_owned_by(self, actor: Actor) -> bool:
        return self.user_id == actor.id

    def __repr__(self) -> str:
        return f"<Reservation(id={self.id}, user={self.user_id}, status={self.status.value})>"

"""
Reservation status state machine.

    Requested -> Approved | Cancelled
    Approved  -> Completed | Cancelled
    Cancelled, Completed: terminal

`transition` is the only code path that changes `Reservation.status`.
"""

from datetime import datetime
from typing import Optional

from table_booking.core.exceptions import InvalidStateTransition, MissingReason, ValidationFailure
from table_booking.domain.reservation import Actor, Reservation, ReservationStatus
from table_booking.services import audit_trail

MAX_REASON_LENGTH = 200

TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.REQUESTED: frozenset({ReservationStatus.APPROVED, ReservationStatus.CANCELLED}),
    ReservationStatus.APPROVED: frozenset({ReservationStatus.COMPLETED, ReservationStatus.CANCELLED}),
    ReservationStatus.CANCELLED: frozenset(),
    ReservationStatus.COMPLETED: frozenset(),
}


def allowed_targets(status: ReservationStatus) -> frozenset[ReservationStatus]:
    return TRANSITIONS[status]


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in TRANSITIONS[current]


def is_terminal(status: ReservationStatus) -> bool:
    return not TRANSITIONS[status]


def normalize_reason(reason: Optional[str]) -> Optional[str]:
    """Strip a reason and enforce its length. Blank reasons become None."""
    if reason is None:
        return None
    reason = reason.strip()
    if not reason:
        return None
    if len(reason) > MAX_REASON_LENGTH:
        raise ValidationFailure({"reason": f"must be at most {MAX_REASON_LENGTH} characters"})
    return reason


def _rejected(current: ReservationStatus, target: ReservationStatus) -> InvalidStateTransition:
    allowed = sorted(s.value for s in allowed_targets(current))
    if is_terminal(current):
        message = f"Reservation is {current.value}; its status can no longer change"
    else:
        message = f"Cannot change status from {current.value} to {target.value} (allowed: {', '.join(allowed)})"
    return InvalidStateTransition(current.value, target.value, allowed, message=message)


def transition(
    reservation: Reservation,
    target: ReservationStatus,
    reason: Optional[str],
    actor: Optional[Actor],
    now: datetime,
) -> Reservation:
    """Move `reservation` to `target` in place and record the change."""
    current = reservation.status
    if not can_transition(current, target):
        raise _rejected(current, target)

    reason = normalize_reason(reason)
    if target == ReservationStatus.CANCELLED and reason is None:
        raise MissingReason()

    reservation.status = target
    if target == ReservationStatus.CANCELLED:
        reservation.cancellation_reason = reason
    audit_trail.append_entry(reservation, target, reason, actor, now)
    reservation.updated_at = now
    return reservation

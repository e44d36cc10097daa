"""
Append-only audit trail of reservation status changes.

Entries are frozen dataclasses. The only ways to add one are `initial_entry`
(on creation) and `append_entry` (called by the state machine), and both
stores run `ensure_append_only` before writing so a stored entry can never be
edited, dropped or reordered.
"""

from datetime import datetime
from typing import Optional

from table_booking.core.exceptions import AuditTrailViolation
from table_booking.domain.reservation import Actor, Reservation, ReservationStatus, StatusHistoryEntry


def _actor_ref(actor: Optional[Actor]) -> Optional[int]:
    return actor.id if actor is not None else None


def initial_entry(actor: Optional[Actor], now: datetime) -> StatusHistoryEntry:
    return StatusHistoryEntry(
        status=ReservationStatus.REQUESTED,
        changed_at=now,
        changed_by=_actor_ref(actor),
    )


def append_entry(
    reservation: Reservation,
    status: ReservationStatus,
    reason: Optional[str],
    actor: Optional[Actor],
    now: datetime,
) -> StatusHistoryEntry:
    """Append one entry to the in-memory history ahead of the store write."""
    entry = StatusHistoryEntry(
        status=status,
        changed_at=now,
        reason=reason,
        changed_by=_actor_ref(actor),
    )
    reservation.status_history.append(entry)
    return entry


def ensure_append_only(before: Reservation, after: Reservation) -> None:
    old, new = before.status_history, after.status_history

    if new[: len(old)] != old:
        raise AuditTrailViolation(f"history of reservation {before.id} was rewritten")

    appended = len(new) - len(old)
    if appended > 1:
        raise AuditTrailViolation(f"{appended} history entries appended to reservation {before.id} in one write")
    if appended == 0 and after.status != before.status:
        raise AuditTrailViolation(f"status of reservation {before.id} changed without a history entry")
    if not new or new[-1].status != after.status:
        raise AuditTrailViolation(f"last history entry of reservation {before.id} does not match its status")

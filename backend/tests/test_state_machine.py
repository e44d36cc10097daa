"""
Tests for the reservation status state machine.
"""

import pytest

from conftest import NOW, at
from table_booking.core.exceptions import InvalidStateTransition, MissingReason, ValidationFailure
from table_booking.domain.reservation import Actor, ActorRole, Reservation, ReservationStatus
from table_booking.services import audit_trail, state_machine

ADMIN = Actor(id=99, role=ActorRole.ADMIN)

ALLOWED = {
    (ReservationStatus.REQUESTED, ReservationStatus.APPROVED),
    (ReservationStatus.REQUESTED, ReservationStatus.CANCELLED),
    (ReservationStatus.APPROVED, ReservationStatus.COMPLETED),
    (ReservationStatus.APPROVED, ReservationStatus.CANCELLED),
}


def _reservation(status: ReservationStatus = ReservationStatus.REQUESTED) -> Reservation:
    return Reservation(
        id=1,
        user_id=1,
        guest_name="Li Wei",
        phone_number="13800138000",
        email="li.wei@example.com",
        arrival_time=at(1, 19),
        table_size=4,
        created_at=NOW,
        updated_at=NOW,
        status=status,
        status_history=[audit_trail.initial_entry(Actor(id=1), NOW)],
    )


@pytest.mark.parametrize("current", list(ReservationStatus))
@pytest.mark.parametrize("target", list(ReservationStatus))
def test_can_transition_matches_table(current, target):
    assert state_machine.can_transition(current, target) == ((current, target) in ALLOWED)


def test_terminal_states():
    assert state_machine.is_terminal(ReservationStatus.CANCELLED)
    assert state_machine.is_terminal(ReservationStatus.COMPLETED)
    assert not state_machine.is_terminal(ReservationStatus.REQUESTED)
    assert not state_machine.is_terminal(ReservationStatus.APPROVED)


def test_approve_appends_one_entry():
    reservation = _reservation()
    later = at(0, 9, 30)

    state_machine.transition(reservation, ReservationStatus.APPROVED, None, ADMIN, later)

    assert reservation.status == ReservationStatus.APPROVED
    assert len(reservation.status_history) == 2
    entry = reservation.status_history[-1]
    assert entry.status == ReservationStatus.APPROVED
    assert entry.changed_by == ADMIN.id
    assert entry.changed_at == later
    assert reservation.updated_at == later


def test_cancel_requires_reason():
    reservation = _reservation()

    with pytest.raises(MissingReason):
        state_machine.transition(reservation, ReservationStatus.CANCELLED, "   ", ADMIN, NOW)

    assert reservation.status == ReservationStatus.REQUESTED
    assert len(reservation.status_history) == 1


def test_cancel_records_trimmed_reason():
    reservation = _reservation(ReservationStatus.APPROVED)

    state_machine.transition(reservation, ReservationStatus.CANCELLED, "  guest sick  ", ADMIN, NOW)

    assert reservation.cancellation_reason == "guest sick"
    assert reservation.status_history[-1].reason == "guest sick"


def test_reason_length_limit():
    reservation = _reservation()

    with pytest.raises(ValidationFailure) as exc_info:
        state_machine.transition(reservation, ReservationStatus.CANCELLED, "x" * 201, ADMIN, NOW)

    assert "reason" in exc_info.value.fields
    assert reservation.status == ReservationStatus.REQUESTED


def test_same_state_is_rejected():
    """Approved -> Approved is not an edge; nothing is recorded."""
    reservation = _reservation(ReservationStatus.APPROVED)

    with pytest.raises(InvalidStateTransition) as exc_info:
        state_machine.transition(reservation, ReservationStatus.APPROVED, None, ADMIN, NOW)

    assert exc_info.value.current == "Approved"
    assert exc_info.value.requested == "Approved"
    assert len(reservation.status_history) == 1


@pytest.mark.parametrize("terminal", [ReservationStatus.CANCELLED, ReservationStatus.COMPLETED])
def test_terminal_states_reject_everything(terminal):
    reservation = _reservation(terminal)
    for target in ReservationStatus:
        with pytest.raises(InvalidStateTransition):
            state_machine.transition(reservation, target, "reason", ADMIN, NOW)
    assert reservation.status == terminal


def test_invalid_edge_checked_before_reason():
    """Completed -> Cancelled without a reason reports the bad edge, not the missing reason."""
    reservation = _reservation(ReservationStatus.COMPLETED)

    with pytest.raises(InvalidStateTransition):
        state_machine.transition(reservation, ReservationStatus.CANCELLED, None, ADMIN, NOW)


def test_system_change_has_no_actor():
    reservation = _reservation()

    state_machine.transition(reservation, ReservationStatus.APPROVED, None, None, NOW)

    assert reservation.status_history[-1].changed_by is None


def test_rejection_lists_allowed_targets():
    reservation = _reservation(ReservationStatus.REQUESTED)

    with pytest.raises(InvalidStateTransition) as exc_info:
        state_machine.transition(reservation, ReservationStatus.COMPLETED, None, ADMIN, NOW)

    assert exc_info.value.allowed == ["Approved", "Cancelled"]
    assert exc_info.value.details["allowed"] == ["Approved", "Cancelled"]
    assert "allowed: Approved, Cancelled" in exc_info.value.message


def test_rejection_from_terminal_state_says_final():
    reservation = _reservation(ReservationStatus.COMPLETED)

    with pytest.raises(InvalidStateTransition) as exc_info:
        state_machine.transition(reservation, ReservationStatus.APPROVED, None, ADMIN, NOW)

    assert exc_info.value.allowed == []
    assert "can no longer change" in exc_info.value.message

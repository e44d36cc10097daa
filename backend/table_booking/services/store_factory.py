"""
Reservation store factory.
Configures which persistence engine the lifecycle service runs against.
"""

from typing import Optional

from table_booking.core.config import get_settings
from table_booking.db.session import get_session_factory
from table_booking.infrastructure.sql_reservation_store import SqlReservationStore
from table_booking.services.interfaces.in_memory_store import InMemoryReservationStore
from table_booking.services.interfaces.reservation_store import ReservationStore
from table_booking.services.reservation_service import ReservationLifecycleService


def build_store() -> ReservationStore:
    """
    Build the configured store.

    - sql: PostgreSQL through async SQLAlchemy (default)
    - memory: process-local dict, for development and tests

    Selected via the RESERVATION_STORE env var.
    """
    if get_settings().RESERVATION_STORE == "memory":
        return InMemoryReservationStore()
    return SqlReservationStore(get_session_factory())


# Singleton instances
_store: Optional[ReservationStore] = None
_service: Optional[ReservationLifecycleService] = None


def get_store() -> ReservationStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def get_reservation_service() -> ReservationLifecycleService:
    """FastAPI dependency: the shared, stateless lifecycle service."""
    global _service
    if _service is None:
        _service = ReservationLifecycleService(get_store())
    return _service

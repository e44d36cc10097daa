"""
Service interfaces for dependency inversion.
Allows swapping store implementations without changing lifecycle logic.
"""

from .reservation_store import ReservationStore
from .in_memory_store import InMemoryReservationStore

__all__ = ['ReservationStore', 'InMemoryReservationStore']

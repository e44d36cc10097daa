"""
Infrastructure layer - external system integrations.
Keeps lifecycle logic clean from persistence details.
"""

from .sql_reservation_store import SqlReservationStore

__all__ = ['SqlReservationStore']

from table_booking.models.reservation import ReservationRecord, StatusHistoryRecord

__all__ = ["ReservationRecord", "StatusHistoryRecord"]

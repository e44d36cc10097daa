"""
Reservation persistence models.

Key design decisions:
- Status history lives in its own table and is only ever INSERTed into;
  (reservation_id, position) is unique so two writers cannot append the
  same slot
- `version` column enables optimistic locking for concurrent status changes
- Indexes mirror the listing queries: per-user by creation date, by status,
  and by arrival time (today / date range listings)
"""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship

from table_booking.db.base import Base, TimestampMixin

STATUS_VALUES = "('Requested', 'Approved', 'Cancelled', 'Completed')"


class ReservationRecord(Base, TimestampMixin):
    __tablename__ = "reservations"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=False, index=True)
    guest_name = Column(String(50), nullable=False)
    phone_number = Column(String(20), nullable=False)
    email = Column(String(255), nullable=False)
    arrival_time = Column(DateTime(timezone=True), nullable=False)
    table_size = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="Requested")
    special_requests = Column(String(500), nullable=True)
    cancellation_reason = Column(String(200), nullable=True)

    # Optimistic locking version counter
    version = Column(Integer, nullable=False, default=1)

    history = relationship(
        "StatusHistoryRecord",
        back_populates="reservation",
        order_by="StatusHistoryRecord.position",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("table_size BETWEEN 1 AND 20", name="check_table_size_range"),
        CheckConstraint(f"status IN {STATUS_VALUES}", name="check_reservation_status"),
        Index("ix_reservations_user_created", "user_id", "created_at"),
        Index("ix_reservations_status", "status"),
        Index("ix_reservations_arrival_status", "arrival_time", "status"),
    )

    def __repr__(self) -> str:
        return f"<ReservationRecord(id={self.id}, user={self.user_id}, status={self.status}, v={self.version})>"


class StatusHistoryRecord(Base):
    __tablename__ = "reservation_status_history"

    id = Column(Integer, primary_key=True)
    reservation_id = Column(Integer, ForeignKey("reservations.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False)
    reason = Column(String(200), nullable=True)
    changed_at = Column(DateTime(timezone=True), nullable=False)
    changed_by = Column(Integer, nullable=True)

    reservation = relationship("ReservationRecord", back_populates="history")

    __table_args__ = (
        UniqueConstraint("reservation_id", "position", name="uq_history_reservation_position"),
        CheckConstraint(f"status IN {STATUS_VALUES}", name="check_history_status"),
    )

"""Initial schema: reservations and their append-only status history.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUS_VALUES = "('Requested', 'Approved', 'Cancelled', 'Completed')"


def upgrade() -> None:
    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("guest_name", sa.String(50), nullable=False),
        sa.Column("phone_number", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("arrival_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("table_size", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default=sa.text("'Requested'")),
        sa.Column("special_requests", sa.String(500), nullable=True),
        sa.Column("cancellation_reason", sa.String(200), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("table_size BETWEEN 1 AND 20", name="check_table_size_range"),
        sa.CheckConstraint(f"status IN {STATUS_VALUES}", name="check_reservation_status"),
    )
    op.create_index("ix_reservations_id", "reservations", ["id"])
    op.create_index("ix_reservations_user_id", "reservations", ["user_id"])
    # "My reservations" listing: WHERE user_id = ? ORDER BY created_at
    op.create_index("ix_reservations_user_created", "reservations", ["user_id", "created_at"])
    op.create_index("ix_reservations_status", "reservations", ["status"])
    # Conflict window and today / date-range listings:
    # WHERE arrival_time BETWEEN ? AND ? AND status IN (...)
    op.create_index("ix_reservations_arrival_status", "reservations", ["arrival_time", "status"])

    op.create_table(
        "reservation_status_history",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reservation_id", sa.Integer(), sa.ForeignKey("reservations.id"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("reason", sa.String(200), nullable=True),
        sa.Column("changed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("changed_by", sa.Integer(), nullable=True),
        sa.UniqueConstraint("reservation_id", "position", name="uq_history_reservation_position"),
        sa.CheckConstraint(f"status IN {STATUS_VALUES}", name="check_history_status"),
    )
    op.create_index(
        "ix_reservation_status_history_reservation_id",
        "reservation_status_history",
        ["reservation_id"],
    )


def downgrade() -> None:
    op.drop_table("reservation_status_history")
    op.drop_table("reservations")

"""Initial schema: driver presence, rides and acceptance queue entries.

Revision ID: 001
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── driver_presence ───────────────────────────────────────────────
    op.create_table(
        "driver_presence",
        sa.Column("driver_id", sa.Integer, primary_key=True, autoincrement=False),
        sa.Column("online", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("available", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("lat", sa.Float, nullable=True),
        sa.Column("lng", sa.Float, nullable=True),
        sa.Column("h3_cell", sa.String(20), nullable=True),
        sa.Column("active_ride_id", sa.Integer, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "NOT available OR online", name="ck_presence_available_online"
        ),
    )
    op.create_index(
        "idx_presence_available_cell", "driver_presence", ["available", "h3_cell"]
    )
    op.create_index(
        "idx_presence_online_updated", "driver_presence", ["online", "last_updated"]
    )

    # ── rides ─────────────────────────────────────────────────────────
    op.create_table(
        "rides",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("rider_id", sa.Integer, nullable=False),
        sa.Column("pickup_lat", sa.Float, nullable=False),
        sa.Column("pickup_lng", sa.Float, nullable=False),
        sa.Column("dropoff_lat", sa.Float, nullable=False),
        sa.Column("dropoff_lng", sa.Float, nullable=False),
        sa.Column(
            "timing",
            sa.Enum(
                "instant",
                "scheduled_single",
                "scheduled_recurring",
                name="ride_timing",
            ),
            nullable=False,
            server_default="instant",
        ),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("estimated_cost", sa.Float, nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "accepted",
                "in_progress",
                "completed",
                "cancelled",
                name="ride_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("driver_id", sa.Integer, nullable=True),
        sa.Column("cancellation_reason", sa.String(40), nullable=True),
        sa.Column("match_attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_matched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("idempotency_key", sa.String(64), unique=True, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "(driver_id IS NOT NULL) = "
            "(status IN ('accepted', 'in_progress', 'completed'))",
            name="ck_rides_driver_matches_status",
        ),
    )
    op.create_index("idx_rides_status", "rides", ["status"])
    op.create_index("idx_rides_driver_status", "rides", ["driver_id", "status"])
    op.create_index("idx_rides_rider", "rides", ["rider_id"])

    # ── queue_entries ─────────────────────────────────────────────────
    op.create_table(
        "queue_entries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("ride_id", sa.Integer, sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("driver_id", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "viewing",
                "interested",
                "accepted",
                "declined",
                "expired",
                name="queue_status",
            ),
            nullable=False,
            server_default="viewing",
        ),
        sa.Column("distance_to_pickup", sa.Float, nullable=True),
        sa.Column("viewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.UniqueConstraint("ride_id", "driver_id", name="uq_queue_ride_driver"),
    )
    op.create_index(
        "idx_queue_driver_status", "queue_entries", ["driver_id", "status"]
    )
    op.create_index("idx_queue_ride_status", "queue_entries", ["ride_id", "status"])


def downgrade() -> None:
    op.drop_table("queue_entries")
    op.drop_table("rides")
    op.drop_table("driver_presence")
    op.execute("DROP TYPE IF EXISTS queue_status")
    op.execute("DROP TYPE IF EXISTS ride_status")
    op.execute("DROP TYPE IF EXISTS ride_timing")

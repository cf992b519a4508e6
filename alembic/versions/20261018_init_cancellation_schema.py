"""cancellation schema

Downgrade removes only the cancellation tables. users and rides may predate
this revision (owned by the rides service), so they are never dropped here;
a database bootstrapped by this revision keeps them after a downgrade.

Revision ID: 20261018_init_cancellation_schema
Revises:
Create Date: 2026-10-18 00:00:00

"""
import uuid
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_init_cancellation_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # users and rides are normally owned by the rides service; create them when absent
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())

    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("phone", sa.String(32), nullable=True, unique=True),
            sa.Column("name", sa.String(128), nullable=True),
            sa.Column("role", sa.String(16), nullable=False, server_default="rider"),
            sa.Column("created_at", sa.DateTime(), nullable=False),
        )
    if "rides" not in existing:
        op.create_table(
            "rides",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("rider_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
            sa.Column("driver_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
            sa.Column("status", sa.String(24), nullable=False, server_default="requested"),
            sa.Column("pickup_lat", sa.Float(), nullable=False),
            sa.Column("pickup_lng", sa.Float(), nullable=False),
            sa.Column("estimated_fare", sa.Float(), nullable=False, server_default="0"),
            sa.Column("accepted_at", sa.DateTime(), nullable=True),
            sa.Column("cancelled_at", sa.DateTime(), nullable=True),
            sa.Column("cancellation_reason", sa.String(50), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
        )
        op.create_index("ix_rides_created", "rides", ["created_at"])
        op.create_index("ix_rides_rider", "rides", ["rider_id"])
        op.create_index("ix_rides_driver", "rides", ["driver_id"])

    op.create_table(
        "cancellation_records",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("ride_id", sa.Uuid(), sa.ForeignKey("rides.id"), nullable=False),
        sa.Column("rider_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("driver_id", sa.Uuid(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("cancelled_by", sa.String(20), nullable=False),
        sa.Column("reason_code", sa.String(50), nullable=False),
        sa.Column("reason_text", sa.Text(), nullable=True),
        sa.Column("fee_amount", sa.Float(), nullable=False, server_default="0"),
        sa.Column("fee_waived", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("waiver_reason", sa.String(50), nullable=True),
        sa.Column("minutes_since_request", sa.Float(), nullable=False, server_default="0"),
        sa.Column("minutes_since_accept", sa.Float(), nullable=True),
        sa.Column("ride_status_at_cancel", sa.String(24), nullable=False),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("cancelled_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_cancel_records_ride", "cancellation_records", ["ride_id"], unique=True)
    op.create_index("ix_cancel_records_rider", "cancellation_records", ["rider_id"])
    op.create_index("ix_cancel_records_driver", "cancellation_records", ["driver_id"])
    op.create_index("ix_cancel_records_cancelled_at", "cancellation_records", ["cancelled_at"])
    op.create_index("ix_cancel_records_cancelled_by", "cancellation_records", ["cancelled_by"])

    policies = op.create_table(
        "cancellation_policies",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("free_cancel_window_minutes", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("max_free_cancels_per_day", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("max_free_cancels_per_week", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("driver_no_show_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("rider_no_show_minutes", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("driver_penalty_threshold", sa.Integer(), nullable=False, server_default="20"),
        sa.Column("rider_penalty_threshold", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "uq_cancel_policies_default_active",
        "cancellation_policies",
        ["is_default"],
        unique=True,
        postgresql_where=sa.text("is_default AND is_active"),
        sqlite_where=sa.text("is_default = 1 AND is_active = 1"),
    )

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    op.bulk_insert(
        policies,
        [
            {
                "id": uuid.uuid4(),
                "name": "Default Policy",
                "free_cancel_window_minutes": 2,
                "max_free_cancels_per_day": 3,
                "max_free_cancels_per_week": 10,
                "driver_no_show_minutes": 5,
                "rider_no_show_minutes": 5,
                "driver_penalty_threshold": 20,
                "rider_penalty_threshold": 30,
                "is_default": True,
                "is_active": True,
                "created_at": now,
                "updated_at": now,
            }
        ],
    )


def downgrade() -> None:
    # users and rides stay; see module docstring
    op.drop_index("uq_cancel_policies_default_active", table_name="cancellation_policies")
    op.drop_table("cancellation_policies")
    for name in (
        "ix_cancel_records_cancelled_by",
        "ix_cancel_records_cancelled_at",
        "ix_cancel_records_driver",
        "ix_cancel_records_rider",
        "ix_cancel_records_ride",
    ):
        op.drop_index(name, table_name="cancellation_records")
    op.drop_table("cancellation_records")

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, Boolean, ForeignKey, Float, Index, Text, Uuid, text
)
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


def utcnow() -> datetime:
    """Naive UTC timestamp, the storage convention for every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    phone = Column(String(32), nullable=True, unique=True, index=True)
    name = Column(String(128), nullable=True)
    role = Column(String(16), nullable=False, default="rider")  # rider|driver|admin
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Ride(Base):
    """Ride row owned by the rides service; cancellation touches only the cancel columns."""

    __tablename__ = "rides"
    __table_args__ = (
        Index("ix_rides_created", "created_at"),
        Index("ix_rides_rider", "rider_id"),
        Index("ix_rides_driver", "driver_id"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    rider_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    status = Column(String(24), nullable=False, default="requested")  # requested|accepted|in_progress|completed|cancelled
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    estimated_fare = Column(Float, nullable=False, default=0.0)
    accepted_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(String(50), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)


class CancellationRecord(Base):
    __tablename__ = "cancellation_records"
    __table_args__ = (
        Index("ix_cancel_records_ride", "ride_id", unique=True),
        Index("ix_cancel_records_rider", "rider_id"),
        Index("ix_cancel_records_driver", "driver_id"),
        Index("ix_cancel_records_cancelled_at", "cancelled_at"),
        Index("ix_cancel_records_cancelled_by", "cancelled_by"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    ride_id = Column(Uuid(as_uuid=True), ForeignKey("rides.id"), nullable=False)
    rider_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False)
    driver_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)
    cancelled_by = Column(String(20), nullable=False)  # rider|driver|system
    reason_code = Column(String(50), nullable=False)
    reason_text = Column(Text, nullable=True)
    fee_amount = Column(Float, nullable=False, default=0.0)
    fee_waived = Column(Boolean, nullable=False, default=False)
    waiver_reason = Column(String(50), nullable=True)
    minutes_since_request = Column(Float, nullable=False, default=0.0)
    minutes_since_accept = Column(Float, nullable=True)
    ride_status_at_cancel = Column(String(24), nullable=False)
    pickup_lat = Column(Float, nullable=False)
    pickup_lng = Column(Float, nullable=False)
    cancelled_at = Column(DateTime, nullable=False, default=utcnow)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class CancellationPolicy(Base):
    __tablename__ = "cancellation_policies"
    __table_args__ = (
        # at most one default+active policy
        Index(
            "uq_cancel_policies_default_active",
            "is_default",
            unique=True,
            postgresql_where=text("is_default AND is_active"),
            sqlite_where=text("is_default = 1 AND is_active = 1"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    name = Column(String(100), nullable=False)
    free_cancel_window_minutes = Column(Integer, nullable=False, default=2)
    max_free_cancels_per_day = Column(Integer, nullable=False, default=3)
    max_free_cancels_per_week = Column(Integer, nullable=False, default=10)
    driver_no_show_minutes = Column(Integer, nullable=False, default=5)
    rider_no_show_minutes = Column(Integer, nullable=False, default=5)
    driver_penalty_threshold = Column(Integer, nullable=False, default=20)
    rider_penalty_threshold = Column(Integer, nullable=False, default=30)
    is_default = Column(Boolean, nullable=False, default=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

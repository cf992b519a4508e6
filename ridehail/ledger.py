"""Append-only cancellation ledger and its aggregate queries."""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy import case, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import settings
from .enums import CancelledBy, WaiverReason
from .errors import DuplicateCancellation
from .models import CancellationRecord, Ride, utcnow


logger = logging.getLogger("ridehail.ledger")

MAX_TOP_REASONS = 10
RATE_WINDOW_DAYS = 30


@dataclass
class UserCancellationStats:
    user_id: uuid.UUID
    total_cancellations: int = 0
    cancellations_today: int = 0
    cancellations_this_week: int = 0
    cancellations_this_month: int = 0
    total_fees_charged: float = 0.0
    total_fees_waived: float = 0.0
    cancellation_rate: float = 0.0
    last_cancellation_at: Optional[datetime] = None
    is_warned: bool = False
    is_penalized: bool = False


@dataclass
class TopReason:
    reason_code: str
    count: int
    percentage: float


@dataclass
class PlatformStats:
    total_cancellations: int = 0
    rider_cancellations: int = 0
    driver_cancellations: int = 0
    system_cancellations: int = 0
    total_fees_collected: float = 0.0
    total_fees_waived: float = 0.0
    average_minutes_to_cancel: float = 0.0
    cancellation_rate: float = 0.0
    top_reasons: List[TopReason] = field(default_factory=list)


# Day and week boundaries: local midnight, weeks start on Monday.

def _local_tz():
    name = (settings.CANCELLATION_TIMEZONE or "UTC").strip()
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def _to_naive_utc(dt: datetime) -> datetime:
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def _local_date(now: datetime):
    return now.replace(tzinfo=timezone.utc).astimezone(_local_tz()).date()


def start_of_day(now: datetime) -> datetime:
    return _to_naive_utc(datetime.combine(_local_date(now), time.min, tzinfo=_local_tz()))


def start_of_week(now: datetime) -> datetime:
    d = _local_date(now)
    monday = d - timedelta(days=d.weekday())
    return _to_naive_utc(datetime.combine(monday, time.min, tzinfo=_local_tz()))


def start_of_month(now: datetime) -> datetime:
    first = _local_date(now).replace(day=1)
    return _to_naive_utc(datetime.combine(first, time.min, tzinfo=_local_tz()))


class LedgerStore(Protocol):
    def insert(self, record: CancellationRecord) -> None: ...

    def by_ride(self, ride_id: uuid.UUID) -> Optional[CancellationRecord]: ...

    def by_id(self, cancellation_id: uuid.UUID) -> Optional[CancellationRecord]: ...

    def count_today(self, user_id: uuid.UUID, role: CancelledBy) -> int: ...

    def count_this_week(self, user_id: uuid.UUID, role: CancelledBy) -> int: ...

    def user_stats(self, user_id: uuid.UUID) -> UserCancellationStats: ...

    def user_history(self, user_id: uuid.UUID, limit: int, offset: int) -> Tuple[List[CancellationRecord], int]: ...

    def waive(self, cancellation_id: uuid.UUID, note: str) -> bool: ...

    def platform_stats(self, start: datetime, end: datetime) -> PlatformStats: ...


def admin_waiver_note(reason: str) -> str:
    return f"[Admin waived: {reason}]"


def append_note(existing: Optional[str], note: str) -> str:
    if existing:
        return f"{existing} {note}"
    return note


class SqlLedgerStore:
    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock

    def _involves(self, user_id: uuid.UUID):
        return or_(CancellationRecord.rider_id == user_id, CancellationRecord.driver_id == user_id)

    def _not_system(self):
        return CancellationRecord.cancelled_by != CancelledBy.SYSTEM.value

    def insert(self, record: CancellationRecord) -> None:
        self.db.add(record)
        try:
            self.db.flush()
        except IntegrityError as exc:
            logger.info("duplicate cancellation for ride %s", record.ride_id)
            raise DuplicateCancellation(record.ride_id) from exc

    def by_ride(self, ride_id: uuid.UUID) -> Optional[CancellationRecord]:
        return self.db.execute(
            select(CancellationRecord).where(CancellationRecord.ride_id == ride_id)
        ).scalar_one_or_none()

    def by_id(self, cancellation_id: uuid.UUID) -> Optional[CancellationRecord]:
        return self.db.get(CancellationRecord, cancellation_id, populate_existing=True)

    def _count_since(self, user_id: uuid.UUID, role: CancelledBy, since: datetime) -> int:
        q = (
            select(func.count(CancellationRecord.id))
            .where(self._involves(user_id))
            .where(CancellationRecord.cancelled_by == role.value)
            .where(CancellationRecord.cancelled_at >= since)
        )
        return int(self.db.execute(q).scalar_one() or 0)

    def count_today(self, user_id: uuid.UUID, role: CancelledBy) -> int:
        return self._count_since(user_id, role, start_of_day(self.clock()))

    def count_this_week(self, user_id: uuid.UUID, role: CancelledBy) -> int:
        return self._count_since(user_id, role, start_of_week(self.clock()))

    def user_stats(self, user_id: uuid.UUID) -> UserCancellationStats:
        now = self.clock()
        since_rate = now - timedelta(days=RATE_WINDOW_DAYS)
        rec = CancellationRecord
        row = self.db.execute(
            select(
                func.count(rec.id),
                func.coalesce(func.sum(case((rec.fee_waived.is_(False), rec.fee_amount), else_=0.0)), 0.0),
                func.coalesce(func.sum(case((rec.fee_waived.is_(True), rec.fee_amount), else_=0.0)), 0.0),
                func.coalesce(func.sum(case((rec.cancelled_at >= start_of_day(now), 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.cancelled_at >= start_of_week(now), 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.cancelled_at >= start_of_month(now), 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.cancelled_at >= since_rate, 1), else_=0)), 0),
                func.max(rec.cancelled_at),
            )
            .where(self._involves(user_id))
            .where(self._not_system())
        ).one()
        total, charged, waived, today, week, month, recent, last_at = row

        rides_recent = self.db.execute(
            select(func.count(Ride.id))
            .where(or_(Ride.rider_id == user_id, Ride.driver_id == user_id))
            .where(Ride.created_at >= since_rate)
        ).scalar_one()

        stats = UserCancellationStats(
            user_id=user_id,
            total_cancellations=int(total or 0),
            cancellations_today=int(today or 0),
            cancellations_this_week=int(week or 0),
            cancellations_this_month=int(month or 0),
            total_fees_charged=float(charged or 0.0),
            total_fees_waived=float(waived or 0.0),
            last_cancellation_at=last_at,
        )
        if rides_recent:
            stats.cancellation_rate = float(recent or 0) / float(rides_recent) * 100
        return stats

    def user_history(self, user_id: uuid.UUID, limit: int, offset: int) -> Tuple[List[CancellationRecord], int]:
        total = self.db.execute(
            select(func.count(CancellationRecord.id)).where(self._involves(user_id))
        ).scalar_one()
        rows = self.db.execute(
            select(CancellationRecord)
            .where(self._involves(user_id))
            .order_by(CancellationRecord.cancelled_at.desc(), CancellationRecord.id.desc())
            .limit(limit)
            .offset(offset)
        ).scalars().all()
        return list(rows), int(total or 0)

    def waive(self, cancellation_id: uuid.UUID, note: str) -> bool:
        row = self.db.get(CancellationRecord, cancellation_id, with_for_update=True)
        if row is None:
            return False
        row.fee_waived = True
        row.waiver_reason = WaiverReason.ADMIN_OVERRIDE.value
        row.reason_text = append_note(row.reason_text, note)
        self.db.flush()
        return True

    def platform_stats(self, start: datetime, end: datetime) -> PlatformStats:
        rec = CancellationRecord
        in_range = (rec.cancelled_at >= start, rec.cancelled_at < end)
        row = self.db.execute(
            select(
                func.count(rec.id),
                func.coalesce(func.sum(case((rec.cancelled_by == CancelledBy.RIDER.value, 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.cancelled_by == CancelledBy.DRIVER.value, 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.cancelled_by == CancelledBy.SYSTEM.value, 1), else_=0)), 0),
                func.coalesce(func.sum(case((rec.fee_waived.is_(False), rec.fee_amount), else_=0.0)), 0.0),
                func.coalesce(func.sum(case((rec.fee_waived.is_(True), rec.fee_amount), else_=0.0)), 0.0),
                func.coalesce(func.avg(rec.minutes_since_request), 0.0),
            ).where(*in_range)
        ).one()
        stats = PlatformStats(
            total_cancellations=int(row[0] or 0),
            rider_cancellations=int(row[1] or 0),
            driver_cancellations=int(row[2] or 0),
            system_cancellations=int(row[3] or 0),
            total_fees_collected=float(row[4] or 0.0),
            total_fees_waived=float(row[5] or 0.0),
            average_minutes_to_cancel=float(row[6] or 0.0),
        )

        rides_created = self.db.execute(
            select(func.count(Ride.id)).where(Ride.created_at >= start, Ride.created_at < end)
        ).scalar_one()
        if rides_created:
            stats.cancellation_rate = stats.total_cancellations / float(rides_created) * 100

        cnt = func.count(rec.id).label("cnt")
        reasons = self.db.execute(
            select(rec.reason_code, cnt)
            .where(*in_range)
            .group_by(rec.reason_code)
            .order_by(cnt.desc(), rec.reason_code)
            .limit(MAX_TOP_REASONS)
        ).all()
        for code, count in reasons:
            pct = 0.0
            if stats.total_cancellations > 0:
                pct = round(count / stats.total_cancellations * 100, 2)
            stats.top_reasons.append(TopReason(reason_code=code, count=int(count), percentage=pct))
        return stats

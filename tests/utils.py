import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

from ridehail.enums import RideStatus, WaiverReason
from ridehail.errors import DuplicateCancellation
from ridehail.gateway import RideView
from ridehail.ledger import UserCancellationStats, append_note, start_of_day, start_of_week
from ridehail.models import CancellationRecord, Ride, User, utcnow
from ridehail.policy import DEFAULT_POLICY


NOW = datetime(2026, 3, 11, 12, 0, 0)  # a Wednesday


def make_user(db, role: str = "rider", name: str = "X") -> User:
    user = User(id=uuid.uuid4(), name=name, role=role)
    db.add(user)
    db.commit()
    return user


def make_ride(db, rider, driver=None, *, status="accepted", minutes_ago=5.0, fare=20.0, now=None) -> Ride:
    now = now or utcnow()
    created = now - timedelta(minutes=minutes_ago)
    ride = Ride(
        id=uuid.uuid4(),
        rider_id=rider.id,
        driver_id=driver.id if driver else None,
        status=status,
        pickup_lat=33.5138,
        pickup_lng=36.2765,
        estimated_fare=fare,
        created_at=created,
        updated_at=created,
        accepted_at=created + timedelta(seconds=30) if driver and status != "requested" else None,
    )
    db.add(ride)
    db.commit()
    return ride


def ride_view(rider_id, driver_id=None, *, status=RideStatus.ACCEPTED, minutes_ago=5.0, fare=20.0, now=NOW) -> RideView:
    created = now - timedelta(minutes=minutes_ago)
    return RideView(
        id=uuid.uuid4(),
        rider_id=rider_id,
        driver_id=driver_id,
        status=status,
        pickup_lat=33.5138,
        pickup_lng=36.2765,
        estimated_fare=fare,
        created_at=created,
        accepted_at=created + timedelta(seconds=30) if driver_id else None,
    )


def record_for(ride: RideView, cancelled_by: str, at: datetime, **kw) -> CancellationRecord:
    values = dict(
        id=uuid.uuid4(),
        ride_id=ride.id,
        rider_id=ride.rider_id,
        driver_id=ride.driver_id,
        cancelled_by=cancelled_by,
        reason_code="changed_mind" if cancelled_by == "rider" else "vehicle_issue",
        reason_text=None,
        fee_amount=0.0,
        fee_waived=True,
        waiver_reason=WaiverReason.FREE_CANCELLATION_WINDOW.value,
        minutes_since_request=1.0,
        minutes_since_accept=None,
        ride_status_at_cancel=ride.status.value,
        pickup_lat=ride.pickup_lat,
        pickup_lng=ride.pickup_lng,
        cancelled_at=at,
        created_at=at,
    )
    values.update(kw)
    return CancellationRecord(**values)


class InMemoryState:
    """Rides and cancellation records shared by the in-memory fakes."""

    def __init__(self):
        self.lock = threading.RLock()
        self.rides: dict = {}
        self.records: dict = {}


class FakeUnitOfWork:
    def __init__(self, state: InMemoryState):
        self.state = state

    @contextmanager
    def atomic(self):
        with self.state.lock:
            rides, records = dict(self.state.rides), dict(self.state.records)
            try:
                yield
            except Exception:
                self.state.rides, self.state.records = rides, records
                raise


class FakeRideGateway:
    def __init__(self, state: InMemoryState):
        self.state = state

    def add(self, ride: RideView) -> RideView:
        self.state.rides[ride.id] = ride
        return ride

    def load_ride(self, ride_id) -> Optional[RideView]:
        return self.state.rides.get(ride_id)

    def mark_cancelled(self, ride_id, reason_code, at) -> bool:
        with self.state.lock:
            ride = self.state.rides.get(ride_id)
            if ride is None or ride.status.is_terminal:
                return False
            self.state.rides[ride_id] = replace(ride, status=RideStatus.CANCELLED)
            return True


class FakeLedger:
    def __init__(self, state: InMemoryState, clock=lambda: NOW):
        self.state = state
        self.clock = clock
        self.barrier: Optional[threading.Barrier] = None
        self.fail_with: Optional[Exception] = None

    def _involves(self, rec, user_id) -> bool:
        return rec.rider_id == user_id or rec.driver_id == user_id

    def insert(self, record) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        with self.state.lock:
            if any(r.ride_id == record.ride_id for r in self.state.records.values()):
                raise DuplicateCancellation(record.ride_id)
            self.state.records[record.id] = record

    def by_ride(self, ride_id):
        return next((r for r in self.state.records.values() if r.ride_id == ride_id), None)

    def by_id(self, cancellation_id):
        return self.state.records.get(cancellation_id)

    def _count_since(self, user_id, role, since) -> int:
        return sum(
            1
            for r in self.state.records.values()
            if self._involves(r, user_id) and r.cancelled_by == role.value and r.cancelled_at >= since
        )

    def count_today(self, user_id, role) -> int:
        if self.barrier is not None:
            self.barrier.wait(timeout=5)
        return self._count_since(user_id, role, start_of_day(self.clock()))

    def count_this_week(self, user_id, role) -> int:
        return self._count_since(user_id, role, start_of_week(self.clock()))

    def user_stats(self, user_id) -> UserCancellationStats:
        mine = [r for r in self.state.records.values() if self._involves(r, user_id) and r.cancelled_by != "system"]
        week = start_of_week(self.clock())
        return UserCancellationStats(
            user_id=user_id,
            total_cancellations=len(mine),
            cancellations_this_week=sum(1 for r in mine if r.cancelled_at >= week),
        )

    def user_history(self, user_id, limit, offset):
        mine = [r for r in self.state.records.values() if self._involves(r, user_id)]
        mine.sort(key=lambda r: (r.cancelled_at, r.id), reverse=True)
        return mine[offset:offset + limit], len(mine)

    def waive(self, cancellation_id, note) -> bool:
        rec = self.state.records.get(cancellation_id)
        if rec is None:
            return False
        rec.fee_waived = True
        rec.waiver_reason = WaiverReason.ADMIN_OVERRIDE.value
        rec.reason_text = append_note(rec.reason_text, note)
        return True

    def platform_stats(self, start, end):
        raise NotImplementedError


class StaticPolicySource:
    def __init__(self, policy=DEFAULT_POLICY):
        self.policy = policy
        self.calls = 0

    def active_policy(self):
        self.calls += 1
        return self.policy

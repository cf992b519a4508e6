import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from ridehail.enums import CancelledBy, ReasonCode, RideStatus, WaiverReason
from ridehail.errors import BadRequest, Forbidden, Internal, NotFound
from ridehail.policy import Policy
from ridehail.service import ALREADY_FINISHED, CancellationService, Deadline

from .utils import (
    NOW,
    FakeLedger,
    FakeRideGateway,
    FakeUnitOfWork,
    InMemoryState,
    StaticPolicySource,
    record_for,
    ride_view,
)


RIDER = uuid.UUID("00000000-0000-0000-0000-0000000000a1")
DRIVER = uuid.UUID("00000000-0000-0000-0000-0000000000d1")
STRANGER = uuid.UUID("00000000-0000-0000-0000-0000000000ff")


@pytest.fixture()
def state():
    return InMemoryState()


@pytest.fixture()
def rides(state):
    return FakeRideGateway(state)


@pytest.fixture()
def ledger(state):
    return FakeLedger(state)


@pytest.fixture()
def svc(state, rides, ledger):
    return CancellationService(
        ledger, rides, StaticPolicySource(), FakeUnitOfWork(state), clock=lambda: NOW
    )


def test_preview_inside_free_window(svc, rides):
    ride = rides.add(ride_view(RIDER, status=RideStatus.REQUESTED, minutes_ago=0.5))
    p = svc.preview(ride.id, RIDER)
    assert p.fee_amount == 0
    assert p.fee_waived is True
    assert p.waiver_reason == WaiverReason.FREE_CANCELLATION_WINDOW
    assert p.free_cancels_remaining == 3
    assert p.minutes_since_request == pytest.approx(0.5)
    assert p.minutes_since_accept is None


def test_preview_is_pure(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    first = svc.preview(ride.id, RIDER)
    second = svc.preview(ride.id, RIDER)
    assert (first.fee_amount, first.fee_waived, first.waiver_reason) == (
        second.fee_amount,
        second.fee_waived,
        second.waiver_reason,
    )
    assert state.records == {}
    assert rides.load_ride(ride.id).status == RideStatus.ACCEPTED


def test_preview_rejects_strangers_and_finished_rides(svc, rides):
    ride = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(Forbidden):
        svc.preview(ride.id, STRANGER)
    done = rides.add(ride_view(RIDER, DRIVER, status=RideStatus.COMPLETED))
    with pytest.raises(BadRequest) as exc:
        svc.preview(done.id, RIDER)
    assert exc.value.message == ALREADY_FINISHED
    with pytest.raises(NotFound):
        svc.preview(uuid.uuid4(), RIDER)


def test_preview_remaining_never_negative(svc, rides, state):
    for _ in range(5):
        old = ride_view(RIDER, DRIVER)
        rec = record_for(old, "rider", NOW - timedelta(hours=1))
        state.records[rec.id] = rec
    ride = rides.add(ride_view(RIDER, DRIVER))
    p = svc.preview(ride.id, RIDER)
    assert p.free_cancels_remaining == 0
    assert p.fee_waived is False


def test_cancel_writes_record_and_transitions_ride(svc, rides, ledger):
    ride = rides.add(ride_view(RIDER, DRIVER))
    out = svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND, "plans changed")
    assert out.cancelled_by == CancelledBy.RIDER
    assert out.fee_amount == 10.0
    assert out.fee_waived is True
    assert out.waiver_reason == WaiverReason.FIRST_CANCELLATION

    rec = ledger.by_ride(ride.id)
    assert rec is not None
    assert rec.reason_code == "changed_mind"
    assert rec.reason_text == "plans changed"
    assert rec.ride_status_at_cancel == "accepted"
    assert rec.minutes_since_accept == pytest.approx(4.5)
    assert rec.cancelled_at >= ride.created_at
    assert rides.load_ride(ride.id).status == RideStatus.CANCELLED


def test_cancel_is_single_shot(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND)
    with pytest.raises(BadRequest) as exc:
        svc.cancel(ride.id, DRIVER, ReasonCode.VEHICLE_ISSUE)
    assert exc.value.message == ALREADY_FINISHED
    assert len(state.records) == 1


def test_driver_cancel_is_never_charged(svc, rides, ledger):
    ride = rides.add(ride_view(RIDER, DRIVER, minutes_ago=10.5))
    out = svc.cancel(ride.id, DRIVER, ReasonCode.RIDER_NO_SHOW)
    assert (out.fee_amount, out.fee_waived, out.waiver_reason) == (0.0, True, WaiverReason.DRIVER_FAULT)
    assert ledger.by_ride(ride.id).cancelled_by == "driver"


def test_fourth_rider_cancel_of_the_day_is_charged(svc, rides, state):
    for hours in (1, 2, 3):
        old = ride_view(RIDER, DRIVER)
        rec = record_for(old, "rider", NOW - timedelta(hours=hours))
        state.records[rec.id] = rec
    ride = rides.add(ride_view(RIDER, DRIVER))
    out = svc.cancel(ride.id, RIDER, ReasonCode.WAIT_TOO_LONG)
    assert out.fee_amount == 10.0
    assert out.fee_waived is False
    assert out.waiver_reason is None


def test_cancel_validates_reason_for_role(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(BadRequest):
        svc.cancel(ride.id, RIDER, ReasonCode.RIDER_NO_SHOW)
    with pytest.raises(BadRequest):
        svc.cancel(ride.id, DRIVER, ReasonCode.CHANGED_MIND)
    assert state.records == {}


def test_cancel_by_stranger_is_forbidden(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(Forbidden):
        svc.cancel(ride.id, STRANGER, ReasonCode.CHANGED_MIND)
    assert rides.load_ride(ride.id).status == RideStatus.ACCEPTED


def test_concurrent_cancels_only_one_wins(state, rides, ledger):
    svc = CancellationService(ledger, rides, StaticPolicySource(), FakeUnitOfWork(state), clock=lambda: NOW)
    ride = rides.add(ride_view(RIDER, DRIVER))
    # both callers pass the terminal-status check before either writes
    ledger.barrier = threading.Barrier(2)

    def attempt(actor, code):
        try:
            svc.cancel(ride.id, actor, code)
            return "ok"
        except BadRequest as e:
            return e.message

    with ThreadPoolExecutor(max_workers=2) as ex:
        futs = [
            ex.submit(attempt, RIDER, ReasonCode.CHANGED_MIND),
            ex.submit(attempt, DRIVER, ReasonCode.VEHICLE_ISSUE),
        ]
        results = sorted(f.result() for f in as_completed(futs))

    assert results == sorted(["ok", ALREADY_FINISHED])
    assert len(state.records) == 1
    assert rides.load_ride(ride.id).status == RideStatus.CANCELLED


def test_lost_ride_transition_rolls_back_record(state, ledger):
    class FinishedElsewhere(FakeRideGateway):
        def mark_cancelled(self, ride_id, reason_code, at):
            return False

    rides = FinishedElsewhere(state)
    svc = CancellationService(ledger, rides, StaticPolicySource(), FakeUnitOfWork(state), clock=lambda: NOW)
    ride = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(BadRequest):
        svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND)
    assert state.records == {}


def test_persistence_failure_maps_to_internal(svc, rides, ledger, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    ledger.fail_with = OperationalError("INSERT", {}, Exception("connection reset"))
    with pytest.raises(Internal) as exc:
        svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND)
    assert "connection reset" not in exc.value.message
    assert state.records == {}
    assert rides.load_ride(ride.id).status == RideStatus.ACCEPTED


def test_expired_deadline_aborts_before_store(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    expired = Deadline(time.monotonic() - 1)
    with pytest.raises(Internal):
        svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND, deadline=expired)
    assert state.records == {}
    assert Deadline.after(0).expired is False
    assert Deadline.after(None).expires_at is None


def test_details_visible_to_parties_and_admin(svc, rides):
    ride = rides.add(ride_view(RIDER, DRIVER))
    svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND)
    assert svc.get_details(ride.id, DRIVER).ride_id == ride.id
    assert svc.get_details(ride.id, STRANGER, is_admin=True).ride_id == ride.id
    with pytest.raises(Forbidden):
        svc.get_details(ride.id, STRANGER)
    other = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(NotFound):
        svc.get_details(other.id, RIDER)


def test_history_paging_covers_everything_once(svc, state):
    for i in range(7):
        old = ride_view(RIDER, DRIVER)
        rec = record_for(old, "rider", NOW - timedelta(minutes=i * 7))
        state.records[rec.id] = rec
    full, total, _, _ = svc.my_history(RIDER, 1, 50)
    assert total == 7
    assert [r.cancelled_at for r in full] == sorted((r.cancelled_at for r in full), reverse=True)

    for n in range(1, total + 1):
        seen = []
        page = 1
        while True:
            items, _, _, _ = svc.my_history(RIDER, page, n)
            if not items:
                break
            seen.extend(items)
            page += 1
        assert [r.id for r in seen] == [r.id for r in full]


def test_history_coerces_paging(svc):
    _, _, page, size = svc.my_history(RIDER, 0, 0)
    assert (page, size) == (1, 20)
    _, _, page, size = svc.my_history(RIDER, 2, 51)
    assert (page, size) == (2, 20)
    _, _, page, size = svc.my_history(RIDER, 3, 50)
    assert (page, size) == (3, 50)
    _, _, page, size = svc.my_history(RIDER, "abc", None)
    assert (page, size) == (1, 20)
    _, _, page, size = svc.my_history(RIDER, "2", "5")
    assert (page, size) == (2, 5)


def test_stats_flags_use_rider_threshold_for_everyone(state, rides, ledger):
    policy = Policy(rider_penalty_threshold=4, driver_penalty_threshold=2)
    svc = CancellationService(ledger, rides, StaticPolicySource(policy), FakeUnitOfWork(state), clock=lambda: NOW)
    for i in range(2):
        old = ride_view(RIDER, DRIVER)
        rec = record_for(old, "driver", NOW - timedelta(hours=i + 1))
        state.records[rec.id] = rec

    # two driver cancels reach the driver threshold; flags still use the rider one
    driver = svc.my_stats(DRIVER)
    assert driver.cancellations_this_week == 2
    assert (driver.is_warned, driver.is_penalized) == (True, False)
    assert svc.admin_user_stats(DRIVER).is_penalized is False

    for i in range(2):
        old = ride_view(RIDER, DRIVER)
        rec = record_for(old, "driver", NOW - timedelta(hours=i + 3))
        state.records[rec.id] = rec
    assert svc.admin_user_stats(DRIVER).is_penalized is True


class ExpiresAt(Deadline):
    """Live until ``stage`` is reached."""

    def __init__(self, stage):
        super().__init__(None)
        self.stage = stage

    def check(self, stage):
        if stage == self.stage:
            raise Internal("request deadline exceeded")


def test_stats_and_preview_check_deadline_before_policy_load(svc, rides):
    ride = rides.add(ride_view(RIDER, DRIVER))
    with pytest.raises(Internal) as exc:
        svc.my_stats(RIDER, deadline=ExpiresAt("policy load"))
    assert exc.value.message == "request deadline exceeded"
    with pytest.raises(Internal):
        svc.preview(ride.id, RIDER, deadline=ExpiresAt("policy load"))


def test_conflict_reread_respects_deadline(svc, rides, state):
    ride = rides.add(ride_view(RIDER, DRIVER))
    stale = rides.load_ride(ride.id)
    svc.cancel(ride.id, DRIVER, ReasonCode.RIDER_NO_SHOW)
    # the loser still sees the ride as live
    rides.add(stale)
    with pytest.raises(Internal):
        svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND, deadline=ExpiresAt("conflict re-read"))
    assert len(state.records) == 1


def test_admin_waive(svc, rides, ledger):
    ride = rides.add(ride_view(RIDER, DRIVER))
    svc.cancel(ride.id, RIDER, ReasonCode.CHANGED_MIND, "late")
    rec = ledger.by_ride(ride.id)
    svc.admin_waive(rec.id, "  support ticket 42 ")
    assert rec.fee_waived is True
    assert rec.waiver_reason == WaiverReason.ADMIN_OVERRIDE.value
    assert rec.reason_text == "late [Admin waived: support ticket 42]"

    with pytest.raises(BadRequest):
        svc.admin_waive(rec.id, "   ")
    with pytest.raises(NotFound):
        svc.admin_waive(uuid.uuid4(), "nope")


def test_admin_stats_rejects_empty_interval(svc):
    with pytest.raises(BadRequest):
        svc.admin_stats(NOW, NOW)


def test_reasons_by_role(svc):
    assert svc.reasons(is_driver=True)[0].code == ReasonCode.RIDER_NO_SHOW
    assert svc.reasons(is_driver=False)[0].code == ReasonCode.CHANGED_MIND

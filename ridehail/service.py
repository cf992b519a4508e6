"""Cancellation orchestration.

The service authorises the actor against the ride, asks the fee calculator
for a decision, and writes the ledger record together with the ride
transition. Persistence goes through the ``LedgerStore``, ``RideGateway`` and
``PolicySource`` protocols so the same code runs against SQLAlchemy sessions
and in-memory fakes.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Protocol, Tuple, Union

from prometheus_client import Counter
from sqlalchemy.exc import SQLAlchemyError

from .enums import CancelledBy, ReasonCode, WaiverReason
from .errors import BadRequest, DuplicateCancellation, Forbidden, Internal, NotFound
from .fees import FeeFunction, calculate_fee
from .gateway import RideGateway, RideView
from .ledger import LedgerStore, PlatformStats, UserCancellationStats, admin_waiver_note
from .models import CancellationRecord, utcnow
from .policy import Policy, PolicySource
from .pricing import base_fee
from .reasons import ReasonOption, is_valid_reason, reasons_for


logger = logging.getLogger("ridehail.cancellation")

CANCELLATIONS = Counter(
    "ridehail_cancellations_total",
    "Rides cancelled through the cancellation service",
    ["cancelled_by", "waived"],
)
CANCEL_CONFLICTS = Counter(
    "ridehail_cancel_conflicts_total",
    "Cancel attempts that lost to a concurrent cancel or a finished ride",
)
FEE_WAIVERS = Counter(
    "ridehail_fee_waivers_total",
    "Cancellation fees waived, by waiver reason",
    ["reason"],
)

ALREADY_FINISHED = "ride already completed or cancelled"
MAX_PAGE_SIZE = 50
DEFAULT_PAGE_SIZE = 20


class UnitOfWork(Protocol):
    def atomic(self): ...


class Deadline:
    """Expiry for one request.

    Checked before every store round-trip; on Postgres the remaining time also
    caps each statement and lock wait (see ``database.bound_to_deadline``).
    """

    def __init__(self, expires_at: Optional[float] = None):
        self.expires_at = expires_at

    @classmethod
    def after(cls, seconds: Optional[float]) -> "Deadline":
        if seconds is None or seconds <= 0:
            return cls(None)
        return cls(time.monotonic() + seconds)

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and time.monotonic() >= self.expires_at

    def check(self, stage: str) -> None:
        if self.expired:
            logger.warning("deadline exceeded before %s", stage)
            raise Internal("request deadline exceeded")


NO_DEADLINE = Deadline(None)


class _RideFinished(Exception):
    pass


@dataclass(frozen=True)
class CancellationPreview:
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason]
    explanation: str
    free_cancels_remaining: int
    minutes_since_request: float
    minutes_since_accept: Optional[float]


@dataclass(frozen=True)
class CancelOutcome:
    ride_id: uuid.UUID
    cancelled_by: CancelledBy
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason]
    explanation: str
    cancelled_at: datetime


def _minutes_between(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() / 60.0)


def _as_int(raw, default: int) -> int:
    # Unparseable query values fall back to the default instead of a 400
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


class CancellationService:
    def __init__(
        self,
        ledger: LedgerStore,
        rides: RideGateway,
        policies: PolicySource,
        uow: UnitOfWork,
        *,
        fee_fn: FeeFunction = base_fee,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.rides = rides
        self.policies = policies
        self.uow = uow
        self.fee_fn = fee_fn
        self.clock = clock

    # ------------------------------------------------------------------
    # helpers

    @contextmanager
    def _store(self, what: str):
        try:
            yield
        except SQLAlchemyError:
            logger.exception("persistence failure during %s", what)
            raise Internal(f"failed to {what}")

    def _policy(self, deadline: Deadline) -> Policy:
        deadline.check("policy load")
        with self._store("load cancellation policy"):
            return self.policies.active_policy()

    def _load_ride(self, ride_id: uuid.UUID, deadline: Deadline) -> RideView:
        deadline.check("ride load")
        with self._store("load ride"):
            ride = self.rides.load_ride(ride_id)
        if ride is None:
            raise NotFound("ride not found")
        return ride

    def _party(self, ride: RideView, actor_id: uuid.UUID, denied: str) -> CancelledBy:
        role = ride.party_role(actor_id)
        if role is None:
            raise Forbidden(denied)
        return CancelledBy(role)

    def _decide(self, ride: RideView, actor_id: uuid.UUID, cancelled_by: CancelledBy, now: datetime, deadline: Deadline):
        policy = self._policy(deadline)
        minutes_since_request = _minutes_between(ride.created_at, now)
        minutes_since_accept = None
        if ride.accepted_at is not None:
            minutes_since_accept = _minutes_between(ride.accepted_at, now)

        # Advisory: read outside the write transaction
        deadline.check("count queries")
        with self._store("count cancellations"):
            today = self.ledger.count_today(actor_id, cancelled_by)
            week = self.ledger.count_this_week(actor_id, cancelled_by)

        decision = calculate_fee(
            cancelled_by=cancelled_by,
            ride_status=ride.status,
            estimated_fare=ride.estimated_fare,
            minutes_since_request=minutes_since_request,
            today_count=today,
            week_count=week,
            policy=policy,
            fee_fn=self.fee_fn,
        )
        return policy, decision, today, minutes_since_request, minutes_since_accept

    def _with_flags(self, stats: UserCancellationStats, deadline: Deadline) -> UserCancellationStats:
        # rider threshold for every user
        threshold = self._policy(deadline).rider_penalty_threshold
        stats.is_warned = stats.cancellations_this_week >= threshold // 2
        stats.is_penalized = stats.cancellations_this_week >= threshold
        return stats

    # ------------------------------------------------------------------
    # rider / driver operations

    def preview(self, ride_id: uuid.UUID, actor_id: uuid.UUID, deadline: Deadline = NO_DEADLINE) -> CancellationPreview:
        ride = self._load_ride(ride_id, deadline)
        cancelled_by = self._party(ride, actor_id, "not authorized for this ride")
        if ride.status.is_terminal:
            raise BadRequest(ALREADY_FINISHED)

        policy, decision, today, since_request, since_accept = self._decide(
            ride, actor_id, cancelled_by, self.clock(), deadline
        )
        return CancellationPreview(
            fee_amount=decision.fee_amount,
            fee_waived=decision.fee_waived,
            waiver_reason=decision.waiver_reason,
            explanation=decision.explanation,
            free_cancels_remaining=max(0, policy.max_free_cancels_per_day - today),
            minutes_since_request=since_request,
            minutes_since_accept=since_accept,
        )

    def cancel(
        self,
        ride_id: uuid.UUID,
        actor_id: uuid.UUID,
        reason_code: ReasonCode,
        reason_text: Optional[str] = None,
        deadline: Deadline = NO_DEADLINE,
    ) -> CancelOutcome:
        ride = self._load_ride(ride_id, deadline)
        cancelled_by = self._party(ride, actor_id, "not authorized to cancel this ride")
        if ride.status.is_terminal:
            raise BadRequest(ALREADY_FINISHED)
        if not is_valid_reason(cancelled_by, reason_code):
            raise BadRequest(f"invalid reason code for {cancelled_by.value}")

        now = max(self.clock(), ride.created_at)
        _, decision, _, since_request, since_accept = self._decide(ride, actor_id, cancelled_by, now, deadline)

        record = CancellationRecord(
            id=uuid.uuid4(),
            ride_id=ride.id,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            cancelled_by=cancelled_by.value,
            reason_code=reason_code.value,
            reason_text=reason_text,
            fee_amount=decision.fee_amount,
            fee_waived=decision.fee_waived,
            waiver_reason=decision.waiver_reason.value if decision.waiver_reason else None,
            minutes_since_request=since_request,
            minutes_since_accept=since_accept,
            ride_status_at_cancel=ride.status.value,
            pickup_lat=ride.pickup_lat,
            pickup_lng=ride.pickup_lng,
            cancelled_at=now,
            created_at=now,
        )

        try:
            with self._store("cancel ride"):
                with self.uow.atomic():
                    deadline.check("record insert")
                    self.ledger.insert(record)
                    deadline.check("ride update")
                    if not self.rides.mark_cancelled(ride.id, reason_code.value, now):
                        raise _RideFinished()
        except (DuplicateCancellation, _RideFinished):
            CANCEL_CONFLICTS.inc()
            deadline.check("conflict re-read")
            with self._store("load ride"):
                current = self.rides.load_ride(ride.id)
            logger.info(
                "cancel conflict on ride %s (status now %s)",
                ride.id,
                current.status.value if current else "missing",
            )
            raise BadRequest(ALREADY_FINISHED)

        CANCELLATIONS.labels(cancelled_by.value, str(decision.fee_waived).lower()).inc()
        if decision.fee_waived and decision.waiver_reason is not None:
            FEE_WAIVERS.labels(decision.waiver_reason.value).inc()
        logger.info(
            "ride %s cancelled by %s reason=%s fee=%.2f waived=%s",
            ride.id,
            cancelled_by.value,
            reason_code.value,
            decision.fee_amount,
            decision.fee_waived,
        )
        return CancelOutcome(
            ride_id=ride.id,
            cancelled_by=cancelled_by,
            fee_amount=decision.fee_amount,
            fee_waived=decision.fee_waived,
            waiver_reason=decision.waiver_reason,
            explanation=decision.explanation,
            cancelled_at=now,
        )

    def get_details(
        self,
        ride_id: uuid.UUID,
        actor_id: uuid.UUID,
        is_admin: bool = False,
        deadline: Deadline = NO_DEADLINE,
    ) -> CancellationRecord:
        ride = self._load_ride(ride_id, deadline)
        if not is_admin:
            self._party(ride, actor_id, "not authorized to view this cancellation")
        deadline.check("record load")
        with self._store("get cancellation details"):
            record = self.ledger.by_ride(ride_id)
        if record is None:
            raise NotFound("cancellation record not found")
        return record

    def my_stats(self, actor_id: uuid.UUID, deadline: Deadline = NO_DEADLINE) -> UserCancellationStats:
        deadline.check("stats aggregation")
        with self._store("get cancellation stats"):
            stats = self.ledger.user_stats(actor_id)
        return self._with_flags(stats, deadline)

    def my_history(
        self,
        actor_id: uuid.UUID,
        page: Union[int, str, None] = 1,
        page_size: Union[int, str, None] = DEFAULT_PAGE_SIZE,
        deadline: Deadline = NO_DEADLINE,
    ) -> Tuple[List[CancellationRecord], int, int, int]:
        """Return ``(records, total, page, page_size)`` after coercing paging input."""
        page = _as_int(page, 1)
        page_size = _as_int(page_size, DEFAULT_PAGE_SIZE)
        if page < 1:
            page = 1
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE
        offset = (page - 1) * page_size
        deadline.check("history query")
        with self._store("get cancellation history"):
            records, total = self.ledger.user_history(actor_id, page_size, offset)
        return records, total, page, page_size

    def reasons(self, is_driver: bool) -> Tuple[ReasonOption, ...]:
        return reasons_for(is_driver)

    # ------------------------------------------------------------------
    # admin operations

    def admin_waive(self, cancellation_id: uuid.UUID, reason: str, deadline: Deadline = NO_DEADLINE) -> None:
        reason = (reason or "").strip()
        if not reason:
            raise BadRequest("waiver reason is required")
        deadline.check("waive update")
        with self._store("waive fee"):
            with self.uow.atomic():
                if not self.ledger.waive(cancellation_id, admin_waiver_note(reason)):
                    raise NotFound("cancellation not found")
        FEE_WAIVERS.labels(WaiverReason.ADMIN_OVERRIDE.value).inc()
        logger.info("cancellation %s fee waived by admin", cancellation_id)

    def admin_stats(self, start: datetime, end: datetime, deadline: Deadline = NO_DEADLINE) -> PlatformStats:
        if start >= end:
            raise BadRequest("'from' must be before 'to'")
        deadline.check("stats aggregation")
        with self._store("get cancellation stats"):
            return self.ledger.platform_stats(start, end)

    def admin_user_stats(
        self,
        user_id: uuid.UUID,
        deadline: Deadline = NO_DEADLINE,
    ) -> UserCancellationStats:
        return self.my_stats(user_id, deadline=deadline)

"""Pure cancellation fee decision.

Rules are evaluated in order and the first match wins:

1. drivers are never charged,
2. the free window after requesting,
3. rides nobody has accepted yet,
4. the daily and weekly free-cancel budget (fee recorded but waived),
5. otherwise the fee is charged.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .enums import CancelledBy, RideStatus, WaiverReason
from .policy import Policy
from .pricing import base_fee as default_base_fee


FeeFunction = Callable[[float, float], float]


@dataclass(frozen=True)
class FeeDecision:
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason]
    explanation: str


def calculate_fee(
    *,
    cancelled_by: CancelledBy,
    ride_status: RideStatus,
    estimated_fare: float,
    minutes_since_request: float,
    today_count: int,
    week_count: int,
    policy: Policy,
    fee_fn: FeeFunction = default_base_fee,
) -> FeeDecision:
    if cancelled_by == CancelledBy.DRIVER:
        return FeeDecision(0.0, True, WaiverReason.DRIVER_FAULT, "Driver cancellations are not charged a fee")

    window = policy.free_cancel_window_minutes
    if minutes_since_request < window:
        return FeeDecision(
            0.0,
            True,
            WaiverReason.FREE_CANCELLATION_WINDOW,
            f"Free cancellation within {window} minutes of requesting",
        )

    if ride_status == RideStatus.REQUESTED:
        return FeeDecision(
            0.0,
            True,
            WaiverReason.FREE_CANCELLATION_WINDOW,
            "No fee when ride hasn't been accepted yet",
        )

    fee = max(0.0, float(fee_fn(minutes_since_request, estimated_fare)))

    if today_count < policy.max_free_cancels_per_day and week_count < policy.max_free_cancels_per_week:
        return FeeDecision(
            fee,
            True,
            WaiverReason.FIRST_CANCELLATION,
            f"Free cancellation ({today_count + 1} of {policy.max_free_cancels_per_day} daily limit used)",
        )

    limit = "daily" if today_count >= policy.max_free_cancels_per_day else "weekly"
    return FeeDecision(
        fee,
        False,
        None,
        f"Cancellation fee of {fee:.2f} applied "
        f"(cancelled after {int(minutes_since_request)} minutes, {limit} free limit exceeded)",
    )

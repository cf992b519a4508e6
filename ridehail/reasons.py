from __future__ import annotations

from dataclasses import dataclass

from .enums import CancelledBy, ReasonCode


@dataclass(frozen=True)
class ReasonOption:
    code: ReasonCode
    label: str
    description: str


RIDER_REASONS: tuple[ReasonOption, ...] = (
    ReasonOption(ReasonCode.CHANGED_MIND, "Changed my mind", "I no longer need a ride"),
    ReasonOption(ReasonCode.DRIVER_TOO_FAR, "Driver is too far", "The driver is taking too long to arrive"),
    ReasonOption(ReasonCode.WAIT_TOO_LONG, "Wait time too long", "I've been waiting too long for a match"),
    ReasonOption(ReasonCode.WRONG_LOCATION, "Wrong pickup location", "I set the wrong pickup or destination"),
    ReasonOption(ReasonCode.PRICE_CHANGED, "Price changed", "The fare is higher than expected"),
    ReasonOption(ReasonCode.FOUND_OTHER_RIDE, "Found another ride", "I found another way to get there"),
    ReasonOption(ReasonCode.EMERGENCY, "Emergency", "I have a personal emergency"),
    ReasonOption(ReasonCode.OTHER, "Other reason", "Another reason not listed above"),
)

DRIVER_REASONS: tuple[ReasonOption, ...] = (
    ReasonOption(ReasonCode.RIDER_NO_SHOW, "Rider didn't show up", "The rider was not at the pickup location"),
    ReasonOption(ReasonCode.RIDER_UNREACHABLE, "Can't reach rider", "Unable to contact the rider by phone or chat"),
    ReasonOption(ReasonCode.VEHICLE_ISSUE, "Vehicle issue", "My vehicle has a mechanical problem"),
    ReasonOption(ReasonCode.UNSAFE_PICKUP, "Unsafe pickup location", "The pickup location is unsafe or inaccessible"),
    ReasonOption(ReasonCode.TOO_FAR, "Too far away", "The pickup location is too far from my current location"),
    ReasonOption(ReasonCode.DRIVER_EMERGENCY, "Emergency", "I have a personal emergency"),
    ReasonOption(ReasonCode.DRIVER_OTHER, "Other reason", "Another reason not listed above"),
)

# Not selectable by users; only automated flows cancel with these.
SYSTEM_REASONS: tuple[ReasonOption, ...] = (
    ReasonOption(ReasonCode.NO_DRIVER_FOUND, "No driver found", "No driver accepted the request"),
    ReasonOption(ReasonCode.REQUEST_TIMEOUT, "Request timed out", "The request expired before a match"),
    ReasonOption(ReasonCode.PAYMENT_FAILED, "Payment failed", "The payment method was declined"),
    ReasonOption(ReasonCode.FRAUD_DETECTED, "Fraud detected", "The request was flagged by risk checks"),
)

_BY_ROLE = {
    CancelledBy.RIDER: RIDER_REASONS,
    CancelledBy.DRIVER: DRIVER_REASONS,
    CancelledBy.SYSTEM: SYSTEM_REASONS,
}


def reasons_for(is_driver: bool) -> tuple[ReasonOption, ...]:
    return DRIVER_REASONS if is_driver else RIDER_REASONS


def is_valid_reason(role: CancelledBy, code: ReasonCode) -> bool:
    return any(opt.code == code for opt in _BY_ROLE[role])

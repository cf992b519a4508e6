from enum import Enum


class RideStatus(str, Enum):
    REQUESTED = "requested"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RideStatus.COMPLETED, RideStatus.CANCELLED})


class CancelledBy(str, Enum):
    RIDER = "rider"
    DRIVER = "driver"
    SYSTEM = "system"


class ReasonCode(str, Enum):
    # rider
    CHANGED_MIND = "changed_mind"
    DRIVER_TOO_FAR = "driver_too_far"
    WAIT_TOO_LONG = "wait_too_long"
    WRONG_LOCATION = "wrong_location"
    PRICE_CHANGED = "price_changed"
    FOUND_OTHER_RIDE = "found_other_ride"
    EMERGENCY = "emergency"
    OTHER = "other"
    # driver
    RIDER_NO_SHOW = "rider_no_show"
    RIDER_UNREACHABLE = "rider_unreachable"
    VEHICLE_ISSUE = "vehicle_issue"
    UNSAFE_PICKUP = "unsafe_pickup"
    TOO_FAR = "too_far"
    DRIVER_EMERGENCY = "driver_emergency"
    DRIVER_OTHER = "driver_other"
    # system
    NO_DRIVER_FOUND = "no_driver_found"
    REQUEST_TIMEOUT = "request_timeout"
    PAYMENT_FAILED = "payment_failed"
    FRAUD_DETECTED = "fraud_detected"


class WaiverReason(str, Enum):
    FREE_CANCELLATION_WINDOW = "free_cancellation_window"
    DRIVER_FAULT = "driver_fault"
    SYSTEM_ISSUE = "system_issue"
    FIRST_CANCELLATION = "first_cancellation"
    ADMIN_OVERRIDE = "admin_override"
    PROMO_EXEMPTION = "promo_exemption"


class UserRole(str, Enum):
    RIDER = "rider"
    DRIVER = "driver"
    ADMIN = "admin"

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from sqlalchemy import update
from sqlalchemy.orm import Session

from .enums import RideStatus, TERMINAL_STATUSES
from .models import Ride


@dataclass(frozen=True)
class RideView:
    id: uuid.UUID
    rider_id: uuid.UUID
    driver_id: Optional[uuid.UUID]
    status: RideStatus
    pickup_lat: float
    pickup_lng: float
    estimated_fare: float
    created_at: datetime
    accepted_at: Optional[datetime] = None

    def party_role(self, user_id: uuid.UUID) -> Optional[str]:
        """``"rider"``/``"driver"`` when the user is a party to the ride, else None."""
        if user_id == self.rider_id:
            return "rider"
        if self.driver_id is not None and user_id == self.driver_id:
            return "driver"
        return None


class RideGateway(Protocol):
    def load_ride(self, ride_id: uuid.UUID) -> Optional[RideView]: ...

    def mark_cancelled(self, ride_id: uuid.UUID, reason_code: str, at: datetime) -> bool: ...


class SqlRideGateway:
    def __init__(self, db: Session):
        self.db = db

    def load_ride(self, ride_id: uuid.UUID) -> Optional[RideView]:
        # populate_existing: a concurrent cancel may have committed since this session last looked
        row = self.db.get(Ride, ride_id, populate_existing=True)
        if row is None:
            return None
        return RideView(
            id=row.id,
            rider_id=row.rider_id,
            driver_id=row.driver_id,
            status=RideStatus(row.status),
            pickup_lat=row.pickup_lat,
            pickup_lng=row.pickup_lng,
            estimated_fare=float(row.estimated_fare or 0.0),
            created_at=row.created_at,
            accepted_at=row.accepted_at,
        )

    def mark_cancelled(self, ride_id: uuid.UUID, reason_code: str, at: datetime) -> bool:
        """Move a non-terminal ride to ``cancelled``; False when the row was already terminal."""
        result = self.db.execute(
            update(Ride)
            .where(Ride.id == ride_id, Ride.status.not_in([s.value for s in TERMINAL_STATUSES]))
            .values(
                status=RideStatus.CANCELLED.value,
                cancelled_at=at,
                cancellation_reason=reason_code,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

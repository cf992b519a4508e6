from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .enums import CancelledBy, ReasonCode, WaiverReason


class CancelRideIn(BaseModel):
    reason_code: ReasonCode
    reason_text: Optional[str] = Field(default=None, max_length=1024)


class WaiveFeeIn(BaseModel):
    reason: str = Field(min_length=1, max_length=512)


class CancellationPreviewOut(BaseModel):
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason] = None
    explanation: str
    free_cancels_remaining: int
    minutes_since_request: float
    minutes_since_accept: Optional[float] = None


class CancelRideOut(BaseModel):
    ride_id: UUID
    cancelled_by: CancelledBy
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason] = None
    explanation: str
    cancelled_at: datetime


class CancellationRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    ride_id: UUID
    rider_id: UUID
    driver_id: Optional[UUID] = None
    cancelled_by: CancelledBy
    reason_code: ReasonCode
    reason_text: Optional[str] = None
    fee_amount: float
    fee_waived: bool
    waiver_reason: Optional[WaiverReason] = None
    minutes_since_request: float
    minutes_since_accept: Optional[float] = None
    ride_status_at_cancel: str
    pickup_lat: float
    pickup_lng: float
    cancelled_at: datetime
    created_at: datetime


class UserCancellationStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    total_cancellations: int
    cancellations_today: int
    cancellations_this_week: int
    cancellations_this_month: int
    total_fees_charged: float
    total_fees_waived: float
    cancellation_rate: float
    last_cancellation_at: Optional[datetime] = None
    is_warned: bool
    is_penalized: bool


class TopReasonOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    reason_code: str
    count: int
    percentage: float


class CancellationStatsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_cancellations: int
    rider_cancellations: int
    driver_cancellations: int
    system_cancellations: int
    total_fees_collected: float
    total_fees_waived: float
    average_minutes_to_cancel: float
    cancellation_rate: float
    top_reasons: List[TopReasonOut]


class ReasonOptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    code: ReasonCode
    label: str
    description: str


class ReasonsOut(BaseModel):
    reasons: List[ReasonOptionOut]


class CancellationHistoryOut(BaseModel):
    cancellations: List[CancellationRecordOut]
    total: int
    page: int
    page_size: int

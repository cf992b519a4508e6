from typing import Optional

from fastapi import APIRouter, Depends

from ..auth import get_current_user, get_deadline, is_admin
from ..deps import get_service, parse_uuid
from ..models import User
from ..reasons import reasons_for
from ..responses import paginated_meta, success_body
from ..schemas import (
    CancellationHistoryOut,
    CancellationPreviewOut,
    CancellationRecordOut,
    CancelRideIn,
    CancelRideOut,
    ReasonOptionOut,
    ReasonsOut,
    UserCancellationStatsOut,
)
from ..service import CancellationService, Deadline


router = APIRouter(prefix="/api/v1", tags=["cancellations"])


@router.get("/rides/{ride_id}/cancel/preview")
def preview_cancellation(
    ride_id: str,
    user: User = Depends(get_current_user),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    preview = svc.preview(parse_uuid(ride_id, "ride"), user.id, deadline=deadline)
    out = CancellationPreviewOut.model_validate(preview, from_attributes=True)
    return success_body(out.model_dump(mode="json"))


@router.post("/rides/{ride_id}/cancel")
def cancel_ride(
    ride_id: str,
    payload: CancelRideIn,
    user: User = Depends(get_current_user),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    res = svc.cancel(
        parse_uuid(ride_id, "ride"),
        user.id,
        payload.reason_code,
        payload.reason_text,
        deadline=deadline,
    )
    out = CancelRideOut.model_validate(res, from_attributes=True)
    return success_body(out.model_dump(mode="json"))


@router.get("/rides/{ride_id}/cancellation")
def get_cancellation_details(
    ride_id: str,
    user: User = Depends(get_current_user),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    rec = svc.get_details(parse_uuid(ride_id, "ride"), user.id, is_admin=is_admin(user), deadline=deadline)
    return success_body(CancellationRecordOut.model_validate(rec).model_dump(mode="json"))


@router.get("/cancellations/stats")
def my_cancellation_stats(
    user: User = Depends(get_current_user),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    stats = svc.my_stats(user.id, deadline=deadline)
    return success_body(UserCancellationStatsOut.model_validate(stats).model_dump(mode="json"))


@router.get("/cancellations/history")
def my_cancellation_history(
    page: Optional[str] = None,
    page_size: Optional[str] = None,
    user: User = Depends(get_current_user),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    records, total, page, page_size = svc.my_history(user.id, page, page_size, deadline=deadline)
    out = CancellationHistoryOut(
        cancellations=[CancellationRecordOut.model_validate(r) for r in records],
        total=total,
        page=page,
        page_size=page_size,
    )
    return success_body(out.model_dump(mode="json"), meta=paginated_meta(total, page, page_size))


@router.get("/cancellations/reasons")
def cancellation_reasons(type: str = "rider"):
    options = reasons_for(is_driver=(type or "").lower() == "driver")
    out = ReasonsOut(reasons=[ReasonOptionOut.model_validate(o) for o in options])
    return success_body(out.model_dump(mode="json"))

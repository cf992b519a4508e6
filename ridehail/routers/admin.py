from datetime import datetime, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth import get_deadline, require_admin
from ..deps import get_service, parse_uuid
from ..models import utcnow
from ..responses import success_body
from ..schemas import CancellationStatsOut, UserCancellationStatsOut, WaiveFeeIn
from ..service import CancellationService, Deadline


router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])


def _month_back(now: datetime) -> datetime:
    # Calendar month; clamp the day for short months
    year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
    day = now.day
    while True:
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            day -= 1


def _parse_day(raw: Optional[str]) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.strptime(raw, "%Y-%m-%d")
    except ValueError:
        return None


@router.post("/cancellations/{cancellation_id}/waive")
def waive_fee(
    cancellation_id: str,
    payload: WaiveFeeIn,
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    svc.admin_waive(parse_uuid(cancellation_id, "cancellation"), payload.reason, deadline=deadline)
    return success_body({"message": "cancellation fee waived"})


@router.get("/cancellations/stats")
def platform_stats(
    from_: Optional[str] = Query(default=None, alias="from"),
    to: Optional[str] = Query(default=None),
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    """Platform totals over ``[from, to]``; dates are YYYY-MM-DD and ``to`` is inclusive."""
    now = utcnow()
    start = _parse_day(from_) or _month_back(now)
    end_day = _parse_day(to)
    end = end_day + timedelta(days=1) if end_day else now
    stats = svc.admin_stats(start, end, deadline=deadline)
    return success_body(CancellationStatsOut.model_validate(stats).model_dump(mode="json"))


@router.get("/cancellations/users/{user_id}/stats")
def user_stats(
    user_id: str,
    svc: CancellationService = Depends(get_service),
    deadline: Deadline = Depends(get_deadline),
):
    stats = svc.admin_user_stats(parse_uuid(user_id, "user"), deadline=deadline)
    return success_body(UserCancellationStatsOut.model_validate(stats).model_dump(mode="json"))

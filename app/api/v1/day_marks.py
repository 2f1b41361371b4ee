"""
Day mark API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db, get_refresh_queue
from app.application.day_marks import DayMarkValidationError, MarkDayUseCase
from app.application.totals_refresh import TotalsRefreshQueue
from app.infrastructure.db.models import User


router = APIRouter(prefix="/api/v1/day-marks", tags=["day-marks"])


# === Request/Response models ===

class MarkDayRequest(BaseModel):
    date: str  # YYYY-MM-DD в часовом поясе пользователя
    value: bool = True


class MarkDayResponse(BaseModel):
    date: str
    value: bool
    run_operation: str | None = None
    run_message: str | None = None


# === Endpoints ===

@router.post("", response_model=MarkDayResponse)
def mark_day(
    req: MarkDayRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    refresh_queue: TotalsRefreshQueue = Depends(get_refresh_queue),
):
    """Отметить день"""
    try:
        result = MarkDayUseCase(db, refresh_queue=refresh_queue).execute(
            user_id=user.id,
            day=req.date,
            value=req.value,
        )
    except DayMarkValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    return MarkDayResponse(**result)

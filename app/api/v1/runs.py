"""
Run statistics API endpoints
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from app.api.deps import get_current_user, get_db
from app.application.run_totals import RunTotalsService
from app.application.runs import RunValidationError
from app.infrastructure.db.models import User
from app.readmodels.run_health import RunHealthService


router = APIRouter(prefix="/api/v1/runs", tags=["runs"])


# === Response models ===

class RunTotalsResponse(BaseModel):
    total_days: int
    current_run_days: int
    longest_run_days: int
    total_runs: int
    avg_run_length: float


class MonthTotalsResponse(BaseModel):
    year_month: str
    total_days: int
    longest_run_days: int
    active_run_days: int | None  # None: в месяце нет активной серии
    source: str  # aggregate | realtime


class RunsHealthResponse(BaseModel):
    status: str  # healthy | unhealthy
    checks: dict[str, int]


# === Endpoints ===

@router.get("/totals", response_model=RunTotalsResponse)
def get_totals(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Статистика серий пользователя"""
    return RunTotalsResponse(**RunTotalsService(db).get_totals(user.id))


@router.get("/months/{year_month}", response_model=MonthTotalsResponse)
def get_month_totals(
    year_month: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Итоги месяца (из агрегата или real-time)"""
    try:
        totals = RunTotalsService(db).get_month_totals(user.id, year_month)
    except RunValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return MonthTotalsResponse(**totals)


@router.get("/health", response_model=RunsHealthResponse)
def runs_health(db: Session = Depends(get_db)):
    """Проверка инвариантов серий; всегда 200, статус в теле"""
    return RunsHealthResponse(**RunHealthService(db).check())

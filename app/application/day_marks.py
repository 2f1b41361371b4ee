"""Day-mark use case and the best-effort run maintenance hook"""
import logging
from datetime import date, datetime

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.application.runs import RunMaintenanceEngine, RunOperationResult
from app.application.totals_refresh import TotalsRefreshQueue
from app.config import get_settings
from app.infrastructure.db.models import DayMark, User
from app.infrastructure.eventlog.repository import ClickEventRepository
from app.utils.dates import months_spanned, parse_local_date, user_local_today, year_month

logger = logging.getLogger(__name__)


class DayMarkValidationError(ValueError):
    pass


def extend_runs_for_day_mark(db: Session, user_id: int, local_date: date | str) -> RunOperationResult | None:
    """
    Update runs after a successful day-mark write.

    Best-effort: the day mark is already committed, so any failure here is
    logged and swallowed (the nightly click-log catch-up repairs it).
    """
    if not get_settings().RUNS_V2_ENABLED:
        logger.debug("Runs v2 disabled, skipping run maintenance for user=%s", user_id)
        return None
    try:
        return RunMaintenanceEngine(db).extend(user_id, local_date)
    except Exception:
        logger.exception("Run maintenance failed user=%s date=%s (day mark kept)", user_id, local_date)
        return None


def months_affected(result: RunOperationResult, today: date) -> list[str]:
    """Months whose aggregates a run operation may have changed."""
    months = {year_month(today)}
    for run in [*result.affected_runs, *result.deactivated_runs]:
        months.update(months_spanned(run.start_date, run.end_date))
    return sorted(months)


class MarkDayUseCase:
    """Upsert DayMark + append ClickEvent, then maintain runs and totals."""

    def __init__(self, db: Session, refresh_queue: TotalsRefreshQueue | None = None):
        self.db = db
        self.click_repo = ClickEventRepository(db)
        self.refresh_queue = refresh_queue

    def execute(
        self,
        user_id: int,
        day: date | str,
        value: bool = True,
        now: datetime | None = None,
    ) -> dict:
        user = self.db.query(User).filter(User.id == user_id).first()
        if not user:
            raise DayMarkValidationError(f"Пользователь #{user_id} не найден")

        try:
            d = parse_local_date(day)
        except ValueError as exc:
            raise DayMarkValidationError(str(exc)) from exc

        if value is not True:
            raise DayMarkValidationError("Only marking a day (value=true) is supported")

        min_date = get_settings().MIN_MARK_DATE
        if d < min_date:
            raise DayMarkValidationError(f"Нельзя отметить дату раньше {min_date.isoformat()}")

        local_today = user_local_today(user.timezone, now)
        if d > local_today:
            raise DayMarkValidationError("Нельзя отметить будущую дату")

        mark = self.db.query(DayMark).filter(
            DayMark.user_id == user_id,
            DayMark.date == d,
        ).first()
        if mark:
            mark.updated_at = func.now()
        else:
            self.db.add(DayMark(user_id=user_id, date=d, value=True))

        self.click_repo.append_click(
            user_id=user_id,
            day=d,
            user_local_date=local_today,
            user_timezone=user.timezone,
        )
        self.db.commit()

        result = extend_runs_for_day_mark(self.db, user_id, d)
        if result is not None and not result.was_no_op and self.refresh_queue is not None:
            self.refresh_queue.submit(user_id, months_affected(result, local_today))

        return {
            "date": d.isoformat(),
            "value": True,
            "run_operation": result.operation if result else None,
            "run_message": result.message if result else None,
        }

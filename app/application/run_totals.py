"""
RunTotalsService: real-time run statistics and month-scoped aggregates.

Real-time totals scan the user's runs directly; monthly aggregates are a
cache (run_totals) rebuilt here and audited by ReconciliationService.
"""
import logging
from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.application.runs import RunValidationError
from app.config import get_settings
from app.domain.run import MonthTotals, RunSpan, month_totals
from app.infrastructure.db.models import Run, RunTotals, User
from app.utils.dates import month_bounds, months_spanned, user_local_today, year_month

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RealtimeTotals:
    total_days: int
    longest_run: int
    current_run: int
    total_runs: int


class RunTotalsService:
    def __init__(self, db: Session, recent_days: int | None = None):
        self.db = db
        self.recent_days = recent_days if recent_days is not None else get_settings().TOTALS_RECENT_DAYS

    # ── Real-time ────────────────────────────────────────────────────────

    def realtime_totals(self, user_id: int) -> RealtimeTotals:
        total_days, longest, total_runs = (
            self.db.query(
                func.coalesce(func.sum(Run.day_count), 0),
                func.coalesce(func.max(Run.day_count), 0),
                func.count(Run.id),
            )
            .filter(Run.user_id == user_id)
            .one()
        )
        current = (
            self.db.query(Run.day_count)
            .filter(Run.user_id == user_id, Run.active.is_(True))
            .order_by(Run.end_date.desc())
            .first()
        )
        return RealtimeTotals(
            total_days=int(total_days),
            longest_run=int(longest),
            current_run=int(current[0]) if current else 0,
            total_runs=int(total_runs),
        )

    def get_totals(self, user_id: int) -> dict:
        """Statistics view payload."""
        t = self.realtime_totals(user_id)
        avg = round(t.total_days / t.total_runs, 2) if t.total_runs else 0.0
        return {
            "total_days": t.total_days,
            "current_run_days": t.current_run,
            "longest_run_days": t.longest_run,
            "total_runs": t.total_runs,
            "avg_run_length": avg,
        }

    # ── Monthly aggregates ───────────────────────────────────────────────

    def compute_month_totals(self, user_id: int, ym: str) -> MonthTotals:
        first, next_first = self._bounds(ym)
        runs = (
            self.db.query(Run)
            .filter(
                Run.user_id == user_id,
                Run.start_date < next_first,
                Run.end_date > first,
            )
            .all()
        )
        return month_totals((RunSpan(r.start_date, r.end_date, r.active) for r in runs), ym)

    def update_monthly_aggregate(self, user_id: int, ym: str, commit: bool = True) -> RunTotals:
        """Recompute and upsert the (user_id, ym) aggregate."""
        totals = self.compute_month_totals(user_id, ym)

        row = self.db.query(RunTotals).filter(
            RunTotals.user_id == user_id,
            RunTotals.year_month == ym,
        ).first()
        if row is None:
            row = RunTotals(user_id=user_id, year_month=ym)
            self.db.add(row)
        row.total_days = totals.total_days
        row.longest_run_days = totals.longest_run_days
        row.active_run_days = totals.active_run_days
        self.db.flush()

        if commit:
            self.db.commit()
        logger.debug(
            "Aggregate user=%s month=%s total=%d longest=%d active=%s",
            user_id, ym, totals.total_days, totals.longest_run_days, totals.active_run_days,
        )
        return row

    def get_month_totals(self, user_id: int, ym: str) -> dict:
        """
        Stored aggregate for the month; falls back to a real-time computation
        when the row is missing or cannot be read.
        """
        self._bounds(ym)
        row = None
        try:
            row = self.db.query(RunTotals).filter(
                RunTotals.user_id == user_id,
                RunTotals.year_month == ym,
            ).first()
        except SQLAlchemyError:
            logger.exception("Stored totals unreadable user=%s month=%s, using real-time", user_id, ym)
            self.db.rollback()

        if row is not None:
            return {
                "year_month": ym,
                "total_days": row.total_days,
                "longest_run_days": row.longest_run_days,
                "active_run_days": row.active_run_days,
                "source": "aggregate",
            }

        totals = self.compute_month_totals(user_id, ym)
        return {
            "year_month": ym,
            "total_days": totals.total_days,
            "longest_run_days": totals.longest_run_days,
            "active_run_days": totals.active_run_days,
            "source": "realtime",
        }

    # ── Invalidation ─────────────────────────────────────────────────────

    def months_to_refresh(self, user_id: int, today: date) -> list[str]:
        """Months touched by runs in the recent window, plus the current month."""
        window_start = today - timedelta(days=self.recent_days)
        horizon = today + timedelta(days=1)
        runs = (
            self.db.query(Run.start_date, Run.end_date)
            .filter(Run.user_id == user_id, Run.end_date > window_start)
            .all()
        )
        months = {year_month(today)}
        for start, end in runs:
            months.update(months_spanned(max(start, window_start), min(end, horizon)))
        return sorted(months)

    def refresh_user_totals(
        self,
        user_id: int,
        months: list[str] | None = None,
        today: date | None = None,
    ) -> dict:
        """
        Rebuild aggregates for the given months (default: recent activity).
        A failing month does not stop the others.
        """
        if months:
            months = sorted(set(months))
        else:
            if today is None:
                tz_name = self.db.query(User.timezone).filter(User.id == user_id).scalar()
                today = user_local_today(tz_name)
            months = self.months_to_refresh(user_id, today)

        results = []
        for ym in months:
            try:
                self.update_monthly_aggregate(user_id, ym)
                results.append({"month": ym, "success": True})
            except Exception as exc:
                self.db.rollback()
                logger.exception("Totals refresh failed user=%s month=%s", user_id, ym)
                results.append({"month": ym, "success": False, "error": str(exc)})

        failed = [r["month"] for r in results if not r["success"]]
        return {
            "user_id": user_id,
            "months": months,
            "successful_updates": len(months) - len(failed),
            "failed_updates": len(failed),
            "failed_months": failed,
            "results": results,
        }

    @staticmethod
    def _bounds(ym: str) -> tuple[date, date]:
        try:
            return month_bounds(ym)
        except ValueError as exc:
            raise RunValidationError(str(exc)) from exc

"""
TotalsRefreshQueue: fire-and-forget refresh of monthly run totals.

The day-mark request path only submits work; the refresh itself runs as a
one-shot APScheduler job with its own session. Failures are retried with
exponential backoff and, after the last attempt, left to reconciliation.
"""
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.base import BaseScheduler
from sqlalchemy.orm import sessionmaker

from app.application.run_totals import RunTotalsService
from app.config import get_settings

logger = logging.getLogger(__name__)


class TotalsRefreshQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        scheduler: BaseScheduler,
        max_attempts: int | None = None,
        backoff_seconds: float | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.scheduler = scheduler
        self.max_attempts = max_attempts or settings.TOTALS_REFRESH_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None
            else settings.TOTALS_REFRESH_BACKOFF_SECONDS
        )

    def submit(self, user_id: int, months: list[str] | None = None) -> None:
        """Queue a refresh; never raises into the caller."""
        try:
            self._schedule(user_id, months, attempt=1, delay=0.0)
        except Exception:
            logger.exception("Could not queue totals refresh for user=%s", user_id)

    def backoff_delay(self, attempt: int) -> float:
        """Delay before attempt+1."""
        return self.backoff_seconds * 2 ** (attempt - 1)

    def run_refresh(self, user_id: int, months: list[str] | None, attempt: int) -> bool:
        """
        Job body. Returns True when every month was refreshed; otherwise
        reschedules the failed months (or gives up after max_attempts).
        """
        retry_months = months
        db = self.session_factory()
        try:
            result = RunTotalsService(db).refresh_user_totals(user_id, months)
            ok = result["failed_updates"] == 0
            if not ok:
                retry_months = result["failed_months"]
        except Exception:
            logger.exception("Totals refresh crashed user=%s attempt=%d", user_id, attempt)
            ok = False
        finally:
            db.close()

        if ok:
            return True

        if attempt >= self.max_attempts:
            logger.error(
                "Totals refresh gave up user=%s months=%s after %d attempt(s); "
                "left for reconciliation",
                user_id, retry_months, attempt,
            )
            return False

        delay = self.backoff_delay(attempt)
        logger.warning(
            "Totals refresh failed user=%s attempt=%d/%d, retrying in %.1fs",
            user_id, attempt, self.max_attempts, delay,
        )
        self._schedule(user_id, retry_months, attempt=attempt + 1, delay=delay)
        return False

    def _schedule(self, user_id: int, months: list[str] | None, attempt: int, delay: float) -> None:
        run_at = datetime.now(timezone.utc) + timedelta(seconds=delay)
        self.scheduler.add_job(
            self.run_refresh,
            "date",
            run_date=run_at,
            args=[user_id, months, attempt],
            misfire_grace_time=None,
        )

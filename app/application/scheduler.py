"""
Background scheduler: runs periodic jobs inside the FastAPI process.

Jobs:
  - Click-log catch-up (02:30 UTC)
  - Bulk reconciliation of the current month (03:00 UTC)
  - Stale-run sweep (every hour at :05)
  - One-shot totals refresh jobs submitted by TotalsRefreshQueue

Jobs get the session factory of the app's Database as an argument.
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import sessionmaker

from app.infrastructure.locks import UserLockRegistry

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True, timezone="UTC")

# Shared by scheduled jobs and admin endpoints of the same process
user_locks = UserLockRegistry()


def get_refresh_queue(session_factory: sessionmaker):
    from app.application.totals_refresh import TotalsRefreshQueue

    return TotalsRefreshQueue(session_factory, scheduler)


def _run_catch_up(session_factory: sessionmaker):
    """Replay clicks the best-effort path did not turn into runs."""
    from app.infrastructure.eventlog.repository import ClickEventRepository
    from app.readmodels.projectors.runs import RunsProjector

    db = session_factory()
    try:
        user_ids = ClickEventRepository(db).list_user_ids()
    finally:
        db.close()

    replayed = 0
    for user_id in user_ids:
        db = session_factory()
        try:
            # the projector takes the user-row lock per batch
            with user_locks.hold(user_id):
                replayed += RunsProjector(db).run(user_id)
        except Exception:
            db.rollback()
            logger.exception("Click-log catch-up failed for user=%s", user_id)
        finally:
            db.close()
    logger.info("Click-log catch-up: %d click(s) replayed for %d user(s)", replayed, len(user_ids))


def _run_reconciliation(session_factory: sessionmaker):
    from app.application.reconciliation import ReconciliationService

    try:
        ReconciliationService(session_factory, locks=user_locks).bulk_reconciliation()
    except Exception:
        logger.exception("Nightly reconciliation job failed")


def _run_stale_sweep(session_factory: sessionmaker):
    from app.application.runs import deactivate_stale_runs
    from app.utils.dates import months_spanned

    db = session_factory()
    try:
        touched: dict[int, set[str]] = {}
        for run in deactivate_stale_runs(db, commit=False):
            touched.setdefault(run.user_id, set()).update(months_spanned(run.start_date, run.end_date))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Stale-run sweep job failed")
        return
    finally:
        db.close()

    queue = get_refresh_queue(session_factory)
    for user_id, months in touched.items():
        queue.submit(user_id, sorted(months))


def start_scheduler(session_factory: sessionmaker, periodic: bool = True):
    """
    Start the background scheduler.

    Args:
        session_factory: sessionmaker of the app's Database
        periodic: register the nightly/hourly jobs; False keeps only the
                  one-shot totals refresh jobs
    """
    if periodic:
        # Click-log catch-up: 02:30 UTC, before reconciliation
        scheduler.add_job(
            _run_catch_up,
            CronTrigger(hour=2, minute=30),
            args=[session_factory],
            id="runs_catch_up",
            replace_existing=True,
        )

        # Bulk reconciliation: 03:00 UTC
        scheduler.add_job(
            _run_reconciliation,
            CronTrigger(hour=3, minute=0),
            args=[session_factory],
            id="runs_reconciliation",
            replace_existing=True,
        )

        # Stale-run sweep: every hour at :05 (users cross midnight in different zones)
        scheduler.add_job(
            _run_stale_sweep,
            CronTrigger(minute=5),
            args=[session_factory],
            id="runs_stale_sweep",
            replace_existing=True,
        )

    if scheduler.running:
        return
    scheduler.start()
    if periodic:
        logger.info(
            "Scheduler started: runs_catch_up (02:30 UTC), runs_reconciliation (03:00 UTC), "
            "runs_stale_sweep (hourly at :05)"
        )
    else:
        logger.info("Scheduler started for totals refresh jobs only")


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")

"""
ReconciliationService
Compares stored monthly run totals with a fresh computation from the runs
table and records every check in reconciliation_log.
"""
import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.application.run_totals import RunTotalsService
from app.application.runs import RunMaintenanceEngine, RunValidationError
from app.config import get_settings
from app.infrastructure.db.models import ReconciliationLog, RunTotals, User
from app.infrastructure.locks import UserLockRegistry
from app.utils.dates import month_bounds, year_month

logger = logging.getLogger(__name__)

CHECK_TYPES = ("total_days", "longest_run", "active_run")

MATCH = "match"
MISMATCH = "mismatch"
CORRECTED = "corrected"
ERROR = "error"

NO_STORED_AGGREGATE = "No stored aggregates found"


@dataclass(frozen=True)
class CheckResult:
    check_type: str
    status: str
    expected: int | None
    actual: int | None
    message: str | None = None


class ReconciliationService:
    """
    Audit of run_totals against the runs they were derived from.

    reconcile_user_month never writes run_totals; repair_user_month is the
    explicit variant that rewrites drifted rows and logs them as corrected.
    Each pass holds the user-row lock (SELECT ... FOR UPDATE) for its
    transaction; the in-process registry only keeps local threads from
    queueing on the database.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        locks: UserLockRegistry | None = None,
        batch_size: int | None = None,
        max_workers: int | None = None,
    ):
        settings = get_settings()
        self.session_factory = session_factory
        self.locks = locks or UserLockRegistry()
        self.batch_size = batch_size or settings.RECONCILIATION_BATCH_SIZE
        self.max_workers = max_workers or settings.RECONCILIATION_MAX_WORKERS

    # ── Single user ──────────────────────────────────────────────────────

    def reconcile_user_month(
        self, user_id: int, ym: str, correlation_id: str | None = None
    ) -> list[CheckResult]:
        return self._reconcile(user_id, ym, correlation_id or str(uuid.uuid4()), repair=False)

    def repair_user_month(
        self, user_id: int, ym: str, correlation_id: str | None = None
    ) -> list[CheckResult]:
        return self._reconcile(user_id, ym, correlation_id or str(uuid.uuid4()), repair=True)

    def _reconcile(self, user_id: int, ym: str, correlation_id: str, repair: bool) -> list[CheckResult]:
        _validate_year_month(ym)
        started = time.monotonic()

        with self.locks.hold(user_id):
            db = self.session_factory()
            try:
                # user-row lock: excludes passes from other processes too
                RunMaintenanceEngine(db).lock_user(user_id)
                results = self._run_checks(db, user_id, ym, correlation_id, started, repair)
                db.commit()
            except Exception as exc:
                db.rollback()
                logger.exception("Reconciliation failed user=%s month=%s", user_id, ym)
                self._log_failure(db, user_id, ym, correlation_id, started, str(exc))
                raise
            finally:
                db.close()

        mismatched = [r.check_type for r in results if r.status in (MISMATCH, CORRECTED)]
        if mismatched:
            logger.warning(
                "Reconciliation drift user=%s month=%s checks=%s repaired=%s correlation=%s",
                user_id, ym, mismatched, repair, correlation_id,
            )
        return results

    def _run_checks(
        self,
        db: Session,
        user_id: int,
        ym: str,
        correlation_id: str,
        started: float,
        repair: bool,
    ) -> list[CheckResult]:
        totals_service = RunTotalsService(db)
        fresh = totals_service.compute_month_totals(user_id, ym)
        expected = {
            "total_days": fresh.total_days,
            "longest_run": fresh.longest_run_days,
            "active_run": fresh.active_run_days,
        }

        stored = db.query(RunTotals).filter(
            RunTotals.user_id == user_id,
            RunTotals.year_month == ym,
        ).first()

        results = []
        if stored is None:
            status = CORRECTED if repair else ERROR
            for check in CHECK_TYPES:
                results.append(CheckResult(check, status, expected[check], None, NO_STORED_AGGREGATE))
        else:
            actual = {
                "total_days": stored.total_days,
                "longest_run": stored.longest_run_days,
                "active_run": stored.active_run_days,
            }
            for check in CHECK_TYPES:
                if expected[check] == actual[check]:
                    status = MATCH
                else:
                    status = CORRECTED if repair else MISMATCH
                results.append(CheckResult(check, status, expected[check], actual[check]))

        if any(r.status == CORRECTED for r in results):
            totals_service.update_monthly_aggregate(user_id, ym, commit=False)

        elapsed_ms = int((time.monotonic() - started) * 1000)
        for r in results:
            db.add(ReconciliationLog(
                user_id=user_id,
                year_month=ym,
                check_type=r.check_type,
                expected_value=r.expected,
                actual_value=r.actual,
                status=r.status,
                error_message=r.message,
                processing_time_ms=elapsed_ms,
                correlation_id=correlation_id,
            ))
        db.flush()
        return results

    def _log_failure(
        self, db: Session, user_id: int, ym: str, correlation_id: str, started: float, message: str
    ) -> None:
        # The original exception is re-raised by the caller; a failing audit
        # write must not replace it.
        try:
            db.add(ReconciliationLog(
                user_id=user_id,
                year_month=ym,
                check_type="total_days",
                expected_value=None,
                actual_value=None,
                status=ERROR,
                error_message=message[:2000],
                processing_time_ms=int((time.monotonic() - started) * 1000),
                correlation_id=correlation_id,
            ))
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Could not record reconciliation failure user=%s month=%s", user_id, ym)

    # ── Bulk ─────────────────────────────────────────────────────────────

    def bulk_reconciliation(
        self,
        user_ids: list[int] | None = None,
        ym: str | None = None,
        repair: bool = False,
        cancel_event: threading.Event | None = None,
        batch_size: int | None = None,
        max_workers: int | None = None,
    ) -> dict:
        """
        Reconcile many users against one month in bounded concurrent batches.

        Args:
            user_ids: users to check (default: all users)
            ym: target month YYYY-MM (default: current UTC month)
            repair: rewrite drifted aggregates (status=corrected)
            cancel_event: when set, unstarted users are skipped and the
                          summary reports what was done so far

        Returns:
            summary dict tagged with one correlation_id
        """
        started = time.monotonic()
        correlation_id = str(uuid.uuid4())
        target = ym or year_month(datetime.now(timezone.utc).date())
        _validate_year_month(target)
        batch_size = batch_size or self.batch_size
        workers = max_workers or self.max_workers

        users = list(dict.fromkeys(user_ids)) if user_ids else self._all_user_ids()
        logger.info(
            "Bulk reconciliation started month=%s users=%d correlation=%s",
            target, len(users), correlation_id,
        )

        summary = {
            "correlation_id": correlation_id,
            "year_month": target,
            "total_users": len(users),
            "processed": 0,
            "matches": 0,
            "mismatches": 0,
            "errors": 0,
            "corrected": 0,
            "failed_user_ids": [],
            "cancelled": False,
            "processing_time_ms": 0,
        }

        for offset in range(0, len(users), batch_size):
            if cancel_event is not None and cancel_event.is_set():
                summary["cancelled"] = True
                break
            batch = users[offset:offset + batch_size]

            def one(user_id: int):
                if cancel_event is not None and cancel_event.is_set():
                    return user_id, None, None
                try:
                    return user_id, self._reconcile(user_id, target, correlation_id, repair), None
                except Exception as exc:
                    return user_id, None, exc

            if workers <= 1:
                outcomes = [one(u) for u in batch]
            else:
                with ThreadPoolExecutor(max_workers=min(workers, len(batch))) as pool:
                    outcomes = list(pool.map(one, batch))

            for user_id, results, error in outcomes:
                if error is not None:
                    summary["errors"] += 1
                    summary["failed_user_ids"].append(user_id)
                    continue
                if results is None:
                    summary["cancelled"] = True
                    continue
                summary["processed"] += 1
                for r in results:
                    if r.status == MATCH:
                        summary["matches"] += 1
                    elif r.status == MISMATCH:
                        summary["mismatches"] += 1
                    elif r.status == CORRECTED:
                        summary["corrected"] += 1
                    elif r.status == ERROR:
                        summary["errors"] += 1

            logger.info(
                "Bulk reconciliation %s: processed %d / %d users",
                correlation_id, min(offset + batch_size, len(users)), len(users),
            )

        summary["processing_time_ms"] = int((time.monotonic() - started) * 1000)
        logger.info(
            "Bulk reconciliation completed: %d users, %d matches, %d mismatches, "
            "%d errors, %d corrected in %dms (correlation=%s, cancelled=%s)",
            summary["processed"], summary["matches"], summary["mismatches"],
            summary["errors"], summary["corrected"], summary["processing_time_ms"],
            correlation_id, summary["cancelled"],
        )
        return summary

    def _all_user_ids(self) -> list[int]:
        db = self.session_factory()
        try:
            return [row[0] for row in db.query(User.id).order_by(User.id).all()]
        finally:
            db.close()


def _validate_year_month(ym: str) -> None:
    try:
        month_bounds(ym)
    except ValueError as exc:
        raise RunValidationError(str(exc)) from exc

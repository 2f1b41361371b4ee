"""
RunBackfillService
Rebuilds users' runs from the click log, one user per transaction.

Non-dry passes back up the current runs, replay every marked click through
RunsProjector, apply the stale rule, check invariants and refresh the
user's monthly aggregates. Dry runs build the same result in memory and
only report whether it differs from what is stored.
"""
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy.orm import Session, sessionmaker

from app.application.run_totals import RunTotalsService
from app.application.runs import RunMaintenanceEngine, RunValidationError, deactivate_stale_runs
from app.config import get_settings
from app.domain.run import RunSpan, deactivate_stale, replay_dates
from app.infrastructure.db.models import Run, RunBackfillOperation, RunBackup, User
from app.infrastructure.eventlog.repository import ClickEventRepository
from app.infrastructure.locks import UserLockRegistry
from app.readmodels.projectors.runs import RunsProjector
from app.readmodels.run_health import RunHealthService
from app.utils.dates import months_spanned, user_local_today, year_month

logger = logging.getLogger(__name__)


@dataclass
class BackfillOptions:
    dry_run: bool = False
    batch_size: int | None = None
    skip_backup: bool = False
    user_ids: list[int] | None = None


def _spans(db: Session, user_id: int) -> list[RunSpan]:
    rows = db.query(Run).filter(Run.user_id == user_id).all()
    return sorted(RunSpan(r.start_date, r.end_date, r.active) for r in rows)


def _months_of(spans: list[RunSpan]) -> set[str]:
    months = set()
    for span in spans:
        months.update(months_spanned(span.start, span.end))
    return months


class RunBackfillService:
    def __init__(
        self,
        session_factory: sessionmaker,
        locks: UserLockRegistry | None = None,
        batch_size: int | None = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or UserLockRegistry()
        self.batch_size = batch_size or get_settings().BACKFILL_BATCH_SIZE

    # ── One user ─────────────────────────────────────────────────────────

    def rebuild_user_runs(
        self,
        user_id: int,
        dry_run: bool = False,
        operation_id: str | None = None,
        backup: bool = True,
        today: date | None = None,
    ) -> dict:
        """
        Rebuild (or preview a rebuild of) one user's runs from the click log.

        Returns:
            {user_id, dry_run, events, runs_before, runs_after, changed,
             invariant_violations, duration_ms}
        """
        started = time.monotonic()
        with self.locks.hold(user_id):
            db = self.session_factory()
            try:
                if dry_run:
                    result = self._preview(db, user_id, today)
                else:
                    result = self._rebuild(db, user_id, operation_id or str(uuid.uuid4()), backup, today)
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()

        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        return result

    def _local_today(self, db: Session, user_id: int, today: date | None) -> date:
        tz_name = db.query(User.timezone).filter(User.id == user_id).scalar()
        if tz_name is None and db.query(User.id).filter(User.id == user_id).first() is None:
            raise RunValidationError(f"Пользователь #{user_id} не найден")
        return today or user_local_today(tz_name)

    def _preview(self, db: Session, user_id: int, today: date | None) -> dict:
        local_today = self._local_today(db, user_id, today)
        dates = ClickEventRepository(db).list_marked_dates(user_id)
        rebuilt = sorted(deactivate_stale(replay_dates(dates), local_today))
        current = _spans(db, user_id)
        return {
            "user_id": user_id,
            "dry_run": True,
            "events": len(dates),
            "runs_before": len(current),
            "runs_after": len(rebuilt),
            "changed": rebuilt != current,
            "invariant_violations": 0,
        }

    def _rebuild(
        self, db: Session, user_id: int, operation_id: str, backup: bool, today: date | None
    ) -> dict:
        engine = RunMaintenanceEngine(db)
        engine.lock_user(user_id)
        local_today = self._local_today(db, user_id, today)

        existing = db.query(Run).filter(Run.user_id == user_id).all()
        before = sorted(RunSpan(r.start_date, r.end_date, r.active) for r in existing)
        if backup:
            for run in existing:
                db.add(RunBackup(
                    operation_id=operation_id,
                    user_id=user_id,
                    start_date=run.start_date,
                    end_date=run.end_date,
                    day_count=run.day_count,
                    active=run.active,
                ))
            db.flush()

        projector = RunsProjector(db)
        projector.reset(user_id)
        events = projector.run(user_id, commit=False)
        deactivate_stale_runs(db, user_id=user_id, commit=False, local_today=local_today)
        db.flush()

        health = RunHealthService(db).validate_user(user_id)
        if not health.valid:
            db.rollback()
            logger.error(
                "Rebuild rolled back user=%s operation=%s violations=%s",
                user_id, operation_id, health.as_dict(),
            )
            return {
                "user_id": user_id,
                "dry_run": False,
                "events": events,
                "runs_before": len(before),
                "runs_after": len(before),
                "changed": False,
                "invariant_violations": health.total,
            }

        db.commit()
        after = _spans(db, user_id)
        logger.info(
            "Rebuilt runs user=%s events=%d runs %d -> %d operation=%s",
            user_id, events, len(before), len(after), operation_id,
        )

        months = _months_of(before) | _months_of(after) | {year_month(local_today)}
        RunTotalsService(db).refresh_user_totals(user_id, months=sorted(months))

        return {
            "user_id": user_id,
            "dry_run": False,
            "events": events,
            "runs_before": len(before),
            "runs_after": len(after),
            "changed": before != after,
            "invariant_violations": 0,
        }

    # ── All users ────────────────────────────────────────────────────────

    def backfill(self, options: BackfillOptions | None = None, cancel_event: threading.Event | None = None) -> dict:
        options = options or BackfillOptions()
        return self.backfill_all_user_runs(
            dry_run=options.dry_run,
            batch_size=options.batch_size,
            skip_backup=options.skip_backup,
            user_ids=options.user_ids,
            cancel_event=cancel_event,
        )

    def backfill_all_user_runs(
        self,
        dry_run: bool = False,
        batch_size: int | None = None,
        skip_backup: bool = False,
        user_ids: list[int] | None = None,
        cancel_event: threading.Event | None = None,
        today: date | None = None,
    ) -> dict:
        """
        Rebuild runs for every user that has clicks or runs.

        A failing user is recorded in errors[] and does not stop the pass.
        """
        started = time.monotonic()
        operation_id = str(uuid.uuid4())
        batch_size = batch_size or self.batch_size
        users = list(dict.fromkeys(user_ids)) if user_ids else self._candidate_users()

        summary = {
            "operation_id": operation_id,
            "total_users": len(users),
            "completed_users": 0,
            "failed_users": 0,
            "invariant_violations": 0,
            "errors": [],
            "dry_run": dry_run,
            "users_to_process": len(users),
            "changed_users": 0,
            "cancelled": False,
            "total_duration_ms": 0,
        }
        logger.info(
            "Backfill %s started: users=%d dry_run=%s skip_backup=%s",
            operation_id, len(users), dry_run, skip_backup,
        )
        if not dry_run:
            self._save_operation(summary, skip_backup, status="running")

        for offset in range(0, len(users), batch_size):
            for user_id in users[offset:offset + batch_size]:
                if cancel_event is not None and cancel_event.is_set():
                    summary["cancelled"] = True
                    break
                try:
                    result = self.rebuild_user_runs(
                        user_id,
                        dry_run=dry_run,
                        operation_id=operation_id,
                        backup=not skip_backup,
                        today=today,
                    )
                except Exception as exc:
                    logger.exception("Backfill failed for user=%s operation=%s", user_id, operation_id)
                    summary["failed_users"] += 1
                    summary["errors"].append({"user_id": user_id, "error": str(exc)})
                    continue

                if result["invariant_violations"]:
                    summary["failed_users"] += 1
                    summary["invariant_violations"] += result["invariant_violations"]
                    summary["errors"].append({
                        "user_id": user_id,
                        "error": f"{result['invariant_violations']} invariant violation(s)",
                    })
                    continue

                summary["completed_users"] += 1
                if result["changed"]:
                    summary["changed_users"] += 1

            if summary["cancelled"]:
                break
            logger.info(
                "Backfill %s: %d / %d users",
                operation_id, min(offset + batch_size, len(users)), len(users),
            )

        summary["total_duration_ms"] = int((time.monotonic() - started) * 1000)
        if not dry_run:
            if summary["cancelled"]:
                status = "cancelled"
            elif summary["failed_users"]:
                status = "failed"
            else:
                status = "completed"
            self._save_operation(summary, skip_backup, status=status)

        logger.info(
            "Backfill %s finished: completed=%d failed=%d violations=%d changed=%d in %dms",
            operation_id, summary["completed_users"], summary["failed_users"],
            summary["invariant_violations"], summary["changed_users"], summary["total_duration_ms"],
        )
        return summary

    def _candidate_users(self) -> list[int]:
        db = self.session_factory()
        try:
            with_clicks = ClickEventRepository(db).list_user_ids()
            with_runs = [row[0] for row in db.query(Run.user_id).distinct().all()]
            return sorted(set(with_clicks) | set(with_runs))
        finally:
            db.close()

    def _save_operation(self, summary: dict, skip_backup: bool, status: str) -> None:
        db = self.session_factory()
        try:
            op = db.get(RunBackfillOperation, summary["operation_id"])
            if op is None:
                op = RunBackfillOperation(operation_id=summary["operation_id"], skip_backup=skip_backup)
                db.add(op)
            op.status = status
            op.total_users = summary["total_users"]
            op.completed_users = summary["completed_users"]
            op.failed_users = summary["failed_users"]
            op.invariant_violations = summary["invariant_violations"]
            op.errors_json = list(summary["errors"])
            if status != "running":
                op.completed_at = datetime.now(timezone.utc)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

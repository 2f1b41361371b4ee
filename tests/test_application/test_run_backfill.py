"""
Tests for RunBackfillService: rebuild from the click log, dry run, bulk pass
"""
import threading
from datetime import date
from unittest.mock import patch

import pytest

from app.application.run_backfill import BackfillOptions, RunBackfillService
from app.infrastructure.db.models import (
    Run, RunBackfillOperation, RunBackup, RunTotals,
)
from app.infrastructure.eventlog.repository import ClickEventRepository


TODAY = date(2025, 1, 20)


@pytest.fixture
def service(session_factory):
    return RunBackfillService(session_factory, batch_size=2)


@pytest.fixture
def clicks(db_session):
    """Append marked dates to the click log for a user."""
    def _clicks(user_id: int, *days: date):
        repo = ClickEventRepository(db_session)
        for d in days:
            repo.append_click(user_id=user_id, day=d, user_local_date=d, user_timezone="UTC")
        db_session.commit()

    return _clicks


def runs_of(db, user_id):
    db.expire_all()
    return [
        (r.start_date, r.end_date, r.day_count, r.active)
        for r in db.query(Run).filter(Run.user_id == user_id).order_by(Run.start_date).all()
    ]


class TestRebuildUserRuns:
    def test_rebuild_replaces_corrupted_runs(self, service, db_session, user_id, clicks, add_run):
        clicks(user_id, date(2025, 1, 1), date(2025, 1, 2), date(2025, 1, 3), date(2025, 1, 19))
        # drifted state: wrong day_count and a missing run
        add_run(user_id, date(2025, 1, 1), date(2025, 1, 3), day_count=7, active=True)

        result = service.rebuild_user_runs(user_id, today=TODAY)

        assert result["changed"] is True
        assert result["events"] == 4
        assert result["invariant_violations"] == 0
        assert runs_of(db_session, user_id) == [
            (date(2025, 1, 1), date(2025, 1, 4), 3, False),
            (date(2025, 1, 19), date(2025, 1, 20), 1, True),
        ]

    def test_rebuild_is_idempotent(self, service, db_session, user_id, clicks):
        clicks(user_id, date(2025, 1, 5), date(2025, 1, 3), date(2025, 1, 4), date(2025, 1, 19))

        service.rebuild_user_runs(user_id, today=TODAY)
        first = runs_of(db_session, user_id)
        second_result = service.rebuild_user_runs(user_id, today=TODAY)

        assert runs_of(db_session, user_id) == first
        assert second_result["changed"] is False

    def test_rebuild_applies_stale_rule(self, service, db_session, user_id, clicks):
        clicks(user_id, date(2025, 1, 1), date(2025, 1, 2))

        service.rebuild_user_runs(user_id, today=TODAY)

        assert runs_of(db_session, user_id) == [(date(2025, 1, 1), date(2025, 1, 3), 2, False)]

    def test_rebuild_backs_up_previous_runs(self, service, db_session, user_id, clicks, add_run):
        clicks(user_id, date(2025, 1, 1))
        add_run(user_id, date(2025, 1, 1), date(2025, 1, 5))

        service.rebuild_user_runs(user_id, operation_id="op-1", today=TODAY)

        backups = db_session.query(RunBackup).filter(RunBackup.operation_id == "op-1").all()
        assert [(b.start_date, b.end_date, b.day_count) for b in backups] == [
            (date(2025, 1, 1), date(2025, 1, 5), 4),
        ]

    def test_rebuild_without_backup(self, service, db_session, user_id, clicks, add_run):
        clicks(user_id, date(2025, 1, 1))
        add_run(user_id, date(2025, 1, 1), date(2025, 1, 5))

        service.rebuild_user_runs(user_id, operation_id="op-2", backup=False, today=TODAY)

        assert db_session.query(RunBackup).count() == 0

    def test_rebuild_refreshes_monthly_totals(self, service, db_session, user_id, clicks):
        clicks(user_id, date(2025, 1, 18), date(2025, 1, 19))

        service.rebuild_user_runs(user_id, today=TODAY)

        row = db_session.query(RunTotals).filter(
            RunTotals.user_id == user_id, RunTotals.year_month == "2025-01"
        ).one()
        assert (row.total_days, row.longest_run_days, row.active_run_days) == (2, 2, 2)

    def test_dry_run_does_not_mutate(self, service, db_session, user_id, clicks, add_run):
        clicks(user_id, date(2025, 1, 1), date(2025, 1, 2))
        add_run(user_id, date(2025, 1, 10), date(2025, 1, 12), active=True)
        before = runs_of(db_session, user_id)

        result = service.rebuild_user_runs(user_id, dry_run=True, today=TODAY)

        assert result["dry_run"] is True
        assert result["changed"] is True
        assert result["runs_after"] == 1
        assert runs_of(db_session, user_id) == before
        assert db_session.query(RunBackup).count() == 0
        assert db_session.query(RunTotals).count() == 0

    def test_dry_run_after_rebuild_reports_no_change(self, service, user_id, clicks):
        clicks(user_id, date(2025, 1, 1), date(2025, 1, 3), date(2025, 1, 2), date(2025, 1, 19))
        service.rebuild_user_runs(user_id, today=TODAY)

        result = service.rebuild_user_runs(user_id, dry_run=True, today=TODAY)

        assert result["changed"] is False


class TestBackfillAll:
    def test_backfills_every_user_with_clicks_or_runs(self, service, db_session, make_user, clicks, add_run):
        a, b, idle = make_user(), make_user(), make_user()
        clicks(a, date(2025, 1, 1), date(2025, 1, 2))
        add_run(b, date(2025, 1, 5), date(2025, 1, 6))  # run without clicks -> removed

        summary = service.backfill_all_user_runs(today=TODAY)

        assert summary["total_users"] == 2
        assert summary["completed_users"] == 2
        assert summary["failed_users"] == 0
        assert summary["changed_users"] == 2
        assert runs_of(db_session, b) == []
        assert runs_of(db_session, idle) == []

        op = db_session.get(RunBackfillOperation, summary["operation_id"])
        assert op.status == "completed"
        assert op.completed_users == 2
        assert op.completed_at is not None

    def test_dry_run_persists_nothing(self, service, db_session, make_user, clicks):
        a = make_user()
        clicks(a, date(2025, 1, 1))

        summary = service.backfill(BackfillOptions(dry_run=True))

        assert summary["dry_run"] is True
        assert summary["users_to_process"] == 1
        assert summary["changed_users"] == 1
        assert runs_of(db_session, a) == []
        assert db_session.query(RunBackfillOperation).count() == 0

    def test_dry_run_leaves_existing_totals_untouched(self, service, db_session, make_user, clicks, add_run):
        a = make_user()
        clicks(a, date(2025, 1, 1), date(2025, 1, 2))
        add_run(a, date(2025, 1, 10), date(2025, 1, 13))
        db_session.add(RunTotals(user_id=a, year_month="2025-01", total_days=3, longest_run_days=3, active_run_days=None))
        db_session.commit()

        summary = service.backfill(BackfillOptions(dry_run=True))

        assert summary["changed_users"] == 1
        db_session.expire_all()
        row = db_session.query(RunTotals).filter(RunTotals.user_id == a).one()
        assert (row.total_days, row.longest_run_days, row.active_run_days) == (3, 3, None)
        assert runs_of(db_session, a) == [(date(2025, 1, 10), date(2025, 1, 13), 3, False)]
        assert db_session.query(RunBackup).count() == 0

    def test_user_failure_is_isolated(self, service, db_session, make_user, clicks):
        a, b = make_user(), make_user()
        clicks(a, date(2025, 1, 1))
        clicks(b, date(2025, 1, 1))
        real = RunBackfillService.rebuild_user_runs

        def flaky(self, user_id, **kwargs):
            if user_id == a:
                raise RuntimeError("boom")
            return real(self, user_id, **kwargs)

        with patch.object(RunBackfillService, "rebuild_user_runs", flaky):
            summary = service.backfill_all_user_runs(today=TODAY)

        assert summary["failed_users"] == 1
        assert summary["completed_users"] == 1
        assert summary["errors"] == [{"user_id": a, "error": "boom"}]
        op = db_session.get(RunBackfillOperation, summary["operation_id"])
        assert op.status == "failed"
        assert op.errors_json == [{"user_id": a, "error": "boom"}]

    def test_invariant_violations_are_counted(self, service, make_user, clicks):
        a = make_user()
        clicks(a, date(2025, 1, 1))
        violating = {
            "user_id": a, "dry_run": False, "events": 1, "runs_before": 0,
            "runs_after": 0, "changed": False, "invariant_violations": 2, "duration_ms": 0,
        }

        with patch.object(RunBackfillService, "rebuild_user_runs", return_value=violating):
            summary = service.backfill_all_user_runs(today=TODAY)

        assert summary["invariant_violations"] == 2
        assert summary["failed_users"] == 1

    def test_cancel_event(self, service, make_user, clicks):
        a = make_user()
        clicks(a, date(2025, 1, 1))
        cancel = threading.Event()
        cancel.set()

        summary = service.backfill_all_user_runs(cancel_event=cancel, today=TODAY)

        assert summary["cancelled"] is True
        assert summary["completed_users"] == 0

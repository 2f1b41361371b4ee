"""
Tests for MarkDayUseCase and the best-effort run maintenance hook
"""
from datetime import date, datetime, timezone
from unittest.mock import Mock, patch

import pytest

from app.application.day_marks import (
    DayMarkValidationError,
    MarkDayUseCase,
    extend_runs_for_day_mark,
    months_affected,
)
from app.application.runs import RunMaintenanceEngine
from app.config import get_settings
from app.infrastructure.db.models import ClickEvent, DayMark, Run


NOW = datetime(2025, 1, 20, 12, 0, tzinfo=timezone.utc)


class TestMarkDay:
    def test_mark_writes_day_mark_click_and_run(self, db_session, user_id):
        queue = Mock()

        result = MarkDayUseCase(db_session, refresh_queue=queue).execute(user_id, "2025-01-19", now=NOW)

        assert result["date"] == "2025-01-19"
        assert result["run_operation"] == "create"
        assert db_session.query(DayMark).filter(DayMark.user_id == user_id).count() == 1
        click = db_session.query(ClickEvent).filter(ClickEvent.user_id == user_id).one()
        assert click.user_local_date == date(2025, 1, 20)
        assert click.user_timezone == "UTC"
        assert db_session.query(Run).filter(Run.user_id == user_id).count() == 1
        queue.submit.assert_called_once_with(user_id, ["2025-01"])

    def test_repeat_mark_is_noop_for_runs(self, db_session, user_id):
        queue = Mock()
        use_case = MarkDayUseCase(db_session, refresh_queue=queue)
        use_case.execute(user_id, "2025-01-19", now=NOW)

        result = use_case.execute(user_id, "2025-01-19", now=NOW)

        assert result["run_operation"] == "noop"
        assert db_session.query(DayMark).filter(DayMark.user_id == user_id).count() == 1
        # every attempt is logged
        assert db_session.query(ClickEvent).filter(ClickEvent.user_id == user_id).count() == 2
        assert queue.submit.call_count == 1

    def test_future_date_rejected_in_user_timezone(self, db_session, make_user):
        # 2025-01-20 12:00 UTC is already 2025-01-21 in Auckland
        uid = make_user(timezone="Pacific/Auckland")
        use_case = MarkDayUseCase(db_session)

        use_case.execute(uid, "2025-01-21", now=NOW)
        with pytest.raises(DayMarkValidationError):
            use_case.execute(uid, "2025-01-22", now=NOW)

    def test_date_before_minimum_rejected(self, db_session, user_id):
        with pytest.raises(DayMarkValidationError):
            MarkDayUseCase(db_session).execute(user_id, "2024-12-31", now=NOW)

    def test_malformed_date_rejected(self, db_session, user_id):
        with pytest.raises(DayMarkValidationError):
            MarkDayUseCase(db_session).execute(user_id, "20-01-2025", now=NOW)

    def test_unmark_not_supported(self, db_session, user_id):
        with pytest.raises(DayMarkValidationError):
            MarkDayUseCase(db_session).execute(user_id, "2025-01-19", value=False, now=NOW)

    def test_unknown_user_rejected(self, db_session):
        with pytest.raises(DayMarkValidationError):
            MarkDayUseCase(db_session).execute(12345, "2025-01-19", now=NOW)

    def test_run_failure_keeps_day_mark(self, db_session, user_id):
        queue = Mock()
        with patch.object(RunMaintenanceEngine, "extend", side_effect=RuntimeError("db hiccup")):
            result = MarkDayUseCase(db_session, refresh_queue=queue).execute(user_id, "2025-01-19", now=NOW)

        assert result["run_operation"] is None
        assert db_session.query(DayMark).filter(DayMark.user_id == user_id).count() == 1
        assert db_session.query(ClickEvent).filter(ClickEvent.user_id == user_id).count() == 1
        queue.submit.assert_not_called()


class TestExtendRunsHook:
    def test_never_raises(self, db_session):
        assert extend_runs_for_day_mark(db_session, 999, "2025-01-01") is None

    def test_disabled_by_feature_flag(self, db_session, user_id, monkeypatch):
        monkeypatch.setattr(get_settings(), "RUNS_V2_ENABLED", False)

        assert extend_runs_for_day_mark(db_session, user_id, "2025-01-01") is None
        assert db_session.query(Run).count() == 0

    def test_months_affected_covers_merged_span(self, db_session, user_id, add_run):
        add_run(user_id, date(2025, 1, 25), date(2025, 1, 31))
        add_run(user_id, date(2025, 2, 1), date(2025, 2, 3), active=True)

        result = extend_runs_for_day_mark(db_session, user_id, "2025-01-31")

        assert result.operation == "merge"
        assert months_affected(result, today=date(2025, 3, 1)) == ["2025-01", "2025-02", "2025-03"]

"""
Tests for day-mark / runs / admin API endpoints
"""
from datetime import date, datetime, timezone
from types import SimpleNamespace
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from app.api import deps
from app.infrastructure.db.models import RunTotals, User
from app.main import app


@pytest.fixture
def refresh_queue():
    return Mock()


@pytest.fixture
def client(db_session, session_factory, refresh_queue):
    """Test client для FastAPI (SQLite session вместо PostgreSQL)"""
    def _get_db():
        yield db_session

    app.dependency_overrides[deps.get_db] = _get_db
    app.dependency_overrides[deps.get_session_maker] = lambda: session_factory
    app.dependency_overrides[deps.get_refresh_queue] = lambda: refresh_queue
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def login(db_session):
    """Подставить текущего пользователя"""
    def _login(user_id: int):
        user = db_session.get(User, user_id)
        app.dependency_overrides[deps.get_current_user] = lambda: user
        return user

    return _login


def test_requires_authentication(client):
    response = client.get("/api/v1/runs/totals")
    assert response.status_code == 401


def test_mark_day_creates_run(client, login, user_id, refresh_queue):
    login(user_id)

    response = client.post("/api/v1/day-marks", json={"date": datetime.now(timezone.utc).date().isoformat()})

    assert response.status_code == 200
    data = response.json()
    assert data["run_operation"] == "create"
    refresh_queue.submit.assert_called_once()


def test_mark_day_validation_error(client, login, user_id):
    login(user_id)

    response = client.post("/api/v1/day-marks", json={"date": "not-a-date"})

    assert response.status_code == 400


def test_totals(client, login, user_id, add_run):
    add_run(user_id, date(2025, 1, 1), date(2025, 1, 4))
    add_run(user_id, date(2025, 1, 10), date(2025, 1, 15))
    add_run(user_id, date(2025, 1, 20), date(2025, 1, 22), active=True)
    login(user_id)

    response = client.get("/api/v1/runs/totals")

    assert response.status_code == 200
    assert response.json() == {
        "total_days": 10,
        "current_run_days": 2,
        "longest_run_days": 5,
        "total_runs": 3,
        "avg_run_length": 3.33,
    }


def test_month_totals_distinguishes_no_active_run(client, login, user_id, add_run):
    add_run(user_id, date(2025, 2, 1), date(2025, 2, 3))
    login(user_id)

    data = client.get("/api/v1/runs/months/2025-02").json()

    assert data["active_run_days"] is None
    assert data["total_days"] == 2
    assert data["source"] == "realtime"


def test_month_totals_bad_month(client, login, user_id):
    login(user_id)
    assert client.get("/api/v1/runs/months/2025-13").status_code == 400


def test_runs_health_reports_unhealthy_with_200(client, user_id, add_run):
    add_run(user_id, date(2025, 1, 1), date(2025, 1, 5), day_count=1)

    response = client.get("/api/v1/runs/health")

    assert response.status_code == 200
    assert response.json()["status"] == "unhealthy"
    assert response.json()["checks"]["day_count_issues"] == 1


def test_admin_endpoints_forbidden_for_regular_user(client, login, user_id):
    login(user_id)

    assert client.post("/api/v1/admin/runs/backfill", json={}).status_code == 403
    assert client.post("/api/v1/admin/runs/reconcile", json={}).status_code == 403


def test_admin_backfill_dry_run_by_default(client, login, make_user):
    login(make_user(is_admin=True))

    response = client.post("/api/v1/admin/runs/backfill", json={})

    assert response.status_code == 200
    assert response.json()["dry_run"] is True


def test_admin_reconcile(client, login, db_session, make_user, add_run):
    admin = make_user(is_admin=True)
    add_run(admin, date(2025, 1, 1), date(2025, 1, 3))
    db_session.add(RunTotals(user_id=admin, year_month="2025-01", total_days=5, longest_run_days=2))
    db_session.commit()
    login(admin)

    response = client.post(
        "/api/v1/admin/runs/reconcile",
        json={"user_ids": [admin], "year_month": "2025-01"},
    )

    assert response.status_code == 200
    summary = response.json()
    assert summary["mismatches"] == 1
    assert summary["matches"] == 2


def test_admin_reconcile_rejects_bad_month(client, login, make_user):
    login(make_user(is_admin=True))

    response = client.post("/api/v1/admin/runs/reconcile", json={"year_month": "2025/01"})

    assert response.status_code == 422


def test_session_comes_from_app_state(session_factory, user_id, add_run):
    add_run(user_id, date(2025, 1, 1), date(2025, 1, 5), day_count=1)
    app.state.database = SimpleNamespace(session_factory=session_factory)
    try:
        response = TestClient(app).get("/api/v1/runs/health")
    finally:
        del app.state.database

    assert response.json()["checks"]["day_count_issues"] == 1


def test_lifespan_builds_and_disposes_database(session_factory):
    database = Mock(session_factory=session_factory)

    with patch("app.main.Database.from_settings", return_value=database), \
            patch("app.main.start_scheduler") as start, \
            patch("app.main.shutdown_scheduler") as shutdown:
        with TestClient(app):
            assert app.state.database is database
            assert start.call_args.args[0] is session_factory
            database.dispose.assert_not_called()

    shutdown.assert_called_once()
    database.dispose.assert_called_once()
    del app.state.database

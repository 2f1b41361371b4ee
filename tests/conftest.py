"""
Pytest fixtures for testing
"""
from datetime import date

import pytest
from sqlalchemy import create_engine, event, JSON
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

from app.infrastructure.db.session import Base
from app.infrastructure.db.models import Run, User


@pytest.fixture
def db_engine():
    """
    Create in-memory SQLite engine for tests, with JSONB→JSON mapping.

    StaticPool: every session (including those opened by services through a
    session factory) sees the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        pass

    # Monkey-patch JSONB columns to JSON for SQLite compatibility
    for table in Base.metadata.tables.values():
        for col in table.columns:
            if isinstance(col.type, JSONB):
                col.type = JSON()
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory for services that open their own sessions"""
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def db_session(session_factory) -> Session:
    """Create database session for tests"""
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def make_user(db_session):
    """Factory: create a user and return its id"""
    counter = {"n": 0}

    def _make(timezone: str = "UTC", is_admin: bool = False) -> int:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            password_hash="x",
            timezone=timezone,
            is_admin=is_admin,
        )
        db_session.add(user)
        db_session.commit()
        return user.id

    return _make


@pytest.fixture
def user_id(make_user) -> int:
    return make_user()


@pytest.fixture
def add_run(db_session):
    """Factory: insert a run [start, end) directly"""
    def _add(user_id: int, start: date, end: date, active: bool = False, day_count: int | None = None) -> Run:
        run = Run(
            user_id=user_id,
            start_date=start,
            end_date=end,
            day_count=(end - start).days if day_count is None else day_count,
            active=active,
        )
        db_session.add(run)
        db_session.commit()
        return run

    return _add

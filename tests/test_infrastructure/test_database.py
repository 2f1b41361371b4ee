"""
Tests for Database (engine + session factory lifecycle) and UserLockRegistry
"""
import threading

from sqlalchemy import text

from app.infrastructure.db.session import Database
from app.infrastructure.locks import UserLockRegistry


def test_session_dependency_yields_and_closes():
    database = Database("sqlite://")
    sessions = database.session()

    db = next(sessions)
    assert db.execute(text("SELECT 1")).scalar() == 1

    sessions.close()
    database.dispose()


def test_each_database_owns_its_engine():
    first, second = Database("sqlite://"), Database("sqlite://")

    assert first.engine is not second.engine
    assert first.session_factory.kw["bind"] is first.engine

    first.dispose()
    second.dispose()


def test_lock_registry_serializes_same_user():
    locks = UserLockRegistry()
    entered = threading.Event()
    release = threading.Event()
    order = []

    def holder():
        with locks.hold(1):
            entered.set()
            release.wait(timeout=5)
            order.append("first")

    t = threading.Thread(target=holder)
    t.start()
    entered.wait(timeout=5)

    def waiter():
        with locks.hold(1):
            order.append("second")

    w = threading.Thread(target=waiter)
    w.start()
    release.set()
    t.join(timeout=5)
    w.join(timeout=5)

    assert order == ["first", "second"]


def test_lock_registry_forgets_released_users():
    locks = UserLockRegistry()

    for user_id in range(100):
        with locks.hold(user_id):
            pass

    assert len(locks) == 0

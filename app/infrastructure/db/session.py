"""
Database session management (SQLAlchemy)

Engine and session factory live on a Database object owned by whoever starts
the process: the FastAPI lifespan (app.state.database) or run_backfill.py.
"""
import psycopg
from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from app.config import Settings, get_settings


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all ORM models
    """
    pass


class Database:
    """
    Engine + session factory with an explicit lifecycle

    Usage:
        database = Database.from_settings()
        db = database.session_factory()
        ...
        database.dispose()
    """

    def __init__(self, url: str, raw_url: str | None = None, **engine_kwargs):
        engine_kwargs.setdefault("pool_pre_ping", True)
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False)
        self._raw_url = raw_url or url

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.get_sqlalchemy_url(), raw_url=settings.DATABASE_URL)

    def session(self):
        """Yield a session and close it afterwards (FastAPI dependency style)."""
        db: Session = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def check_connection(self) -> None:
        """
        Health check - проверка доступности PostgreSQL (raw psycopg)

        Raises:
            psycopg.OperationalError: если БД недоступна
        """
        with psycopg.connect(self._raw_url, connect_timeout=3) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()

    def dispose(self) -> None:
        self.engine.dispose()

"""
SQLAlchemy ORM models (source tables + readmodels)
"""
from datetime import date as date_type, datetime
from sqlalchemy import (
    String, DateTime, Integer, Text, TIMESTAMP, Date, func, Boolean,
    UniqueConstraint, Index, CheckConstraint, text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.dialects.postgresql import JSONB

from app.infrastructure.db.session import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)

    # IANA name, e.g. "America/New_York"; defines the user's calendar day
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, server_default="UTC")
    is_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )


# ============================================================================
# Source of truth
# ============================================================================


class DayMark(Base):
    """
    Deduplicated current state: one row per user per calendar date.
    v1 stores only value=True.
    """
    __tablename__ = "day_marks"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    date: Mapped[date_type] = mapped_column(Date, primary_key=True)
    value: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    __table_args__ = (
        CheckConstraint("value = TRUE", name="ck_day_marks_value_true"),
    )


class ClickEvent(Base):
    """
    Click log - append-only, every marking attempt with timezone context.

    Ground truth for run rebuilds: rows are never updated or deleted.
    """
    __tablename__ = "click_events"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    date: Mapped[date_type] = mapped_column(Date, nullable=False)
    value: Mapped[bool] = mapped_column(Boolean, nullable=False)
    user_local_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    user_timezone: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("ix_click_events_user_id_id", "user_id", "id"),
    )


# ============================================================================
# Read Models (projections built from the click log)
# ============================================================================


class ProjectorCheckpoint(Base):
    """
    Infrastructure: Track projector progress for idempotent event processing
    """
    __tablename__ = "projector_checkpoints"

    id: Mapped[int] = mapped_column(primary_key=True)
    projector_name: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    last_event_id: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('projector_name', 'user_id', name='uq_projector_user'),
    )


class Run(Base):
    """
    Read model: one maximal streak of consecutive marked dates.

    Interval is half-open: [start_date, end_date), day_count = end_date - start_date.
    Non-overlap per user is enforced on Postgres by a gist exclusion
    constraint (see migrations); single active run per user by a partial
    unique index on both Postgres and SQLite.
    """
    __tablename__ = "runs"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)

    start_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    end_date: Mapped[date_type] = mapped_column(Date, nullable=False)  # exclusive
    day_count: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    last_extended_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )

    __table_args__ = (
        CheckConstraint("end_date >= start_date", name="ck_runs_span_valid"),
        CheckConstraint("day_count >= 0", name="ck_runs_day_count_non_negative"),
        Index("ix_runs_user_end_date", "user_id", "end_date"),
        Index("ix_runs_user_start_date", "user_id", "start_date"),
        Index(
            "uq_runs_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"Run(id={self.id}, user_id={self.user_id}, "
            f"[{self.start_date}, {self.end_date}), days={self.day_count}, active={self.active})"
        )


class RunTotals(Base):
    """
    Read model: month-scoped aggregate of a user's runs (cache, rebuilt by
    RunTotalsService and audited by ReconciliationService).
    """
    __tablename__ = "run_totals"

    user_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    year_month: Mapped[str] = mapped_column(String(7), primary_key=True)  # YYYY-MM

    total_days: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    longest_run_days: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    # NULL means "no active run", not a zero-length streak
    active_run_days: Mapped[int | None] = mapped_column(Integer, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False
    )


class ReconciliationLog(Base):
    """
    Append-only audit of aggregate-vs-realtime checks. Never updated.
    """
    __tablename__ = "reconciliation_log"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    check_type: Mapped[str] = mapped_column(String(32), nullable=False)  # total_days, longest_run, active_run
    expected_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    actual_value: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # match, mismatch, corrected, error
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_time_ms: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    correlation_id: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        Index("ix_reconciliation_log_user_month", "user_id", "year_month"),
        Index("ix_reconciliation_log_correlation", "correlation_id"),
    )


class RunBackup(Base):
    """
    Snapshot of a user's runs taken right before a backfill rebuild.
    """
    __tablename__ = "run_backups"

    id: Mapped[int] = mapped_column(primary_key=True)
    operation_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    start_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    end_date: Mapped[date_type] = mapped_column(Date, nullable=False)
    day_count: Mapped[int] = mapped_column(Integer, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    backed_up_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )


class RunBackfillOperation(Base):
    """
    Audit record of a (non dry-run) backfill pass.
    """
    __tablename__ = "run_backfill_operations"

    operation_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # running, completed, failed, cancelled
    total_users: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    completed_users: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    failed_users: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    invariant_violations: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    skip_backup: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    errors_json: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

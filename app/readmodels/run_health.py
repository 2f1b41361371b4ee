"""
Run health readmodel: invariant-violation counts over the runs table.

Used as a standing health check and after backfill. A non-zero count means
the store's constraints were bypassed (or are absent, e.g. on SQLite, where
there is no exclusion constraint).
"""
from dataclasses import dataclass

from sqlalchemy import and_, func
from sqlalchemy.orm import Session, aliased

from app.infrastructure.db.models import Run


@dataclass(frozen=True)
class RunValidationResult:
    overlapping_runs: int
    multiple_active_runs: int
    day_count_issues: int

    @property
    def total(self) -> int:
        return self.overlapping_runs + self.multiple_active_runs + self.day_count_issues

    @property
    def valid(self) -> bool:
        return self.total == 0

    def as_dict(self) -> dict:
        return {
            "overlapping_runs": self.overlapping_runs,
            "multiple_active_runs": self.multiple_active_runs,
            "day_count_issues": self.day_count_issues,
        }


def count_overlapping_runs(db: Session, user_id: int | None = None) -> int:
    """Pairs of runs of the same user whose intervals intersect."""
    r1 = aliased(Run)
    r2 = aliased(Run)
    query = (
        db.query(func.count())
        .select_from(r1)
        .join(r2, and_(
            r1.user_id == r2.user_id,
            r1.id < r2.id,
            r1.start_date < r2.end_date,
            r2.start_date < r1.end_date,
        ))
    )
    if user_id is not None:
        query = query.filter(r1.user_id == user_id)
    return query.scalar() or 0


def count_multiple_active(db: Session, user_id: int | None = None) -> int:
    """Users that have more than one active run."""
    sub = (
        db.query(Run.user_id)
        .filter(Run.active.is_(True))
        .group_by(Run.user_id)
        .having(func.count(Run.id) > 1)
    )
    if user_id is not None:
        sub = sub.filter(Run.user_id == user_id)
    return db.query(func.count()).select_from(sub.subquery()).scalar() or 0


def count_day_count_issues(db: Session, user_id: int | None = None) -> int:
    """Runs whose day_count differs from end_date - start_date."""
    if db.get_bind().dialect.name == "sqlite":
        span_days = func.julianday(Run.end_date) - func.julianday(Run.start_date)
    else:
        span_days = Run.end_date - Run.start_date
    query = db.query(func.count(Run.id)).filter(Run.day_count != span_days)
    if user_id is not None:
        query = query.filter(Run.user_id == user_id)
    return query.scalar() or 0


class RunHealthService:
    def __init__(self, db: Session):
        self.db = db

    def validate(self, user_id: int | None = None) -> RunValidationResult:
        return RunValidationResult(
            overlapping_runs=count_overlapping_runs(self.db, user_id),
            multiple_active_runs=count_multiple_active(self.db, user_id),
            day_count_issues=count_day_count_issues(self.db, user_id),
        )

    def validate_user(self, user_id: int) -> RunValidationResult:
        return self.validate(user_id)

    def check(self) -> dict:
        """Operational check: degraded status instead of an error."""
        result = self.validate()
        return {
            "status": "healthy" if result.valid else "unhealthy",
            "checks": result.as_dict(),
        }

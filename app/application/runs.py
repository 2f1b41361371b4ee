"""Run maintenance engine: keeps a user's runs in sync with newly marked dates."""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.domain.run import (
    ONE_DAY, MERGE, NOOP, EXTEND, CREATE,
    RunConsistencyError, RunSpan, decide_mark, is_stale,
)
from app.infrastructure.db.models import Run, User
from app.utils.dates import parse_local_date, user_local_today

logger = logging.getLogger(__name__)


class RunValidationError(ValueError):
    pass


class RunInvariantViolation(Exception):
    """The store rejected a run write (overlap / second active run)."""
    pass


@dataclass
class RunOperationResult:
    success: bool
    message: str
    affected_runs: list[Run] = field(default_factory=list)
    was_no_op: bool = False
    operation: str = NOOP
    # runs that lost the active flag because the touched run superseded them
    deactivated_runs: list[Run] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunMaintenanceEngine:
    """
    extend(user_id, date) is idempotent: a second call for the same date is a
    no-op. All writes for one call happen in one transaction while the user's
    row is locked, so concurrent marks for the same user serialize.
    """

    def __init__(self, db: Session, max_attempts: int | None = None):
        self.db = db
        self.max_attempts = max_attempts or get_settings().RUN_EXTEND_MAX_ATTEMPTS

    def extend(self, user_id: int, day: date | str) -> RunOperationResult:
        d = self._parse_date(day)

        last_error: IntegrityError | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.lock_user(user_id)
                result = self.apply(user_id, d)
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                last_error = exc
                logger.warning(
                    "Run write rejected by constraint user=%s date=%s attempt=%d/%d",
                    user_id, d, attempt, self.max_attempts,
                )
                continue
            except Exception:
                self.db.rollback()
                raise

            logger.info("Run %s user=%s date=%s", result.operation, user_id, d)
            return result

        raise RunInvariantViolation(
            f"Run update for user {user_id} on {d} violated a store constraint "
            f"after {self.max_attempts} attempt(s)"
        ) from last_error

    def lock_user(self, user_id: int) -> User:
        """SELECT ... FOR UPDATE on the user row; serializes run writes per user."""
        user = (
            self.db.query(User)
            .filter(User.id == user_id)
            .with_for_update()
            .first()
        )
        if user is None:
            raise RunValidationError(f"Пользователь #{user_id} не найден")
        return user

    def apply(self, user_id: int, d: date) -> RunOperationResult:
        """
        Apply one marked date without committing (caller owns the transaction).

        Raises:
            RunConsistencyError: more than one run adjacent on the same side
        """
        nxt = d + ONE_DAY
        ending_at = self._runs(user_id, Run.end_date == d)
        starting_after = self._runs(user_id, Run.start_date == nxt)
        containing = self._runs(user_id, Run.start_date <= d, Run.end_date > d)

        try:
            action = decide_mark(ending_at, starting_after, containing)
        except RunConsistencyError as exc:
            logger.error("Run consistency violation user=%s date=%s: %s", user_id, d, exc)
            raise RunConsistencyError(str(exc), user_id=user_id, day=d) from exc

        if action == MERGE:
            return self._merge(ending_at[0], starting_after[0], d)

        if action == NOOP:
            return RunOperationResult(
                success=True,
                message=f"Date {d} already exists in run, no operation needed",
                affected_runs=containing,
                was_no_op=True,
                operation=NOOP,
            )

        now = _utcnow()
        if action == EXTEND:
            target = (ending_at or starting_after)[0]
            target.start_date = min(target.start_date, d)
            target.end_date = max(target.end_date, nxt)
            target.day_count = (target.end_date - target.start_date).days
            target.last_extended_at = now
            message = f"Extended run to include {d}"
        else:
            target = Run(
                user_id=user_id,
                start_date=d,
                end_date=nxt,
                day_count=1,
                active=False,
                last_extended_at=now,
            )
            self.db.add(target)
            message = f"Created new run for isolated date {d}"
        self.db.flush()

        deactivated = self._activate_if_latest(user_id, target)
        return RunOperationResult(
            success=True,
            message=message,
            affected_runs=[target],
            was_no_op=False,
            operation=action,
            deactivated_runs=deactivated,
        )

    def _merge(self, before: Run, after: Run, d: date) -> RunOperationResult:
        new_start = min(before.start_date, after.start_date)
        new_end = max(before.end_date, after.end_date)
        active = before.active or after.active

        # Delete first: the widened run must never coexist with the one it absorbs
        self.db.delete(after)
        self.db.flush()

        before.start_date = new_start
        before.end_date = new_end
        before.day_count = (new_end - new_start).days
        before.active = active
        before.last_extended_at = _utcnow()
        self.db.flush()

        return RunOperationResult(
            success=True,
            message=f"Merged runs by filling gap at {d}",
            affected_runs=[before],
            was_no_op=False,
            operation=MERGE,
        )

    def _activate_if_latest(self, user_id: int, target: Run) -> list[Run]:
        later = (
            self.db.query(Run.id)
            .filter(
                Run.user_id == user_id,
                Run.id != target.id,
                Run.end_date > target.end_date,
            )
            .first()
        )
        if later is not None:
            return []

        superseded = (
            self.db.query(Run)
            .filter(Run.user_id == user_id, Run.id != target.id, Run.active.is_(True))
            .all()
        )
        for run in superseded:
            run.active = False
        if superseded:
            self.db.flush()

        target.active = True
        self.db.flush()
        return superseded

    def _runs(self, user_id: int, *criteria) -> list[Run]:
        return (
            self.db.query(Run)
            .filter(Run.user_id == user_id, *criteria)
            .order_by(Run.start_date)
            .all()
        )

    @staticmethod
    def _parse_date(day: date | str) -> date:
        try:
            return parse_local_date(day)
        except ValueError as exc:
            raise RunValidationError(str(exc)) from exc


def deactivate_stale_runs(
    db: Session,
    now: datetime | None = None,
    user_id: int | None = None,
    commit: bool = True,
    local_today: date | None = None,
) -> list[Run]:
    """
    Daily sweep: clear the active flag of runs whose last day is before
    yesterday in the owner's timezone.

    Args:
        local_today: overrides the per-user "today" (rebuilds, tests)

    Returns:
        Runs that were deactivated
    """
    query = (
        db.query(Run, User.timezone)
        .join(User, User.id == Run.user_id)
        .filter(Run.active.is_(True))
    )
    if user_id is not None:
        query = query.filter(Run.user_id == user_id)

    deactivated = []
    for run, tz_name in query.all():
        span = RunSpan(run.start_date, run.end_date, run.active)
        today = local_today or user_local_today(tz_name, now)
        if is_stale(span, today):
            run.active = False
            deactivated.append(run)

    if deactivated:
        db.flush()
        logger.info("Stale-run sweep: deactivated %d run(s)", len(deactivated))
    if commit:
        db.commit()
    return deactivated

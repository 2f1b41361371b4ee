"""
Run domain logic - half-open date intervals of consecutive marked days.

A run covers [start, end): start is the first marked day, end is the day
after the last one, day_count = end - start.

Marking a date d resolves, in this order:
  MERGE   - one run ends on d and another starts on d+1
  NOOP    - d already lies inside a run
  EXTEND  - exactly one run ends on d or starts on d+1
  CREATE  - new single-day run [d, d+1)

The functions here are pure; RunMaintenanceEngine applies the same
decisions against the database, replay_dates applies them in memory.
"""
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Iterable, Sequence

from app.utils.dates import month_bounds

ONE_DAY = timedelta(days=1)

MERGE = "merge"
NOOP = "noop"
EXTEND = "extend"
CREATE = "create"


class RunConsistencyError(Exception):
    """More than one run is adjacent to a date on the same side."""

    def __init__(self, message: str, user_id: int | None = None, day: date | None = None):
        super().__init__(message)
        self.user_id = user_id
        self.day = day


@dataclass(frozen=True, order=True)
class RunSpan:
    start: date
    end: date  # exclusive
    active: bool = False

    @property
    def day_count(self) -> int:
        return (self.end - self.start).days

    @property
    def last_day(self) -> date:
        return self.end - ONE_DAY

    def contains(self, d: date) -> bool:
        return self.start <= d < self.end

    def overlaps(self, other: "RunSpan") -> bool:
        return self.start < other.end and other.start < self.end

    def including(self, d: date) -> "RunSpan":
        return replace(self, start=min(self.start, d), end=max(self.end, d + ONE_DAY))


@dataclass(frozen=True)
class MonthTotals:
    total_days: int
    longest_run_days: int
    active_run_days: int | None


def decide_mark(
    ending_at: Sequence,
    starting_after: Sequence,
    containing: Sequence,
) -> str:
    """
    Pick the operation for marking a date.

    Args:
        ending_at: runs whose end equals the date
        starting_after: runs whose start equals date + 1
        containing: runs that already contain the date

    Raises:
        RunConsistencyError: two runs adjacent on the same side (overlap upstream)
    """
    if len(ending_at) > 1 or len(starting_after) > 1:
        raise RunConsistencyError(
            f"{len(ending_at)} run(s) end on the date and "
            f"{len(starting_after)} run(s) start the day after"
        )
    if ending_at and starting_after:
        return MERGE
    if containing:
        return NOOP
    if ending_at or starting_after:
        return EXTEND
    return CREATE


def is_latest(candidate_end: date, other_ends: Iterable[date]) -> bool:
    """True when no other run of the user ends after candidate_end."""
    return all(end <= candidate_end for end in other_ends)


def is_stale(span: RunSpan, local_today: date) -> bool:
    """
    An active run stays eligible while its last day is yesterday or later;
    once a whole day has been missed it can no longer be extended to today.
    """
    return span.last_day < local_today - ONE_DAY


def apply_mark(spans: Sequence[RunSpan], d: date) -> list[RunSpan]:
    """Return the run set after marking d (in-memory twin of RunMaintenanceEngine)."""
    nxt = d + ONE_DAY
    ending_at = [s for s in spans if s.end == d]
    starting_after = [s for s in spans if s.start == nxt]
    containing = [s for s in spans if s.contains(d)]

    action = decide_mark(ending_at, starting_after, containing)

    if action == NOOP:
        return list(spans)

    if action == MERGE:
        before, after = ending_at[0], starting_after[0]
        merged = RunSpan(
            start=min(before.start, after.start),
            end=max(before.end, after.end),
            active=before.active or after.active,
        )
        rest = [s for s in spans if s is not before and s is not after]
        return rest + [merged]

    if action == EXTEND:
        target = (ending_at or starting_after)[0]
        touched = target.including(d)
        rest = [s for s in spans if s is not target]
    else:
        touched = RunSpan(start=d, end=nxt)
        rest = list(spans)

    if is_latest(touched.end, (s.end for s in rest)):
        rest = [replace(s, active=False) if s.active else s for s in rest]
        touched = replace(touched, active=True)
    return rest + [touched]


def replay_dates(dates: Iterable[date]) -> list[RunSpan]:
    """Build a run set from scratch by marking dates in the given order."""
    spans: list[RunSpan] = []
    for d in dates:
        spans = apply_mark(spans, d)
    return sorted(spans)


def deactivate_stale(spans: Sequence[RunSpan], local_today: date) -> list[RunSpan]:
    return [
        replace(s, active=False) if s.active and is_stale(s, local_today) else s
        for s in spans
    ]


def month_totals(spans: Iterable[RunSpan], ym: str) -> MonthTotals:
    """
    Month-scoped aggregate:
      total_days       - marked days inside the month (runs clipped to it)
      longest_run_days - longest full run touching the month
      active_run_days  - day_count of the active run if it touches the month, else None
    """
    first, next_first = month_bounds(ym)
    month = RunSpan(first, next_first)
    total = 0
    longest = 0
    active_days = None
    for s in spans:
        if not s.overlaps(month):
            continue
        total += (min(s.end, next_first) - max(s.start, first)).days
        longest = max(longest, s.day_count)
        if s.active:
            active_days = s.day_count
    return MonthTotals(total_days=total, longest_run_days=longest, active_run_days=active_days)

# exercise_log.py
# =============================================================================
# Exercise log assembly: date normalization, calendar formatting, coercion of
# submitted durations and limits, and the sorted/filtered per-user log.
# Pure functions only; no I/O.
# =============================================================================

from __future__ import annotations

import math
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterable, List, Optional, Protocol, Sequence

from pydantic import BaseModel, ConfigDict, Field

DATE_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])-(0[1-9]|[12][0-9]|3[01])$")
_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")

_WEEKDAYS = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
_MONTHS = (
    "Jan", "Feb", "Mar", "Apr", "May", "Jun",
    "Jul", "Aug", "Sep", "Oct", "Nov", "Dec",
)
INVALID_DATE = "Invalid Date"


class ExerciseLike(Protocol):
    description: Optional[str]
    duration: Optional[float]
    date: str


class UserLike(Protocol):
    id: str
    username: str
    count: int
    exercises: Sequence[ExerciseLike]


class LogEntry(BaseModel):
    description: Optional[str] = None
    duration: Optional[int] = None
    date: str


class LogOut(BaseModel):
    id: str = Field(alias="_id")
    username: str
    count: int
    log: List[LogEntry] = Field(default_factory=list)
    model_config = ConfigDict(populate_by_name=True)


# -----------------------------------------------------------------------------
# Dates
# -----------------------------------------------------------------------------
_ERA_DAYS = 146097  # days in 400 Gregorian years; weekdays repeat per era


def today_utc() -> date:
    return datetime.now(timezone.utc).date()


def normalize_date(candidate: Any, today: Optional[date] = None) -> str:
    """Return ``candidate`` if it looks like YYYY-MM-DD, else today's date.

    Only digit ranges are checked, so "2024-02-31" is returned as is.
    """
    if isinstance(candidate, str) and DATE_RE.match(candidate):
        return candidate
    return (today or today_utc()).isoformat()


def calendar_day(value: Any) -> Optional[int]:
    """Proleptic Gregorian day number of a YYYY-MM-DD string.

    Days past the month's end roll forward. Year 0000 is allowed and maps
    to day numbers below 1.
    """
    if not isinstance(value, str) or not DATE_RE.match(value):
        return None
    year, month, day = (int(p) for p in value.split("-"))
    if year == 0:
        return date(400, month, 1).toordinal() - _ERA_DAYS + day - 1
    return date(year, month, 1).toordinal() + day - 1


def parse_calendar_date(value: Any) -> Optional[date]:
    """Parse YYYY-MM-DD leniently: days past the month's end roll forward."""
    n = calendar_day(value)
    if n is None or n < 1:
        return None
    return date.fromordinal(n)


def format_calendar_date(d: date, year: Optional[int] = None) -> str:
    year = d.year if year is None else year
    return f"{_WEEKDAYS[d.weekday()]} {_MONTHS[d.month - 1]} {d.day:02d} {year:04d}"


def to_date_string(value: Any) -> str:
    """Format a stored date as e.g. "Fri May 05 2023"."""
    n = calendar_day(value)
    if n is None:
        return INVALID_DATE
    if n < 1:
        shifted = date.fromordinal(n + _ERA_DAYS)
        return format_calendar_date(shifted, shifted.year - 400)
    return format_calendar_date(date.fromordinal(n))


# -----------------------------------------------------------------------------
# Numbers
# -----------------------------------------------------------------------------
_DECIMAL_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_RADIX_RE = re.compile(r"^0([xXoObB])([0-9a-fA-F]+)$")
_RADIX_BASES = {"x": 16, "o": 8, "b": 2}


def _as_float(value: Any) -> Optional[float]:
    try:
        f = float(value)
    except (OverflowError, TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def coerce_int(value: Any) -> Optional[int]:
    """Integer-prefix coercion. None stands in for not-a-number."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    m = _INT_PREFIX_RE.match(str(value))
    if not m:
        return None
    return int(m.group(1))


def coerce_duration(value: Any) -> Optional[float]:
    """Numeric value stored for a submitted duration (None if not a number)."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _as_float(value)
    text = str(value).strip()
    if _DECIMAL_RE.match(text):
        return _as_float(text)
    return _as_float(coerce_int(text))


def parse_limit(limit: Any) -> float:
    """Numeric value of a limit string; NaN when it is not a number."""
    if isinstance(limit, (int, float)):
        f = _as_float(limit)
        if f is not None:
            return f
        if isinstance(limit, int):
            return math.inf if limit > 0 else -math.inf
        return limit
    text = str(limit).strip()
    if not text:
        return 0.0
    if _DECIMAL_RE.match(text):
        return float(text)
    m = _RADIX_RE.match(text)
    if m:
        try:
            return float(int(m.group(2), _RADIX_BASES[m.group(1).lower()]))
        except ValueError:
            return math.nan
        except OverflowError:
            return math.inf
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    return math.nan


def selection_size(limit: Any, available: int) -> int:
    """How many entries, from index 0, satisfy ``i < limit`` (clamped)."""
    if limit is None or limit == "":
        return available
    n = parse_limit(limit)
    if math.isnan(n) or n <= 0:
        return 0
    if math.isinf(n):
        return available
    return min(math.ceil(n), available)


# -----------------------------------------------------------------------------
# Log assembly
# -----------------------------------------------------------------------------
def to_log_entry(exercise: ExerciseLike) -> LogEntry:
    return LogEntry(
        description=exercise.description,
        duration=coerce_int(exercise.duration),
        date=to_date_string(exercise.date),
    )


def build_log(
    exercises: Iterable[ExerciseLike],
    limit: Any = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> List[LogEntry]:
    """Select, format, sort (newest first) and range-filter exercises.

    Selection happens before sorting, so ``limit`` picks the earliest
    logged entries, not the most recent ones. The range filter only
    applies when both bounds are given; an unparseable bound keeps nothing.
    """
    exercises = list(exercises)
    selected = exercises[: selection_size(limit, len(exercises))]

    dated = [(calendar_day(e.date), to_log_entry(e)) for e in selected]
    dated.sort(key=lambda pair: -math.inf if pair[0] is None else pair[0], reverse=True)

    if date_from and date_to:
        lo = calendar_day(date_from)
        hi = calendar_day(date_to)
        dated = [
            (d, entry) for d, entry in dated
            if lo is not None and hi is not None and d is not None and lo <= d <= hi
        ]

    return [entry for _, entry in dated]


def assemble_log(
    user: UserLike,
    limit: Any = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
) -> LogOut:
    return LogOut(
        id=user.id,
        username=user.username,
        count=user.count,
        log=build_log(user.exercises, limit, date_from, date_to),
    )

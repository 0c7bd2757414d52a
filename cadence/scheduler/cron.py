"""
Time matcher — five-field cron expressions evaluated at a fixed UTC offset.

    minute  hour  day-of-month  month  day-of-week
    0-59    0-23  1-31          1-12   0-6 (0 = Sunday)

Each field is a comma-separated union of:
    *        every value
    */N      values divisible by N
    A-B      inclusive range
    A-B/N    every Nth value of the range, counted from A
    A        a single value

All five fields must match at once (day-of-month and day-of-week are ANDed,
unlike classic Vixie cron).

Instants are timezone-aware datetimes (naive values are taken as UTC). The
calendar fields are read from `instant (UTC) + offset_minutes`, never from
the host's local timezone. The offset may also be a callable returning the
offset for a given UTC instant, so a scan across a DST change stays exact.

Usage:
    matches("*/15 * * * *", now)
    next_match("0 9 * * 1-5", now, offset_minutes=120)
    next_effective_run("0 * * * *", now, 0, [ExclusionWindow.parse("22:00", "07:00")])
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Iterable, Iterator, Union

from cadence.core.errors import ScheduleError

# Scan depth for next-run searches: 48 hours of minutes.
HORIZON_MINUTES = 48 * 60

# Minutes east of UTC: fixed, or looked up per instant (an IANA zone across DST).
Offset = Union[int, Callable[[datetime], int]]

_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day of month", 1, 31),
    ("month", 1, 12),
    ("day of week", 0, 6),
)

_STAR = re.compile(r"^\*(?:/(\d+))?$")
_RANGE = re.compile(r"^(\d+)-(\d+)(?:/(\d+))?$")
_SINGLE = re.compile(r"^\d+$")
_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")


@dataclass(frozen=True, slots=True)
class FieldPart:
    """One comma-separated alternative of a field. low=None means '*'."""

    low: int | None
    high: int | None
    step: int = 1

    def matches(self, value: int) -> bool:
        if self.low is None:
            return value % self.step == 0
        if self.high is None:
            return value == self.low
        return self.low <= value <= self.high and (value - self.low) % self.step == 0


@dataclass(frozen=True, slots=True)
class CronExpression:
    """A parsed expression: five fields, each a tuple of alternatives."""

    source: str
    fields: tuple[tuple[FieldPart, ...], ...]

    def matches(self, instant: datetime, offset_minutes: Offset = 0) -> bool:
        values = _calendar_values(_local(instant, offset_minutes))
        return all(
            any(part.matches(value) for part in parts)
            for parts, value in zip(self.fields, values)
        )


@dataclass(frozen=True, slots=True)
class ExclusionWindow:
    """
    A recurring local time range [start, end) during which triggers are deferred.

    `days` holds weekday numbers (0 = Sunday); empty means every day. A
    window whose end is earlier than its start wraps past midnight and
    belongs to the day it starts on.
    """

    start_minute: int
    end_minute: int
    days: frozenset[int] = frozenset()

    @classmethod
    def parse(cls, start: str, end: str, days: Iterable[int] = ()) -> ExclusionWindow:
        return cls(
            start_minute=_parse_hhmm(start),
            end_minute=_parse_hhmm(end),
            days=frozenset(days),
        )

    def in_window(self, local: datetime) -> bool:
        """Check a LOCAL (offset already applied) time against the window."""
        if self.start_minute == self.end_minute:
            return False
        minute = local.hour * 60 + local.minute
        weekday = _weekday(local)
        if self.start_minute < self.end_minute:
            return self.start_minute <= minute < self.end_minute and self._on(weekday)
        if minute >= self.start_minute:
            return self._on(weekday)
        if minute < self.end_minute:
            return self._on((weekday - 1) % 7)
        return False

    def _on(self, weekday: int) -> bool:
        return not self.days or weekday in self.days


# ━━━ Public API ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


@lru_cache(maxsize=256)
def parse_expression(expression: str) -> CronExpression:
    """
    Parse and validate a five-field expression.

    Raises ScheduleError for a wrong field count, unknown syntax, a zero
    step, a reversed range, or a value outside the field's range.
    """
    raw_fields = expression.split()
    if len(raw_fields) != 5:
        raise ScheduleError(
            f"Expected 5 fields, got {len(raw_fields)}: {expression!r}",
            expression=expression,
        )
    fields = tuple(
        _parse_field(raw, name, low, high, expression)
        for raw, (name, low, high) in zip(raw_fields, _FIELDS)
    )
    return CronExpression(source=expression, fields=fields)


def is_valid(expression: str) -> bool:
    try:
        parse_expression(expression)
    except ScheduleError:
        return False
    return True


def matches(expression: str, instant: datetime, offset_minutes: Offset = 0) -> bool:
    """True if every field of the expression matches the instant's local minute."""
    return parse_expression(expression).matches(instant, offset_minutes)


def find_next_match(
    expression: str,
    after: datetime,
    offset_minutes: Offset = 0,
) -> datetime | None:
    """First matching minute strictly after `after`'s minute, or None within the horizon."""
    expr = parse_expression(expression)
    for candidate in _candidates(after):
        if expr.matches(candidate, offset_minutes):
            return candidate
    return None


def next_match(expression: str, after: datetime, offset_minutes: Offset = 0) -> datetime:
    """
    Like find_next_match, but returns the horizon boundary when nothing matches.

    Callers must treat a result equal to horizon_boundary(after) as
    "no match found soon".
    """
    found = find_next_match(expression, after, offset_minutes)
    return found if found is not None else horizon_boundary(after)


def horizon_boundary(after: datetime) -> datetime:
    return _first_candidate(after) + timedelta(minutes=HORIZON_MINUTES)


def is_excluded(
    instant: datetime,
    offset_minutes: Offset,
    windows: Iterable[ExclusionWindow],
) -> bool:
    local = _local(instant, offset_minutes)
    return any(window.in_window(local) for window in windows)


def next_effective_run(
    expression: str,
    after: datetime,
    offset_minutes: Offset = 0,
    windows: Iterable[ExclusionWindow] = (),
) -> datetime | None:
    """First matching minute after `after` that no exclusion window covers."""
    expr = parse_expression(expression)
    windows = tuple(windows)
    for candidate in _candidates(after):
        if expr.matches(candidate, offset_minutes) and not is_excluded(
            candidate, offset_minutes, windows
        ):
            return candidate
    return None


def floor_minute(instant: datetime) -> datetime:
    return _utc(instant).replace(second=0, microsecond=0)


# ━━━ Internal helpers ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def _parse_field(
    raw: str,
    name: str,
    low: int,
    high: int,
    expression: str,
) -> tuple[FieldPart, ...]:
    parts: list[FieldPart] = []
    for alternative in raw.split(","):
        part = _parse_part(alternative, name, expression)
        for bound in (part.low, part.high):
            if bound is not None and not low <= bound <= high:
                raise ScheduleError(
                    f"{name} value {bound} outside {low}-{high} in {expression!r}",
                    expression=expression,
                    field=name,
                )
        if part.low is not None and part.high is not None and part.low > part.high:
            raise ScheduleError(
                f"Reversed {name} range {alternative!r} in {expression!r}",
                expression=expression,
                field=name,
            )
        parts.append(part)
    return tuple(parts)


def _parse_part(alternative: str, name: str, expression: str) -> FieldPart:
    m = _STAR.match(alternative)
    if m:
        return FieldPart(None, None, _step(m.group(1), name, expression))
    m = _RANGE.match(alternative)
    if m:
        return FieldPart(int(m.group(1)), int(m.group(2)), _step(m.group(3), name, expression))
    if _SINGLE.match(alternative):
        return FieldPart(int(alternative), None)
    raise ScheduleError(
        f"Unsupported {name} syntax {alternative!r} in {expression!r}",
        expression=expression,
        field=name,
    )


def _step(raw: str | None, name: str, expression: str) -> int:
    if raw is None:
        return 1
    step = int(raw)
    if step < 1:
        raise ScheduleError(
            f"{name} step must be at least 1 in {expression!r}",
            expression=expression,
            field=name,
        )
    return step


def _parse_hhmm(value: str) -> int:
    m = _HHMM.match(value.strip())
    if not m or int(m.group(1)) > 23 or int(m.group(2)) > 59:
        raise ScheduleError(f"Expected HH:MM, got {value!r}")
    return int(m.group(1)) * 60 + int(m.group(2))


def _utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


def _local(instant: datetime, offset_minutes: Offset) -> datetime:
    utc = _utc(instant)
    minutes = offset_minutes(utc) if callable(offset_minutes) else offset_minutes
    return utc + timedelta(minutes=minutes)


def _weekday(local: datetime) -> int:
    # datetime.weekday() is Monday=0; schedules use Sunday=0
    return (local.weekday() + 1) % 7


def _calendar_values(local: datetime) -> tuple[int, int, int, int, int]:
    return (local.minute, local.hour, local.day, local.month, _weekday(local))


def _first_candidate(after: datetime) -> datetime:
    return floor_minute(after) + timedelta(minutes=1)


def _candidates(after: datetime) -> Iterator[datetime]:
    start = _first_candidate(after)
    for i in range(HORIZON_MINUTES):
        yield start + timedelta(minutes=i)

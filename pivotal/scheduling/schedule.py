"""Schedule expressions — fixed intervals, cron macros and 5-field cron.

Accepted forms::

    every 15 minutes      every 1 hour      every 2 days     every 1 week
    @hourly               @daily            @weekly
    */15 * * * *          0 9 * * 1         30 8 1,15 * *    0 9-17 * * *

Cron fields are minute, hour, day-of-month, month, day-of-week (0 =
Sunday).  All fields must match for a time to be due.
"""

from __future__ import annotations

import abc
import re
from datetime import datetime, timedelta
from functools import lru_cache

from pivotal.errors import ValidationError

_INTERVAL_RE = re.compile(r"^every\s+(\d+)\s+(minute|hour|day|week)s?$", re.IGNORECASE)

_UNIT_SECONDS = {"minute": 60, "hour": 3600, "day": 86400, "week": 604800}

_MACROS = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
}

# (name, min, max) per cron position
_CRON_FIELDS = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day-of-month", 1, 31),
    ("month", 1, 12),
    ("day-of-week", 0, 6),
)

# Any day-of-month, month and weekday combination that exists at all recurs
# within 40 years (Feb 29 on a given weekday is the sparsest).
_SEARCH_DAYS = 366 * 40

# Longest length of each month, leap years included.
_MONTH_DAYS = (31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31)


class Schedule(abc.ABC):
    """Parsed schedule expression."""

    def __init__(self, expression: str) -> None:
        self.expression = expression

    @abc.abstractmethod
    def next_after(self, moment: datetime) -> datetime:
        """Return the first due instant strictly after *moment*."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.expression!r})"


class IntervalSchedule(Schedule):
    """Fixed period measured from the previous run."""

    def __init__(self, expression: str, seconds: int) -> None:
        super().__init__(expression)
        self.interval = timedelta(seconds=seconds)

    def next_after(self, moment: datetime) -> datetime:
        return moment + self.interval


class CronSchedule(Schedule):
    """Minute-resolution cron schedule."""

    def __init__(self, expression: str, fields: tuple[frozenset[int], ...]) -> None:
        super().__init__(expression)
        self.minutes, self.hours, self.days, self.months, self.weekdays = fields

    def next_after(self, moment: datetime) -> datetime:
        start = moment.replace(second=0, microsecond=0) + timedelta(minutes=1)
        day = start.replace(hour=0, minute=0)
        for offset in range(_SEARCH_DAYS + 1):
            candidate_day = day + timedelta(days=offset)
            if not self._day_matches(candidate_day):
                continue
            for hour in sorted(self.hours):
                for minute in sorted(self.minutes):
                    candidate = candidate_day.replace(hour=hour, minute=minute)
                    if candidate >= start:
                        return candidate
        raise ValidationError(
            f"Cron expression {self.expression!r} does not match any time "
            f"within the next {_SEARCH_DAYS} days"
        )

    def _day_matches(self, day: datetime) -> bool:
        cron_weekday = (day.weekday() + 1) % 7
        return day.day in self.days and day.month in self.months and cron_weekday in self.weekdays


def _parse_cron_field(token: str, name: str, low: int, high: int) -> frozenset[int]:
    values: set[int] = set()
    for part in token.split(","):
        step = 1
        if "/" in part:
            part, _, step_text = part.partition("/")
            if not step_text.isdigit() or int(step_text) <= 0:
                raise ValidationError(f"Invalid cron step in {name} field: {token!r}")
            step = int(step_text)

        if part == "*":
            start, end = low, high
        elif "-" in part:
            first, _, last = part.partition("-")
            if not (first.isdigit() and last.isdigit()):
                raise ValidationError(f"Invalid cron range in {name} field: {token!r}")
            start, end = int(first), int(last)
        elif part.isdigit():
            start = end = int(part)
            if step != 1:
                end = high
        else:
            raise ValidationError(f"Invalid cron {name} field: {token!r}")

        if start < low or end > high or start > end:
            raise ValidationError(
                f"Cron {name} value out of range in {token!r} (expected {low}-{high})"
            )
        values.update(range(start, end + 1, step))
    return frozenset(values)


@lru_cache(maxsize=256)
def parse_schedule(expression: str) -> Schedule:
    """Parse *expression* into a :class:`Schedule`.

    Raises
    ------
    ValidationError
        If the expression is not a supported form.
    """
    if not isinstance(expression, str) or not expression.strip():
        raise ValidationError("Schedule expression must be a non-empty string")
    text = " ".join(expression.split())

    match = _INTERVAL_RE.match(text)
    if match:
        count = int(match.group(1))
        if count <= 0:
            raise ValidationError(f"Schedule interval must be positive: {expression!r}")
        return IntervalSchedule(text, count * _UNIT_SECONDS[match.group(2).lower()])

    cron_text = _MACROS.get(text.lower(), text)
    if cron_text.startswith("@"):
        raise ValidationError(f"Unknown schedule macro: {expression!r}")

    tokens = cron_text.split(" ")
    if len(tokens) != 5:
        raise ValidationError(
            f"Invalid cron expression {expression!r}: expected 5 fields, got {len(tokens)}"
        )
    fields = tuple(
        _parse_cron_field(token, name, low, high)
        for token, (name, low, high) in zip(tokens, _CRON_FIELDS)
    )
    _, _, days, months, _ = fields
    if not any(day <= _MONTH_DAYS[month - 1] for month in months for day in days):
        raise ValidationError(f"Cron expression {expression!r} names a day that never occurs")
    schedule = CronSchedule(text, fields)
    schedule.next_after(datetime(1999, 12, 31, 23, 59))
    return schedule

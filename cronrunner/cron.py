"""
Cron expression compiler.

Expands a 5-field cron expression into the calendar trigger instants used by
launchd's StartCalendarInterval: one dict per instant, naming only the fields
that are constrained. A `*` field is left out of every dict instead of being
enumerated, so `0 7 * * *` compiles to a single {Minute: 0, Hour: 7}.
"""

from __future__ import annotations

import itertools
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

from croniter import croniter

from cronrunner.errors import CronError

CRON_FIELD_RE = re.compile(r"^[0-9*,/\-]+$")
DAY_ABBREVIATIONS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]

Instant = Dict[str, int]
Calendar = Union[Instant, List[Instant]]


@dataclass(frozen=True)
class CronField:
    name: str
    key: str
    minimum: int
    maximum: int


CRON_FIELDS: Tuple[CronField, ...] = (
    CronField("minute", "Minute", 0, 59),
    CronField("hour", "Hour", 0, 23),
    CronField("day_of_month", "Day", 1, 31),
    CronField("month", "Month", 1, 12),
    CronField("day_of_week", "Weekday", 0, 6),
)
DAY_OF_WEEK = CRON_FIELDS[4]


def split_cron(expr: str) -> List[str]:
    if not isinstance(expr, str):
        raise CronError("Error: cron expression must be a string.")
    parts = expr.split()
    if len(parts) != 5:
        raise CronError(f'Error: cron expression must have 5 fields, got {len(parts)} in "{expr}".')
    return parts


def _parse_int(token: str, field: CronField, upper: int) -> int:
    if not token.isdigit():
        raise CronError(f'Error: Invalid token "{token}" in {field.name}.')
    value = int(token)
    if value < field.minimum or value > upper:
        raise CronError(
            f'Error: Value "{value}" out of bounds {field.minimum}-{upper} in {field.name}.'
        )
    return value


def expand_field(token: str, field: CronField) -> Optional[List[int]]:
    """Return the sorted values a field token allows, or None for `*`."""
    token = token.strip()
    if token == "*":
        return None
    if not token or not CRON_FIELD_RE.match(token):
        raise CronError(f'Error: Invalid cron token "{token}" in {field.name}.')

    # Day-of-week accepts 7 as a second spelling of Sunday.
    upper = 7 if field is DAY_OF_WEEK else field.maximum
    values = set()
    for part in token.split(","):
        if not part:
            raise CronError(f'Error: Invalid cron token "{token}" in {field.name}.')
        base, step = part, 1
        if "/" in part:
            base, step_str = part.split("/", 1)
            if not step_str.isdigit() or int(step_str) <= 0:
                raise CronError(f'Error: Invalid step "{part}" in {field.name}.')
            step = int(step_str)

        if base == "*":
            start, end = field.minimum, field.maximum
        elif "-" in base:
            left, right = base.split("-", 1)
            start = _parse_int(left, field, upper)
            end = _parse_int(right, field, upper)
            if start > end:
                raise CronError(f'Error: Invalid range "{base}" in {field.name}.')
        else:
            start = _parse_int(base, field, upper)
            end = field.maximum if "/" in part else start

        values.update(range(start, end + 1, step))

    if field is DAY_OF_WEEK and 7 in values:
        values.discard(7)
        values.add(0)
    return sorted(values)


def expand_cron(expr: str) -> List[Instant]:
    """Cartesian product of every constrained field; wildcards add no key."""
    tokens = split_cron(expr)
    choices: List[List[Tuple[str, Optional[int]]]] = []
    for field, token in zip(CRON_FIELDS, tokens):
        values = expand_field(token, field)
        if values is None:
            choices.append([(field.key, None)])
        else:
            choices.append([(field.key, value) for value in values])

    instants: List[Instant] = []
    for combo in itertools.product(*choices):
        instants.append({key: int(value) for key, value in combo if value is not None})
    return instants


def compile_calendar(expr: str) -> Calendar:
    instants = expand_cron(expr)
    if len(instants) == 1:
        return instants[0]
    return instants


def _format_days(days: List[int]) -> str:
    if len(days) == 7:
        return "Daily"
    if days == [1, 2, 3, 4, 5]:
        return "Weekdays"
    if days == [0, 6]:
        return "Weekends"
    return ", ".join(DAY_ABBREVIATIONS[day] for day in days)


def describe_cron(expr: str) -> str:
    """Human label for common schedules; anything else renders as the raw expression."""
    try:
        minute, hour, day_of_month, month, day_of_week = split_cron(expr)
    except CronError:
        return expr

    if "/" in minute:
        return f"Every {minute.split('/', 1)[1]} min"
    if "/" in hour:
        return f"Every {hour.split('/', 1)[1]} hours"

    fixed_time = minute.isdigit() and hour.isdigit()
    if not fixed_time:
        return expr
    time_text = f"{int(hour):02d}:{int(minute):02d}"

    if day_of_month != "*" or month != "*":
        return expr
    if day_of_week == "*":
        return f"Daily at {time_text}"
    try:
        days = expand_field(day_of_week, DAY_OF_WEEK) or []
    except CronError:
        return expr
    label = _format_days(days)
    if label == "Daily":
        return f"Daily at {time_text}"
    return f"{label} at {time_text}"


def next_fire_times(expr: str, count: int, now: Optional[datetime] = None) -> List[datetime]:
    # day_or=False matches the AND semantics launchd applies within one instant.
    split_cron(expr)
    base = now or datetime.now().astimezone()
    iterator = croniter(expr, base, day_or=False)
    return [iterator.get_next(datetime) for _ in range(count)]

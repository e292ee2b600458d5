from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cronrunner import cron
from cronrunner.errors import CronError

UTC = timezone.utc


def test_fixed_time_compiles_to_single_unwrapped_instant() -> None:
    assert cron.compile_calendar("0 7 * * *") == {"Minute": 0, "Hour": 7}


def test_minute_step_expands_to_four_instants() -> None:
    instants = cron.expand_cron("*/15 * * * *")
    assert instants == [{"Minute": 0}, {"Minute": 15}, {"Minute": 30}, {"Minute": 45}]


@pytest.mark.parametrize(
    "expr, hours",
    [
        ("0 9-11 * * *", [9, 10, 11]),
        ("0 8,12,18 * * *", [8, 12, 18]),
    ],
)
def test_hour_ranges_and_lists(expr: str, hours: list) -> None:
    instants = cron.expand_cron(expr)
    assert [instant["Hour"] for instant in instants] == hours
    assert all(set(instant) == {"Minute", "Hour"} for instant in instants)


def test_weekday_range_carries_weekday_key() -> None:
    instants = cron.expand_cron("0 9 * * 1-5")
    assert len(instants) == 5
    assert [instant["Weekday"] for instant in instants] == [1, 2, 3, 4, 5]
    assert all(instant["Hour"] == 9 and instant["Minute"] == 0 for instant in instants)


def test_business_hours_grid_has_270_instants() -> None:
    calendar = cron.compile_calendar("*/10 9-17 * * 1-5")
    assert isinstance(calendar, list)
    assert len(calendar) == 6 * 9 * 5


def test_all_wildcards_yield_one_empty_instant() -> None:
    assert cron.expand_cron("* * * * *") == [{}]
    assert cron.compile_calendar("* * * * *") == {}


@pytest.mark.parametrize(
    "expr, expected",
    [
        ("30 2 1 1 *", 1),
        ("0,30 * * * *", 2),
        ("0 0 1,15 * *", 2),
        ("0 0 * 1-6 0", 6),
        ("5 4-6 10-12 3 1,3", 3 * 3 * 2),
        ("0-30/10 */6 * * *", 4 * 4),
    ],
)
def test_cardinality_is_product_of_constrained_fields(expr: str, expected: int) -> None:
    assert len(cron.expand_cron(expr)) == expected


@pytest.mark.parametrize(
    "expr",
    ["*/10 9-17 * * 1-5", "0 8,12,18 * * *", "5/20 * 1-3 */4 0,6", "* * * * *"],
)
def test_values_are_always_ints(expr: str) -> None:
    for instant in cron.expand_cron(expr):
        assert all(type(value) is int for value in instant.values())


def test_range_and_start_steps() -> None:
    assert cron.expand_field("0-30/10", cron.CRON_FIELDS[0]) == [0, 10, 20, 30]
    assert cron.expand_field("5/20", cron.CRON_FIELDS[0]) == [5, 25, 45]
    assert cron.expand_field("*", cron.CRON_FIELDS[0]) is None


def test_weekday_seven_is_sunday() -> None:
    assert cron.compile_calendar("0 0 * * 7") == {"Minute": 0, "Hour": 0, "Weekday": 0}
    assert cron.compile_calendar("0 0 * * 0,7") == {"Minute": 0, "Hour": 0, "Weekday": 0}


@pytest.mark.parametrize(
    "expr, match",
    [
        ("0 7 * *", "5 fields"),
        ("0 7 * * * *", "5 fields"),
        ("60 * * * *", "out of bounds"),
        ("0 24 * * *", "out of bounds"),
        ("0 0 0 * *", "out of bounds"),
        ("0 0 * 13 *", "out of bounds"),
        ("0 0 * * MON", "Invalid cron token"),
        ("*/0 * * * *", "Invalid step"),
        ("0 5-1 * * *", "Invalid range"),
        ("0 1,,2 * * *", "Invalid cron token"),
    ],
)
def test_malformed_expressions_rejected(expr: str, match: str) -> None:
    with pytest.raises(CronError, match=match):
        cron.expand_cron(expr)


@pytest.mark.parametrize(
    "expr, label",
    [
        ("0 7 * * *", "Daily at 07:00"),
        ("0 8 * * 1-5", "Weekdays at 08:00"),
        ("0 8 * * 1,3,5", "Mon, Wed, Fri at 08:00"),
        ("30 9 * * 0,6", "Weekends at 09:30"),
        ("0 8 * * 0-6", "Daily at 08:00"),
        ("*/15 * * * *", "Every 15 min"),
        ("0 */2 * * *", "Every 2 hours"),
        ("0 0 1 * *", "0 0 1 * *"),
        ("not a cron", "not a cron"),
    ],
)
def test_describe_cron(expr: str, label: str) -> None:
    assert cron.describe_cron(expr) == label


def test_next_fire_times() -> None:
    now = datetime(2026, 1, 1, 6, 0, tzinfo=UTC)
    fire_times = cron.next_fire_times("0 7 * * *", 2, now=now)
    assert fire_times == [
        datetime(2026, 1, 1, 7, 0, tzinfo=UTC),
        datetime(2026, 1, 2, 7, 0, tzinfo=UTC),
    ]

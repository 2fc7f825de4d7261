from __future__ import annotations

from datetime import datetime

import pytest

from promptcron.errors import ScheduleError, ValidationError
from promptcron.schedule import (
    Daily,
    Hourly,
    Interval,
    Logon,
    Once,
    Startup,
    Weekly,
    compile_schedule,
    next_run_times,
    to_cron,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("daily 09:00", Daily(hour=9, minute=0)),
        ("daily 9:05", Daily(hour=9, minute=5)),
        ("  DAILY   23:59 ", Daily(hour=23, minute=59)),
        ("weekly Monday 08:30", Weekly(day="monday", hour=8, minute=30)),
        ("weekly fri 17:00", Weekly(day="friday", hour=17, minute=0)),
        ("hourly", Hourly()),
        ("every 15m", Interval(unit="m", every=15)),
        ("every 1m", Interval(unit="m", every=1)),
        ("every 2h", Interval(unit="h", every=2)),
        ("Every 5 M", Interval(unit="m", every=5)),
        ("once 2026-12-24 18:00", Once(at=datetime(2026, 12, 24, 18, 0))),
        ("startup", Startup()),
        ("LOGON", Logon()),
    ],
)
def test_compile_valid_schedules(text: str, expected: object) -> None:
    assert compile_schedule(text) == expected


@pytest.mark.parametrize(
    "text",
    [
        "",
        "   ",
        "daily",
        "daily 24:00",
        "daily 09:60",
        "daily 9am",
        "daily 09:00 extra",
        "weekly 09:00",
        "weekly Someday 09:00",
        "hourly 5",
        "every 0m",
        "every 0h",
        "every -5m",
        "every 5s",
        "every 5d",
        "every m",
        "once 2026-02-30 10:00",
        "once 2026/01/01 10:00",
        "once 2026-01-01",
        "startup now",
        "monthly 1 09:00",
        "*/5 * * * *",
    ],
)
def test_compile_rejects_malformed(text: str) -> None:
    with pytest.raises(ScheduleError):
        compile_schedule(text)


def test_schedule_error_carries_grammar() -> None:
    with pytest.raises(ValidationError, match="every <N>m") as excinfo:
        compile_schedule("every 0m")
    message = str(excinfo.value)
    for line in ("daily HH:MM", "weekly <DayName> HH:MM", "once YYYY-MM-DD HH:MM", "startup", "logon"):
        assert line in message


def test_to_cron_expressions() -> None:
    assert to_cron(Daily(hour=9, minute=0)) == "0 9 * * *"
    assert to_cron(Weekly(day="sunday", hour=7, minute=15)) == "15 7 * * 0"
    assert to_cron(Hourly()) == "0 * * * *"
    assert to_cron(Interval(unit="m", every=1)) == "* * * * *"
    assert to_cron(Interval(unit="m", every=15)) == "*/15 * * * *"
    assert to_cron(Interval(unit="m", every=120)) == "0 */2 * * *"
    assert to_cron(Interval(unit="h", every=6)) == "0 */6 * * *"
    assert to_cron(Interval(unit="h", every=24)) == "0 0 * * *"


def test_to_cron_none_without_exact_equivalent() -> None:
    assert to_cron(Interval(unit="m", every=90)) is None
    assert to_cron(Interval(unit="m", every=7)) is None
    assert to_cron(Interval(unit="h", every=5)) is None
    assert to_cron(Startup()) is None
    assert to_cron(Logon()) is None
    assert to_cron(Once(at=datetime(2026, 1, 1, 0, 0))) is None


def test_next_run_times_daily_strictly_future() -> None:
    now = datetime(2026, 2, 23, 9, 0)
    runs = next_run_times(compile_schedule("daily 09:00"), 2, now=now)
    assert runs == [datetime(2026, 2, 24, 9, 0), datetime(2026, 2, 25, 9, 0)]


def test_next_run_times_weekly() -> None:
    now = datetime(2026, 2, 23, 12, 0)  # a Monday
    runs = next_run_times(compile_schedule("weekly friday 17:30"), 1, now=now)
    assert runs == [datetime(2026, 2, 27, 17, 30)]


def test_next_run_times_once_and_event_triggers() -> None:
    now = datetime(2026, 1, 1, 0, 0)
    assert next_run_times(compile_schedule("once 2026-06-01 10:00"), 3, now=now) == [datetime(2026, 6, 1, 10, 0)]
    assert next_run_times(compile_schedule("once 2025-06-01 10:00"), 3, now=now) == []
    assert next_run_times(compile_schedule("startup"), 3, now=now) == []


def test_next_run_times_uneven_interval_approximates_from_now() -> None:
    now = datetime(2026, 1, 1, 0, 0)
    runs = next_run_times(compile_schedule("every 90m"), 2, now=now)
    assert runs == [datetime(2026, 1, 1, 1, 30), datetime(2026, 1, 1, 3, 0)]


def test_describe_is_human_readable() -> None:
    assert compile_schedule("weekly mon 07:05").describe() == "Runs every Monday at 07:05"
    assert compile_schedule("every 3h").describe() == "Runs every 3 hour(s)"

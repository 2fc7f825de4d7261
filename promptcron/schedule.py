from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from croniter import croniter

from promptcron.errors import ScheduleError

GRAMMAR = """Supported schedules:
  daily HH:MM                 every day at HH:MM (24-hour)
  weekly <DayName> HH:MM      every week, e.g. "weekly Monday 09:00"
  hourly                      every hour on the hour
  every <N>m                  every N minutes (N >= 1)
  every <N>h                  every N hours (N >= 1)
  once YYYY-MM-DD HH:MM       a single run at the given local time
  startup                     when the machine boots
  logon                       when the user logs on"""

DAY_NAME_TO_CRON = {
    "sunday": 0,
    "monday": 1,
    "tuesday": 2,
    "wednesday": 3,
    "thursday": 4,
    "friday": 5,
    "saturday": 6,
}
CRON_TO_DAY_NAME = {v: k for k, v in DAY_NAME_TO_CRON.items()}
DAY_ABBREVIATIONS = {name[:3]: name for name in DAY_NAME_TO_CRON}

HHMM_RE = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
INTERVAL_RE = re.compile(r"^(\d+)\s*([mh])$")
DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


@dataclass(frozen=True)
class Daily:
    hour: int
    minute: int

    def describe(self) -> str:
        return f"Runs daily at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Weekly:
    day: str  # lowercase full day name
    hour: int
    minute: int

    def describe(self) -> str:
        return f"Runs every {self.day.capitalize()} at {self.hour:02d}:{self.minute:02d}"


@dataclass(frozen=True)
class Hourly:
    def describe(self) -> str:
        return "Runs every hour on the hour"


@dataclass(frozen=True)
class Interval:
    unit: str  # "m" | "h"
    every: int

    @property
    def delta(self) -> timedelta:
        if self.unit == "m":
            return timedelta(minutes=self.every)
        return timedelta(hours=self.every)

    def describe(self) -> str:
        noun = "minute(s)" if self.unit == "m" else "hour(s)"
        return f"Runs every {self.every} {noun}"


@dataclass(frozen=True)
class Once:
    at: datetime  # naive local time

    def describe(self) -> str:
        return f"Runs once at {self.at.strftime('%Y-%m-%d %H:%M')}"


@dataclass(frozen=True)
class Startup:
    def describe(self) -> str:
        return "Runs at system startup"


@dataclass(frozen=True)
class Logon:
    def describe(self) -> str:
        return "Runs at user logon"


Trigger = Union[Daily, Weekly, Hourly, Interval, Once, Startup, Logon]


def _fail(text: str, reason: str) -> ScheduleError:
    return ScheduleError(f'Error: Invalid schedule "{text}": {reason}.\n{GRAMMAR}')


def parse_hhmm(value: str, text: str) -> Tuple[int, int]:
    match = HHMM_RE.match(value)
    if not match:
        raise _fail(text, f'time must be HH:MM (24-hour), got "{value}"')
    return int(match.group(1)), int(match.group(2))


def normalize_day(token: str, text: str) -> str:
    tok = token.lower()
    if tok in DAY_NAME_TO_CRON:
        return tok
    if tok in DAY_ABBREVIATIONS:
        return DAY_ABBREVIATIONS[tok]
    raise _fail(text, f'unknown day "{token}"')


def compile_schedule(text: str) -> Trigger:
    if not isinstance(text, str) or not text.strip():
        raise _fail(str(text), "schedule is empty")
    tokens = text.strip().lower().split()
    keyword, rest = tokens[0], tokens[1:]

    if keyword in ("hourly", "startup", "logon"):
        if rest:
            raise _fail(text, f'"{keyword}" takes no arguments')
        return {"hourly": Hourly, "startup": Startup, "logon": Logon}[keyword]()

    if keyword == "daily":
        if len(rest) != 1:
            raise _fail(text, '"daily" expects HH:MM')
        hour, minute = parse_hhmm(rest[0], text)
        return Daily(hour=hour, minute=minute)

    if keyword == "weekly":
        if len(rest) != 2:
            raise _fail(text, '"weekly" expects <DayName> HH:MM')
        day = normalize_day(rest[0], text)
        hour, minute = parse_hhmm(rest[1], text)
        return Weekly(day=day, hour=hour, minute=minute)

    if keyword == "every":
        match = INTERVAL_RE.match(" ".join(rest))
        if not match:
            raise _fail(text, '"every" expects <N>m or <N>h')
        amount = int(match.group(1))
        if amount < 1:
            raise _fail(text, "interval must be >= 1")
        return Interval(unit=match.group(2), every=amount)

    if keyword == "once":
        if len(rest) != 2:
            raise _fail(text, '"once" expects YYYY-MM-DD HH:MM')
        date_match = DATE_RE.match(rest[0])
        if not date_match:
            raise _fail(text, f'date must be YYYY-MM-DD, got "{rest[0]}"')
        hour, minute = parse_hhmm(rest[1], text)
        try:
            at = datetime(
                int(date_match.group(1)),
                int(date_match.group(2)),
                int(date_match.group(3)),
                hour,
                minute,
            )
        except ValueError as exc:
            raise _fail(text, str(exc)) from exc
        return Once(at=at)

    raise _fail(text, f'unknown schedule kind "{keyword}"')


def to_cron(trigger: Trigger) -> Optional[str]:
    """Exact five-field cron equivalent, or None when cron cannot express it."""
    if isinstance(trigger, Daily):
        return f"{trigger.minute} {trigger.hour} * * *"
    if isinstance(trigger, Weekly):
        return f"{trigger.minute} {trigger.hour} * * {DAY_NAME_TO_CRON[trigger.day]}"
    if isinstance(trigger, Hourly):
        return "0 * * * *"
    if isinstance(trigger, Interval):
        if trigger.unit == "m":
            if trigger.every < 60 and 60 % trigger.every == 0:
                return "* * * * *" if trigger.every == 1 else f"*/{trigger.every} * * * *"
            if trigger.every % 60 == 0:
                return to_cron(Interval(unit="h", every=trigger.every // 60))
            return None
        if trigger.every == 1:
            return "0 * * * *"
        if trigger.every < 24 and 24 % trigger.every == 0:
            return f"0 */{trigger.every} * * *"
        if trigger.every == 24:
            return "0 0 * * *"
        return None
    return None


def next_run_times(trigger: Trigger, count: int, now: Optional[datetime] = None) -> List[datetime]:
    now = (now or datetime.now()).replace(second=0, microsecond=0)
    if isinstance(trigger, Once):
        return [trigger.at] if trigger.at > now else []
    cron_expr = to_cron(trigger)
    if cron_expr is not None:
        iterator = croniter(cron_expr, now)
        return [iterator.get_next(datetime) for _ in range(count)]
    if isinstance(trigger, Interval):
        # The OS scheduler anchors repetition at registration time; approximate from now.
        return [now + trigger.delta * step for step in range(1, count + 1)]
    return []

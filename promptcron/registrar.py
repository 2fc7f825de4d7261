"""
Adapters between compiled triggers and the OS scheduling service.

The core only talks to ``TriggerRegistrar``. Each adapter enforces the
"ignore a new fire while the same job is still running" policy and the
wall-clock budget on its own side: crontab lines are wrapped in ``flock -n``
and ``timeout``, Task Scheduler definitions use ``IgnoreNew`` and an
``ExecutionTimeLimit``.
"""

from __future__ import annotations

import csv
import io
import logging
import os
import shlex
import subprocess
import sys
import tempfile
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from promptcron.errors import RegistrationError
from promptcron.schedule import (
    Daily,
    Hourly,
    Interval,
    Logon,
    Once,
    Startup,
    Trigger,
    Weekly,
    to_cron,
)
from promptcron.settings import Settings
from promptcron.store import JobDefinition

logger = logging.getLogger("promptcron.registrar")

CRON_BEGIN = "# promptcron:begin "
CRON_END = "# promptcron:end "
CRON_DISABLED = "#disabled# "
TASK_FOLDER = "\\promptcron\\"
TASK_NAMESPACE = "http://schemas.microsoft.com/windows/2004/02/mit/task"


@dataclass(frozen=True)
class RegistrationState:
    registered: bool
    enabled: bool = False
    running: bool = False


def runner_command(settings: Settings, name: str) -> List[str]:
    return [sys.executable, "-m", "promptcron", "--home", str(settings.home), "exec", name]


def detect_drift(job: JobDefinition, state: RegistrationState) -> Optional[str]:
    if job.enabled and not state.registered:
        return "enabled, but no trigger is registered with the OS scheduler"
    if job.enabled and not state.enabled:
        return "enabled, but the OS scheduler trigger is disabled"
    if not job.enabled and state.registered and state.enabled:
        return "disabled, but the OS scheduler trigger is still active"
    return None


class TriggerRegistrar:
    def __init__(self, settings: Settings):
        self.settings = settings

    def register(self, name: str, trigger: Trigger, enabled: bool = True) -> None:
        raise NotImplementedError

    def deregister(self, name: str) -> None:
        raise NotImplementedError

    def query(self, name: str) -> RegistrationState:
        raise NotImplementedError

    def set_enabled(self, name: str, enabled: bool) -> None:
        raise NotImplementedError

    def run_now(self, name: str) -> None:
        raise NotImplementedError


def _run(argv: List[str], stdin: Optional[str] = None) -> subprocess.CompletedProcess:
    try:
        return subprocess.run(argv, input=stdin, capture_output=True, text=True, check=False)
    except FileNotFoundError as exc:
        raise RegistrationError(f"Error: {argv[0]} is not available on this system.") from exc


# crontab


def _cron_schedule(trigger: Trigger) -> Tuple[str, Optional[str]]:
    """Cron timing field(s) plus an optional shell guard prefix."""
    if isinstance(trigger, Startup):
        return "@reboot", None
    if isinstance(trigger, Once):
        at = trigger.at
        return f"{at.minute} {at.hour} {at.day} {at.month} *", f'[ "$(date +%Y)" = "{at.year}" ]'
    if isinstance(trigger, Logon):
        raise RegistrationError("Error: crontab cannot trigger on user logon; use startup or a time schedule.")
    cron_expr = to_cron(trigger)
    if cron_expr is None:
        raise RegistrationError(
            f"Error: crontab has no exact equivalent for '{trigger.describe()}'. "
            "Pick an interval that divides an hour or a day evenly."
        )
    return cron_expr, None


def render_cron_line(settings: Settings, name: str, trigger: Trigger) -> str:
    timing, guard = _cron_schedule(trigger)
    lock_path = settings.locks_dir / f"{name}.lock"
    timeout_seconds = settings.max_runtime_minutes * 60
    command = " ".join(
        [
            "flock",
            "-n",
            shlex.quote(str(lock_path)),
            "timeout",
            str(timeout_seconds),
            *(shlex.quote(arg) for arg in runner_command(settings, name)),
        ]
    )
    if guard:
        command = f"{guard} && {command}"
    # cron treats an unescaped % as a newline.
    command = command.replace("%", "\\%")
    return f"{timing} {command}"


def parse_cron_blocks(text: str) -> Tuple[List[str], Dict[str, List[str]]]:
    """Split a crontab into foreign lines and promptcron blocks keyed by job."""
    foreign: List[str] = []
    blocks: Dict[str, List[str]] = {}
    current: Optional[str] = None
    for line in text.splitlines():
        if line.startswith(CRON_BEGIN):
            current = line[len(CRON_BEGIN):].strip()
            blocks[current] = []
            continue
        if current is not None and line.startswith(CRON_END):
            current = None
            continue
        if current is None:
            foreign.append(line)
        else:
            blocks[current].append(line)
    return foreign, blocks


def render_crontab(foreign: List[str], blocks: Dict[str, List[str]]) -> str:
    lines = list(foreign)
    while lines and not lines[-1].strip():
        lines.pop()
    for name in sorted(blocks):
        lines.append(f"{CRON_BEGIN}{name}")
        lines.extend(blocks[name])
        lines.append(f"{CRON_END}{name}")
    return "\n".join(lines) + "\n"


class CrontabRegistrar(TriggerRegistrar):
    def _read(self) -> str:
        result = _run(["crontab", "-l"])
        if result.returncode != 0:
            if "no crontab" in (result.stderr or "").lower():
                return ""
            raise RegistrationError(f"Error: crontab -l failed: {(result.stderr or '').strip()}")
        return result.stdout

    def _write(self, text: str) -> None:
        result = _run(["crontab", "-"], stdin=text)
        if result.returncode != 0:
            raise RegistrationError(f"Error: crontab install failed: {(result.stderr or '').strip()}")

    def register(self, name: str, trigger: Trigger, enabled: bool = True) -> None:
        line = render_cron_line(self.settings, name, trigger)
        self.settings.locks_dir.mkdir(parents=True, exist_ok=True)
        foreign, blocks = parse_cron_blocks(self._read())
        blocks[name] = [line if enabled else CRON_DISABLED + line]
        self._write(render_crontab(foreign, blocks))
        logger.info("Registered crontab entry for %s (enabled=%s)", name, enabled)

    def deregister(self, name: str) -> None:
        foreign, blocks = parse_cron_blocks(self._read())
        if blocks.pop(name, None) is None:
            logger.info("No crontab entry for %s", name)
            return
        self._write(render_crontab(foreign, blocks))
        logger.info("Removed crontab entry for %s", name)

    def query(self, name: str) -> RegistrationState:
        _, blocks = parse_cron_blocks(self._read())
        lines = [line for line in blocks.get(name, []) if line.strip()]
        if not lines:
            return RegistrationState(registered=False)
        enabled = not lines[0].startswith(CRON_DISABLED)
        return RegistrationState(registered=True, enabled=enabled, running=self._lock_held(name))

    def _lock_held(self, name: str) -> bool:
        lock_path = self.settings.locks_dir / f"{name}.lock"
        if not lock_path.exists():
            return False
        try:
            result = subprocess.run(
                ["flock", "-n", str(lock_path), "true"], capture_output=True, check=False
            )
        except FileNotFoundError:
            return False
        return result.returncode != 0

    def set_enabled(self, name: str, enabled: bool) -> None:
        foreign, blocks = parse_cron_blocks(self._read())
        if name not in blocks:
            raise RegistrationError(f'Error: No crontab entry for "{name}".')
        updated: List[str] = []
        for line in blocks[name]:
            bare = line[len(CRON_DISABLED):] if line.startswith(CRON_DISABLED) else line
            updated.append(bare if enabled else CRON_DISABLED + bare)
        blocks[name] = updated
        self._write(render_crontab(foreign, blocks))
        logger.info("%s crontab entry for %s", "Enabled" if enabled else "Disabled", name)

    def run_now(self, name: str) -> None:
        self.settings.locks_dir.mkdir(parents=True, exist_ok=True)
        argv = [
            "flock",
            "-n",
            str(self.settings.locks_dir / f"{name}.lock"),
            "timeout",
            str(self.settings.max_runtime_minutes * 60),
            *runner_command(self.settings, name),
        ]
        subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            start_new_session=True,
        )
        logger.info("Started background run of %s", name)


# Windows Task Scheduler


def _next_boundary(now: datetime, step: timedelta) -> datetime:
    base = now.replace(second=0, microsecond=0)
    if step >= timedelta(hours=1):
        base = base.replace(minute=0)
    return base + step


def _iso_duration(trigger: Interval) -> str:
    return f"PT{trigger.every}{'M' if trigger.unit == 'm' else 'H'}"


def _sub(parent: ET.Element, tag: str, text: Optional[str] = None) -> ET.Element:
    element = ET.SubElement(parent, tag)
    if text is not None:
        element.text = text
    return element


def _add_trigger(triggers: ET.Element, trigger: Trigger, now: datetime) -> None:
    if isinstance(trigger, Startup):
        _sub(triggers, "BootTrigger")
        return
    if isinstance(trigger, Logon):
        _sub(triggers, "LogonTrigger")
        return
    if isinstance(trigger, Once):
        element = _sub(triggers, "TimeTrigger")
        _sub(element, "StartBoundary", trigger.at.isoformat(timespec="seconds"))
        return
    if isinstance(trigger, (Daily, Weekly)):
        element = _sub(triggers, "CalendarTrigger")
        start = now.replace(hour=trigger.hour, minute=trigger.minute, second=0, microsecond=0)
        _sub(element, "StartBoundary", start.isoformat(timespec="seconds"))
        if isinstance(trigger, Daily):
            by_day = _sub(element, "ScheduleByDay")
            _sub(by_day, "DaysInterval", "1")
        else:
            by_week = _sub(element, "ScheduleByWeek")
            days = _sub(by_week, "DaysOfWeek")
            _sub(days, trigger.day.capitalize())
            _sub(by_week, "WeeksInterval", "1")
        return
    if isinstance(trigger, (Hourly, Interval)):
        interval = trigger if isinstance(trigger, Interval) else Interval(unit="h", every=1)
        element = _sub(triggers, "TimeTrigger")
        start = _next_boundary(now, interval.delta)
        _sub(element, "StartBoundary", start.isoformat(timespec="seconds"))
        repetition = _sub(element, "Repetition")
        _sub(repetition, "Interval", _iso_duration(interval))
        _sub(repetition, "StopAtDurationEnd", "false")
        return
    raise RegistrationError(f"Error: Unsupported trigger {trigger!r}.")


def render_task_xml(
    settings: Settings,
    name: str,
    trigger: Trigger,
    enabled: bool = True,
    now: Optional[datetime] = None,
) -> str:
    now = now or datetime.now()
    task = ET.Element("Task", {"version": "1.2", "xmlns": TASK_NAMESPACE})
    info = _sub(task, "RegistrationInfo")
    _sub(info, "Description", f"promptcron job {name}")
    _add_trigger(_sub(task, "Triggers"), trigger, now)

    principal = _sub(_sub(task, "Principals"), "Principal", None)
    principal.set("id", "Author")
    _sub(principal, "LogonType", "InteractiveToken")
    _sub(principal, "RunLevel", "LeastPrivilege")

    task_settings = _sub(task, "Settings")
    _sub(task_settings, "MultipleInstancesPolicy", "IgnoreNew")
    _sub(task_settings, "DisallowStartIfOnBatteries", "false")
    _sub(task_settings, "StopIfGoingOnBatteries", "false")
    _sub(task_settings, "StartWhenAvailable", "true")
    _sub(task_settings, "Enabled", "true" if enabled else "false")
    _sub(task_settings, "ExecutionTimeLimit", f"PT{settings.max_runtime_minutes}M")

    command = runner_command(settings, name)
    actions = _sub(task, "Actions")
    actions.set("Context", "Author")
    exec_element = _sub(actions, "Exec")
    _sub(exec_element, "Command", command[0])
    _sub(exec_element, "Arguments", subprocess.list2cmdline(command[1:]))
    _sub(exec_element, "WorkingDirectory", str(settings.home))
    return ET.tostring(task, encoding="unicode")


class SchtasksRegistrar(TriggerRegistrar):
    def task_name(self, name: str) -> str:
        return f"{TASK_FOLDER}{name}"

    def _schtasks(self, *args: str) -> subprocess.CompletedProcess:
        return _run(["schtasks", *args])

    def register(self, name: str, trigger: Trigger, enabled: bool = True) -> None:
        xml_text = render_task_xml(self.settings, name, trigger, enabled=enabled)
        fd, tmp_name = tempfile.mkstemp(prefix="promptcron-", suffix=".xml")
        try:
            with os.fdopen(fd, "w", encoding="utf-16") as handle:
                handle.write('<?xml version="1.0" encoding="UTF-16"?>\n')
                handle.write(xml_text)
            result = self._schtasks("/Create", "/TN", self.task_name(name), "/XML", tmp_name, "/F")
        finally:
            Path(tmp_name).unlink(missing_ok=True)
        if result.returncode != 0:
            raise RegistrationError(f"Error: schtasks /Create failed: {(result.stderr or result.stdout).strip()}")
        logger.info("Registered scheduled task %s (enabled=%s)", self.task_name(name), enabled)

    def deregister(self, name: str) -> None:
        if not self.query(name).registered:
            logger.info("No scheduled task for %s", name)
            return
        result = self._schtasks("/Delete", "/TN", self.task_name(name), "/F")
        if result.returncode != 0:
            raise RegistrationError(f"Error: schtasks /Delete failed: {(result.stderr or result.stdout).strip()}")
        logger.info("Removed scheduled task %s", self.task_name(name))

    def query(self, name: str) -> RegistrationState:
        result = self._schtasks("/Query", "/TN", self.task_name(name), "/FO", "CSV", "/NH")
        if result.returncode != 0:
            return RegistrationState(registered=False)
        for row in csv.reader(io.StringIO(result.stdout)):
            if len(row) >= 3:
                status = row[2].strip().lower()
                return RegistrationState(
                    registered=True,
                    enabled=status != "disabled",
                    running=status == "running",
                )
        return RegistrationState(registered=True, enabled=True)

    def set_enabled(self, name: str, enabled: bool) -> None:
        flag = "/ENABLE" if enabled else "/DISABLE"
        result = self._schtasks("/Change", "/TN", self.task_name(name), flag)
        if result.returncode != 0:
            raise RegistrationError(f"Error: schtasks /Change failed: {(result.stderr or result.stdout).strip()}")
        logger.info("%s scheduled task %s", "Enabled" if enabled else "Disabled", self.task_name(name))

    def run_now(self, name: str) -> None:
        result = self._schtasks("/Run", "/TN", self.task_name(name))
        if result.returncode != 0:
            raise RegistrationError(f"Error: schtasks /Run failed: {(result.stderr or result.stdout).strip()}")
        logger.info("Started scheduled task %s", self.task_name(name))


def registrar_for(settings: Settings) -> TriggerRegistrar:
    backend = settings.backend
    if backend == "auto":
        backend = "schtasks" if os.name == "nt" else "crontab"
    if backend == "schtasks":
        return SchtasksRegistrar(settings)
    return CrontabRegistrar(settings)

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import yaml

from promptcron.errors import ConfigError
from promptcron.settings import (
    ensure_bool,
    ensure_mapping,
    ensure_str,
    ensure_str_list,
    load_yaml_mapping,
)
from promptcron.store import atomic_write_text

logger = logging.getLogger("promptcron.notify")

PLACEHOLDER = "{{message}}"
EVENT_JOB_FAILURE = "job-failure"
EVENT_RUN_ERROR = "run-error"
NOTIFY_ALL = "all-failures"
VALID_NOTIFY_ON = {EVENT_JOB_FAILURE, NOTIFY_ALL}
DEFAULT_NOTIFY_ON = [EVENT_JOB_FAILURE, NOTIFY_ALL]
NOTIFY_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class NotificationConfig:
    enabled: bool
    command: str
    args: List[str] = field(default_factory=list)
    notify_on: List[str] = field(default_factory=lambda: list(DEFAULT_NOTIFY_ON))

    def placeholder_count(self) -> int:
        return sum(arg.count(PLACEHOLDER) for arg in self.args)

    def has_placeholder(self) -> bool:
        return self.placeholder_count() > 0

    def subscribed(self, event: str) -> bool:
        return NOTIFY_ALL in self.notify_on or event in self.notify_on


def parse_notification_config(raw: dict) -> NotificationConfig:
    payload = ensure_mapping(raw, "notifications", {"enabled", "command", "args", "notify_on"})
    notify_on = ensure_str_list(payload.get("notify_on"), "notifications.notify_on", DEFAULT_NOTIFY_ON)
    unknown = set(notify_on) - VALID_NOTIFY_ON
    if unknown:
        raise ConfigError(
            f"Error: notifications.notify_on must be a subset of {sorted(VALID_NOTIFY_ON)}, "
            f"got {sorted(unknown)}."
        )
    config = NotificationConfig(
        enabled=ensure_bool(payload.get("enabled"), "notifications.enabled", True),
        command=ensure_str(payload.get("command"), "notifications.command"),
        args=ensure_str_list(payload.get("args"), "notifications.args", []),
        notify_on=list(dict.fromkeys(notify_on)),
    )
    count = config.placeholder_count()
    if count == 0:
        logger.warning(
            "Notification args contain no %s placeholder; alerts will not include the failure message.",
            PLACEHOLDER,
        )
    elif count > 1:
        logger.warning(
            "Notification args contain %s %s placeholders; the failure message will be repeated.",
            count,
            PLACEHOLDER,
        )
    return config


def load_notification_config(path: Path) -> Optional[NotificationConfig]:
    if not path.exists():
        return None
    return parse_notification_config(load_yaml_mapping(path))


def save_notification_config(path: Path, config: NotificationConfig) -> None:
    payload = {
        "enabled": config.enabled,
        "command": config.command,
        "args": list(config.args),
        "notify_on": list(config.notify_on),
    }
    atomic_write_text(path, yaml.safe_dump(payload, sort_keys=False))


def compose_message(job_name: str, reason: str) -> str:
    return (
        f"promptcron job '{job_name}' failed: {reason}. "
        f"Check 'promptcron logs {job_name}' for details."
    )


def substitute(args: List[str], message: str) -> List[str]:
    return [arg.replace(PLACEHOLDER, message) for arg in args]


class NotificationDispatcher:
    """Best-effort failure alerts through a configured external command."""

    def __init__(self, config_path: Path):
        self.config_path = config_path

    def load(self) -> Optional[NotificationConfig]:
        return load_notification_config(self.config_path)

    def notify(self, job_name: str, reason: str, event: str = EVENT_JOB_FAILURE) -> bool:
        try:
            config = self.load()
            if config is None or not config.enabled:
                logger.debug("Notifications not configured or disabled; skipping alert for %s.", job_name)
                return False
            if not config.subscribed(event):
                logger.debug("Notifications not subscribed to %s; skipping alert for %s.", event, job_name)
                return False
            return self.send(compose_message(job_name, reason), config)
        except Exception as exc:
            logger.warning("Notification for %s failed: %s", job_name, exc)
            return False

    def send(self, message: str, config: Optional[NotificationConfig] = None) -> bool:
        try:
            config = config or self.load()
            if config is None:
                logger.warning("No notification config at %s.", self.config_path)
                return False
            command = [config.command, *substitute(config.args, message)]
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                capture_output=True,
                text=True,
                timeout=NOTIFY_TIMEOUT_SECONDS,
                check=False,
            )
        except FileNotFoundError:
            logger.warning("Notification command not found: %s", config.command if config else "?")
            return False
        except subprocess.TimeoutExpired:
            logger.warning("Notification command timed out after %ss.", NOTIFY_TIMEOUT_SECONDS)
            return False
        except Exception as exc:
            logger.warning("Notification command failed: %s", exc)
            return False
        if result.returncode != 0:
            logger.warning(
                "Notification command exited with code %s: %s",
                result.returncode,
                (result.stderr or "").strip()[:500],
            )
            return False
        logger.info("Notification sent via %s", config.command)
        return True

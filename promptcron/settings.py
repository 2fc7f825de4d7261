from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from promptcron.errors import ConfigError

HOME_ENV_VAR = "PROMPTCRON_HOME"
DEFAULT_HOME = "~/.promptcron"
CONFIG_FILE = "config.yaml"
DEFAULT_TOOL_COMMAND = "claude"
DEFAULT_SEARCH_PATHS = ["~/.local/bin"]
DEFAULT_LOG_RETENTION_DAYS = 30
DEFAULT_MAX_RUNTIME_MINUTES = 120
VALID_BACKENDS = {"auto", "crontab", "schtasks"}
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(frozen=True)
class Settings:
    home: Path
    tool_command: str = DEFAULT_TOOL_COMMAND
    tool_search_paths: List[Path] = field(
        default_factory=lambda: [Path(p).expanduser() for p in DEFAULT_SEARCH_PATHS]
    )
    autonomy_prompt: Optional[str] = None
    default_log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    backend: str = "auto"
    max_runtime_minutes: int = DEFAULT_MAX_RUNTIME_MINUTES
    log_level: str = "INFO"

    @property
    def jobs_dir(self) -> Path:
        return self.home / "jobs"

    @property
    def logs_dir(self) -> Path:
        return self.home / "logs"

    @property
    def locks_dir(self) -> Path:
        return self.home / "locks"

    @property
    def notification_file(self) -> Path:
        return self.home / "notifications.yaml"


def resolve_home(explicit: Optional[str] = None) -> Path:
    raw = explicit or os.environ.get(HOME_ENV_VAR) or DEFAULT_HOME
    return Path(raw).expanduser().resolve()


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_str_list(value: Any, field_path: str, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if not isinstance(value, list):
        raise ConfigError(f"Error: {field_path} must be a list of strings.")
    out: List[str] = []
    for idx, item in enumerate(value):
        if not isinstance(item, (str, int, float)) or isinstance(item, bool):
            raise ConfigError(f"Error: {field_path}[{idx}] must be a string.")
        out.append(str(item))
    return out


def ensure_mapping(value: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(value.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return value


def load_yaml_mapping(path: Path) -> Dict[str, Any]:
    try:
        payload = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError(f"Error: Top-level of {path} must be a mapping.")
    return payload


def load_settings(home: Optional[Path] = None) -> Settings:
    home = home or resolve_home()
    config_path = home / CONFIG_FILE
    if not config_path.exists():
        return Settings(home=home)

    payload = ensure_mapping(
        load_yaml_mapping(config_path), "config", {"tool", "defaults", "scheduler", "logging"}
    )
    tool = ensure_mapping(payload.get("tool"), "tool", {"command", "search_paths", "autonomy_prompt"})
    defaults = ensure_mapping(payload.get("defaults"), "defaults", {"log_retention_days"})
    scheduler = ensure_mapping(payload.get("scheduler"), "scheduler", {"backend", "max_runtime_minutes"})
    logging_raw = ensure_mapping(payload.get("logging"), "logging", {"level"})

    tool_command = ensure_str(tool.get("command", DEFAULT_TOOL_COMMAND), "tool.command")
    search_paths = [
        Path(p).expanduser()
        for p in ensure_str_list(tool.get("search_paths"), "tool.search_paths", DEFAULT_SEARCH_PATHS)
    ]
    autonomy_prompt = tool.get("autonomy_prompt")
    if autonomy_prompt is not None:
        autonomy_prompt = ensure_str(autonomy_prompt, "tool.autonomy_prompt")

    backend = ensure_str(scheduler.get("backend", "auto"), "scheduler.backend").lower()
    if backend not in VALID_BACKENDS:
        raise ConfigError(
            f'Error: scheduler.backend must be one of {sorted(VALID_BACKENDS)}, got "{backend}".'
        )
    level = ensure_str(logging_raw.get("level", "INFO"), "logging.level").upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f'Error: logging.level must be one of {sorted(VALID_LOG_LEVELS)}, got "{level}".')

    return Settings(
        home=home,
        tool_command=tool_command,
        tool_search_paths=search_paths,
        autonomy_prompt=autonomy_prompt,
        default_log_retention_days=ensure_int(
            defaults.get("log_retention_days"),
            "defaults.log_retention_days",
            DEFAULT_LOG_RETENTION_DAYS,
            1,
        ),
        backend=backend,
        max_runtime_minutes=ensure_int(
            scheduler.get("max_runtime_minutes"),
            "scheduler.max_runtime_minutes",
            DEFAULT_MAX_RUNTIME_MINUTES,
            1,
        ),
        log_level=level,
    )

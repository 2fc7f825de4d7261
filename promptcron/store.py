from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from promptcron.errors import AlreadyExistsError, NotFoundError, ValidationError
from promptcron.schedule import compile_schedule

logger = logging.getLogger("promptcron.store")

UTC = timezone.utc
SCHEMA_VERSION = 1
NAME_RE = re.compile(r"^[A-Za-z0-9_-]+$")
DEFAULT_LOG_RETENTION_DAYS = 30

# Python attribute -> persisted key.
FIELD_KEYS = {
    "name": "name",
    "description": "description",
    "prompt": "prompt",
    "schedule": "schedule",
    "enabled": "enabled",
    "model": "model",
    "effort": "effort",
    "max_budget_usd": "maxBudgetUsd",
    "work_dir": "workDir",
    "allowed_tools": "allowedTools",
    "disallowed_tools": "disallowedTools",
    "mcp_config_path": "mcpConfigPath",
    "append_system_prompt": "appendSystemPrompt",
    "log_retention_days": "logRetentionDays",
    "session_persistence": "sessionPersistence",
    "created_at": "createdAt",
    "last_run_at": "lastRunAt",
    "last_run_status": "lastRunStatus",
    "last_run_duration_sec": "lastRunDurationSec",
}
KEY_FIELDS = {v: k for k, v in FIELD_KEYS.items()}
IMMUTABLE_FIELDS = {"name", "created_at"}
RUN_STATE_FIELDS = {"last_run_at", "last_run_status", "last_run_duration_sec"}


@dataclass(frozen=True)
class JobDefinition:
    name: str
    prompt: str
    schedule: str
    description: str = ""
    enabled: bool = True
    model: Optional[str] = None
    effort: Optional[str] = None
    max_budget_usd: Optional[float] = None
    work_dir: Optional[str] = None
    allowed_tools: List[str] = field(default_factory=list)
    disallowed_tools: List[str] = field(default_factory=list)
    mcp_config_path: Optional[str] = None
    append_system_prompt: Optional[str] = None
    log_retention_days: int = DEFAULT_LOG_RETENTION_DAYS
    session_persistence: bool = False
    created_at: Optional[str] = None
    last_run_at: Optional[str] = None
    last_run_status: Optional[str] = None
    last_run_duration_sec: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"schemaVersion": SCHEMA_VERSION}
        for attr, key in FIELD_KEYS.items():
            value = getattr(self, attr)
            payload[key] = list(value) if isinstance(value, list) else value
        return payload

    @staticmethod
    def from_dict(payload: Dict[str, Any]) -> "JobDefinition":
        payload = migrate(payload)
        kwargs = {KEY_FIELDS[key]: value for key, value in payload.items() if key in KEY_FIELDS}
        for required in ("name", "prompt", "schedule"):
            if required not in kwargs:
                raise ValidationError(f'Error: job record is missing "{FIELD_KEYS[required]}".')
        return JobDefinition(**kwargs)


def migrate(payload: Dict[str, Any]) -> Dict[str, Any]:
    version = payload.get("schemaVersion", 0)
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise ValidationError(
            f"Error: unsupported job schema version {version!r} (supported <= {SCHEMA_VERSION})."
        )
    data = dict(payload)
    if version < 1:
        # v0 stored tool lists as comma-separated strings.
        for key in ("allowedTools", "disallowedTools"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = [item.strip() for item in value.split(",") if item.strip()]
            elif value is None:
                data[key] = []
        data["schemaVersion"] = 1
    return data


def _ensure_optional_str(value: Any, field_path: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Error: {field_path} must be a string.")
    return value.strip() or None


def _ensure_str_list(value: Any, field_path: str) -> List[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Error: {field_path} must be a list of strings.")
    for idx, item in enumerate(value):
        if not isinstance(item, str) or not item.strip():
            raise ValidationError(f"Error: {field_path}[{idx}] must be a non-empty string.")
    return [item.strip() for item in value]


def validate_name(name: Any) -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ValidationError(
            f'Error: Invalid job name "{name}". Use letters, digits, "-" and "_" only.'
        )
    return name


def validate_job(job: JobDefinition) -> JobDefinition:
    """Check every field and return a normalized copy. Compiles the schedule."""
    validate_name(job.name)
    if not isinstance(job.prompt, str) or not job.prompt.strip():
        raise ValidationError("Error: prompt must be a non-empty string.")
    if not isinstance(job.schedule, str) or not job.schedule.strip():
        raise ValidationError("Error: schedule must be a non-empty string.")
    compile_schedule(job.schedule)
    if not isinstance(job.enabled, bool):
        raise ValidationError("Error: enabled must be true or false.")
    if not isinstance(job.session_persistence, bool):
        raise ValidationError("Error: sessionPersistence must be true or false.")
    if not isinstance(job.description, str):
        raise ValidationError("Error: description must be a string.")

    budget = job.max_budget_usd
    if budget is not None:
        if isinstance(budget, bool) or not isinstance(budget, (int, float)) or budget <= 0:
            raise ValidationError("Error: maxBudgetUsd must be a positive number.")
        budget = float(budget)

    retention = job.log_retention_days
    if isinstance(retention, bool) or not isinstance(retention, int) or retention < 1:
        raise ValidationError("Error: logRetentionDays must be an integer >= 1.")

    return replace(
        job,
        schedule=" ".join(job.schedule.split()),
        model=_ensure_optional_str(job.model, "model"),
        effort=_ensure_optional_str(job.effort, "effort"),
        max_budget_usd=budget,
        work_dir=_ensure_optional_str(job.work_dir, "workDir"),
        allowed_tools=_ensure_str_list(job.allowed_tools, "allowedTools"),
        disallowed_tools=_ensure_str_list(job.disallowed_tools, "disallowedTools"),
        mcp_config_path=_ensure_optional_str(job.mcp_config_path, "mcpConfigPath"),
        append_system_prompt=_ensure_optional_str(job.append_system_prompt, "appendSystemPrompt"),
    )


def atomic_write_text(path: Path, text: str) -> None:
    """Write to a temporary sibling, fsync, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            tmp.unlink()
        except OSError:
            pass
        raise


def atomic_create_text(path: Path, text: str) -> None:
    """Like atomic_write_text, but fails with FileExistsError if ``path`` exists.

    The final step is a hard link, which the OS refuses when the name is taken,
    so two racing creators cannot both win.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        os.link(tmp, path)
    finally:
        try:
            tmp.unlink()
        except OSError:
            pass


def now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


def _dump(job: JobDefinition) -> str:
    return json.dumps(job.to_dict(), indent=2) + "\n"


class JobStore:
    """One JSON file per job under ``jobs_dir``. No cross-record locking."""

    def __init__(self, jobs_dir: Path):
        self.jobs_dir = jobs_dir

    def _path(self, name: str) -> Path:
        return self.jobs_dir / f"{validate_name(name)}.json"

    def _write(self, job: JobDefinition) -> None:
        atomic_write_text(self._path(job.name), _dump(job))

    def _read(self, path: Path) -> JobDefinition:
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValidationError(f"Error: job record {path} is not valid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValidationError(f"Error: job record {path} must be a JSON object.")
        return JobDefinition.from_dict(payload)

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def create(self, job: JobDefinition) -> JobDefinition:
        job = validate_job(job)
        if self.exists(job.name):
            raise AlreadyExistsError(f'Error: Job "{job.name}" already exists.')
        job = replace(
            job,
            created_at=job.created_at or now_iso(),
            last_run_at=None,
            last_run_status=None,
            last_run_duration_sec=None,
        )
        try:
            atomic_create_text(self._path(job.name), _dump(job))
        except FileExistsError as exc:
            raise AlreadyExistsError(f'Error: Job "{job.name}" already exists.') from exc
        logger.info("Created job %s (%s)", job.name, job.schedule)
        return job

    def get(self, name: str) -> JobDefinition:
        path = self._path(name)
        if not path.exists():
            raise NotFoundError(f'Error: Unknown job "{name}".')
        return self._read(path)

    def list(self) -> List[JobDefinition]:
        if not self.jobs_dir.exists():
            return []
        jobs: List[JobDefinition] = []
        for path in sorted(self.jobs_dir.glob("*.json")):
            try:
                jobs.append(self._read(path))
            except (OSError, ValidationError, TypeError) as exc:
                logger.warning("Skipping unreadable job record %s: %s", path, exc)
        return jobs

    def update(self, name: str, patch: Dict[str, Any]) -> JobDefinition:
        current = self.get(name)
        valid_fields = {f.name for f in fields(JobDefinition)}
        unknown = set(patch) - valid_fields
        if unknown:
            raise ValidationError(f"Error: Unknown job fields: {sorted(unknown)}.")
        frozen = set(patch) & IMMUTABLE_FIELDS
        if frozen:
            raise ValidationError(f"Error: Fields cannot be changed after creation: {sorted(frozen)}.")
        if "schedule" in patch:
            compile_schedule(patch["schedule"])
        updated = validate_job(replace(current, **patch))
        self._write(updated)
        logger.info("Updated job %s: %s", name, ", ".join(sorted(patch)))
        return updated

    def record_run(self, name: str, started_at: str, status: str, duration_sec: float) -> JobDefinition:
        return self.update(
            name,
            {
                "last_run_at": started_at,
                "last_run_status": status,
                "last_run_duration_sec": round(max(duration_sec, 0.0), 2),
            },
        )

    def delete(self, name: str) -> None:
        path = self._path(name)
        if not path.exists():
            raise NotFoundError(f'Error: Unknown job "{name}".')
        path.unlink()
        logger.info("Deleted job %s", name)

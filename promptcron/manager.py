from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from promptcron.errors import PromptCronError, RegistrationError, ValidationError
from promptcron.notify import (
    DEFAULT_NOTIFY_ON,
    NotificationConfig,
    NotificationDispatcher,
    load_notification_config,
    parse_notification_config,
    save_notification_config,
)
from promptcron.registrar import (
    RegistrationState,
    TriggerRegistrar,
    detect_drift,
    runner_command,
)
from promptcron.retention import LogRetentionManager
from promptcron.runner import Runner
from promptcron.schedule import Once, Trigger, compile_schedule, next_run_times
from promptcron.settings import Settings
from promptcron.store import NAME_RE, JobDefinition, JobStore

logger = logging.getLogger("promptcron.manager")

TEST_MESSAGE = "promptcron test notification: alerts are configured correctly."


@dataclass
class JobStatus:
    job: JobDefinition
    trigger: Trigger
    state: Optional[RegistrationState]
    drift: Optional[str]
    next_runs: List[datetime] = field(default_factory=list)
    latest_log: Optional[Path] = None
    registrar_error: Optional[str] = None


class JobManager:
    """Operations behind the command line; keeps store and OS triggers in step."""

    def __init__(
        self,
        settings: Settings,
        registrar: TriggerRegistrar,
        store: Optional[JobStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        retention: Optional[LogRetentionManager] = None,
        runner: Optional[Runner] = None,
    ):
        self.settings = settings
        self.registrar = registrar
        self.store = store or JobStore(settings.jobs_dir)
        self.dispatcher = dispatcher or NotificationDispatcher(settings.notification_file)
        self.retention = retention or LogRetentionManager(settings.logs_dir)
        self.runner = runner or Runner(
            self.store, settings, dispatcher=self.dispatcher, retention=self.retention
        )

    def create(self, fields: Dict[str, Any]) -> JobDefinition:
        fields = dict(fields)
        fields.setdefault("log_retention_days", self.settings.default_log_retention_days)
        try:
            candidate = JobDefinition(**fields)
        except TypeError as exc:
            raise ValidationError(f"Error: {exc}") from exc
        trigger = compile_schedule(candidate.schedule)
        if isinstance(trigger, Once) and trigger.at <= datetime.now():
            logger.warning("Schedule %r is in the past; the job will never fire.", candidate.schedule)

        job = self.store.create(candidate)
        if job.enabled:
            try:
                self.registrar.register(job.name, trigger, enabled=True)
            except Exception:
                logger.error("Trigger registration failed for %s; removing the new record.", job.name)
                self.store.delete(job.name)
                raise
        return job

    def update(self, name: str, patch: Dict[str, Any]) -> JobDefinition:
        if not patch:
            raise ValidationError("Error: Nothing to update.")
        trigger = compile_schedule(patch["schedule"]) if "schedule" in patch else None
        previous = self.store.get(name)
        job = self.store.update(name, patch)
        if trigger is not None and job.schedule != previous.schedule:
            if job.enabled or self._safe_query(name).registered:
                self.registrar.register(name, trigger, enabled=job.enabled)
        if "enabled" in patch and job.enabled != previous.enabled:
            self._apply_enabled(job)
        return job

    def enable(self, name: str) -> JobDefinition:
        job = self.store.update(name, {"enabled": True})
        self._apply_enabled(job)
        return job

    def disable(self, name: str) -> JobDefinition:
        job = self.store.update(name, {"enabled": False})
        self._apply_enabled(job)
        return job

    def _apply_enabled(self, job: JobDefinition) -> None:
        state = self.registrar.query(job.name)
        if state.registered:
            self.registrar.set_enabled(job.name, job.enabled)
        elif job.enabled:
            self.registrar.register(job.name, compile_schedule(job.schedule), enabled=True)

    def _safe_query(self, name: str) -> RegistrationState:
        try:
            return self.registrar.query(name)
        except RegistrationError as exc:
            logger.warning("Could not query OS scheduler for %s: %s", name, exc)
            return RegistrationState(registered=False)

    def run(self, name: str, background: bool = False) -> int:
        job = self.store.get(name)
        if not job.enabled:
            logger.warning("Job %s is disabled; enable it before running.", name)
        if not background:
            return self.runner.run(name)
        if self._safe_query(name).registered:
            self.registrar.run_now(name)
            return 0
        spawn_detached(runner_command(self.settings, name))
        logger.info("Started background run of %s", name)
        return 0

    def delete(self, name: str, keep_logs: bool = False) -> None:
        self.store.get(name)
        self.registrar.deregister(name)
        self.store.delete(name)
        log_dir = self.retention.job_dir(name)
        if keep_logs:
            logger.info("Kept logs for %s in %s", name, log_dir)
        elif log_dir.exists():
            shutil.rmtree(log_dir)
            logger.info("Removed logs for %s", name)

    def status(self, name: str, preview_count: int = 3) -> JobStatus:
        return self._status_for(self.store.get(name), preview_count)

    def list_jobs(self) -> List[JobStatus]:
        return [self._status_for(job, preview_count=1) for job in self.store.list()]

    def _status_for(self, job: JobDefinition, preview_count: int) -> JobStatus:
        trigger = compile_schedule(job.schedule)
        state: Optional[RegistrationState] = None
        drift: Optional[str] = None
        error: Optional[str] = None
        try:
            state = self.registrar.query(job.name)
            drift = detect_drift(job, state)
        except PromptCronError as exc:
            error = str(exc)
        logs = self.retention.log_files(job.name)
        return JobStatus(
            job=job,
            trigger=trigger,
            state=state,
            drift=drift,
            next_runs=next_run_times(trigger, preview_count) if job.enabled else [],
            latest_log=logs[-1] if logs else None,
            registrar_error=error,
        )

    def logs(self, name: str, tail: Optional[int] = None) -> Optional[str]:
        self.store.get(name)
        files = self.retention.log_files(name)
        if not files:
            return None
        text = files[-1].read_text(encoding="utf-8", errors="replace")
        if tail is None:
            return text
        if tail < 1:
            raise ValidationError("Error: --tail must be >= 1.")
        return "\n".join(text.splitlines()[-tail:])

    def purge_logs(self, days: Optional[int] = None, name: Optional[str] = None) -> List[Path]:
        if name is not None:
            job = self.store.get(name)
            return self.retention.purge(name, days if days is not None else job.log_retention_days)
        if days is not None:
            return self.retention.purge(None, days)
        deleted: List[Path] = []
        retention_by_job = {job.name: job.log_retention_days for job in self.store.list()}
        for directory in sorted(p for p in self.settings.logs_dir.glob("*") if p.is_dir()):
            if not NAME_RE.match(directory.name):
                logger.warning("Skipping %s: not a job log directory.", directory)
                continue
            horizon = retention_by_job.get(directory.name, self.settings.default_log_retention_days)
            deleted.extend(self.retention.purge(directory.name, horizon))
        return deleted

    def setup_notify(
        self,
        command: Optional[str] = None,
        args: Optional[List[str]] = None,
        notify_on: Optional[List[str]] = None,
        disable: bool = False,
    ) -> NotificationConfig:
        path = self.settings.notification_file
        if disable:
            current = load_notification_config(path)
            if current is None:
                raise ValidationError("Error: Notifications are not configured.")
            config = replace(current, enabled=False)
        else:
            if not command:
                raise ValidationError("Error: setup-notify requires a command.")
            config = parse_notification_config(
                {
                    "enabled": True,
                    "command": command,
                    "args": list(args or []),
                    "notify_on": list(notify_on or DEFAULT_NOTIFY_ON),
                }
            )
        save_notification_config(path, config)
        logger.info("Saved notification config to %s (enabled=%s)", path, config.enabled)
        return config

    def test_notify(self) -> bool:
        config = load_notification_config(self.settings.notification_file)
        if config is None:
            raise ValidationError("Error: Notifications are not configured; run setup-notify first.")
        if not config.enabled:
            logger.warning("Notifications are disabled; sending the test message anyway.")
        return self.dispatcher.send(TEST_MESSAGE, config)


def spawn_detached(argv: List[str]) -> None:
    kwargs: Dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
    }
    if os.name == "nt":
        kwargs["creationflags"] = subprocess.DETACHED_PROCESS | subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        kwargs["start_new_session"] = True
    subprocess.Popen(argv, **kwargs)

"""
Runner invoked by the OS scheduler for one job fire.

Load -> enabled check -> run log -> retention -> environment -> pre-flight ->
compose -> invoke -> classify -> persist -> notify -> exit code.
"""

from __future__ import annotations

import logging
import os
import shutil
import signal
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from promptcron.errors import NotFoundError, PreflightError, PromptCronError, RunTerminated
from promptcron.invoker import (
    InvocationResult,
    ProcessInvoker,
    SubprocessInvoker,
    augmented_environment,
    build_tool_argv,
    parse_result,
    summarize_result,
)
from promptcron.log import run_log, write_raw
from promptcron.notify import EVENT_JOB_FAILURE, EVENT_RUN_ERROR, NotificationDispatcher
from promptcron.retention import LogRetentionManager
from promptcron.settings import Settings
from promptcron.store import JobDefinition, JobStore

logger = logging.getLogger("promptcron.runner")

UTC = timezone.utc
STATUS_SUCCESS = "success"
EXIT_FATAL = 1


@dataclass
class RunOutcome:
    job_name: str
    status: str
    exit_code: int
    started_at: datetime
    duration_seconds: float
    log_path: Optional[Path] = None
    skipped: bool = False

    @property
    def success(self) -> bool:
        return self.status == STATUS_SUCCESS


def classify(exit_code: int) -> str:
    return STATUS_SUCCESS if exit_code == 0 else f"failed:{exit_code}"


def describe_error(exc: BaseException) -> str:
    text = " ".join(str(exc).split()) or type(exc).__name__
    return f"error:{text[:200]}"


@contextmanager
def terminate_on_sigterm() -> Iterator[None]:
    """Turn SIGTERM into RunTerminated so a killed run still records its outcome.

    The crontab ``timeout`` wrapper and Task Scheduler's ExecutionTimeLimit both
    stop the Runner this way. Only the first signal raises; later ones are
    ignored while the outcome is persisted.
    """

    def _handler(signum: int, frame: Any) -> None:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        raise RunTerminated(f"terminated by signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def resolve_work_dir(raw: Optional[str], run_id: str) -> Path:
    home = Path.home()
    if not raw:
        return home
    try:
        expanded = Path(raw).expanduser()
    except RuntimeError as exc:
        logger.warning("[%s] Could not expand workDir %r (%s); using %s", run_id, raw, exc, home)
        return home
    if str(expanded).startswith("~"):
        logger.warning("[%s] Could not expand workDir %r; using %s", run_id, raw, home)
        return home
    return expanded


class Runner:
    def __init__(
        self,
        store: JobStore,
        settings: Settings,
        invoker: Optional[ProcessInvoker] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        retention: Optional[LogRetentionManager] = None,
        which: Callable[..., Optional[str]] = shutil.which,
    ):
        self.store = store
        self.settings = settings
        self.invoker = invoker or SubprocessInvoker()
        self.dispatcher = dispatcher or NotificationDispatcher(settings.notification_file)
        self.retention = retention or LogRetentionManager(settings.logs_dir)
        self.which = which

    def run(self, name: str) -> int:
        return self.execute(name).exit_code

    def execute(self, name: str) -> RunOutcome:
        started = datetime.now(tz=UTC)
        clock_start = time.monotonic()
        run_id = f"{name}:{started.strftime('%Y%m%d%H%M%S')}-{os.getpid()}"

        try:
            job = self.store.get(name)
        except NotFoundError as exc:
            logger.error("[%s] %s", run_id, exc)
            return RunOutcome(name, describe_error(exc), EXIT_FATAL, started, 0.0)
        except Exception as exc:
            logger.exception("[%s] Could not load job %s: %s", run_id, name, exc)
            return RunOutcome(name, describe_error(exc), EXIT_FATAL, started, 0.0)

        if not job.enabled:
            logger.info("[%s] Job %s is disabled; skipping.", run_id, name)
            return RunOutcome(name, "skipped", 0, started, 0.0, skipped=True)

        log_path = self.retention.job_dir(name) / f"{started.astimezone().strftime('%Y%m%d-%H%M%S')}.log"
        status = describe_error(RuntimeError("run did not complete"))
        exit_code = EXIT_FATAL
        try:
            with run_log(log_path):
                try:
                    status, exit_code = self._execute(job, run_id, log_path)
                except PreflightError as exc:
                    logger.error("[%s] Pre-flight failed: %s", run_id, exc)
                    status, exit_code = exc.status, EXIT_FATAL
                except RunTerminated as exc:
                    logger.error("[%s] Run of %s stopped before finishing: %s", run_id, name, exc)
                    status, exit_code = exc.status, EXIT_FATAL
                except Exception as exc:
                    logger.exception("[%s] Unexpected error running %s: %s", run_id, name, exc)
                    status, exit_code = describe_error(exc), EXIT_FATAL
                duration = time.monotonic() - clock_start
                logger.info(
                    "[%s] Job %s finished with status=%s exit_code=%s in %.2fs",
                    run_id,
                    name,
                    status,
                    exit_code,
                    duration,
                )
        except RunTerminated as exc:
            logger.error("[%s] Run of %s stopped before finishing: %s", run_id, name, exc)
            status, exit_code = exc.status, EXIT_FATAL
        except Exception as exc:
            # Could not even open the run log.
            logger.exception("[%s] Unexpected error preparing %s: %s", run_id, name, exc)
            status, exit_code = describe_error(exc), EXIT_FATAL

        duration = time.monotonic() - clock_start
        self._persist(name, started, status, duration, run_id)
        if status != STATUS_SUCCESS:
            event = EVENT_JOB_FAILURE if status.startswith("failed:") else EVENT_RUN_ERROR
            self._notify(name, status, event, run_id)
        return RunOutcome(name, status, exit_code, started, duration, log_path=log_path)

    def _execute(self, job: JobDefinition, run_id: str, log_path: Path) -> Tuple[str, int]:
        logger.info("[%s] Starting job %s (%s)", run_id, job.name, job.schedule)

        try:
            self.retention.purge(job.name, job.log_retention_days)
        except PromptCronError as exc:
            logger.warning("[%s] Log retention skipped: %s", run_id, exc)

        work_dir = resolve_work_dir(job.work_dir, run_id)
        env = augmented_environment(self.settings.tool_search_paths)
        executable, mcp_config = self._preflight(job, work_dir, env)

        argv = build_tool_argv(
            executable,
            job,
            autonomy_prompt=self.settings.autonomy_prompt,
            mcp_config_path=mcp_config,
        )
        logger.info("[%s] Invoking %s in %s", run_id, executable, work_dir)
        result = self.invoker.invoke(argv, work_dir, env)
        self._record_output(result, run_id, log_path)

        status = classify(result.exit_code)
        if status == STATUS_SUCCESS:
            logger.info("[%s] Tool exited 0 after %.2fs", run_id, result.elapsed)
        else:
            logger.error("[%s] Tool exited with code %s after %.2fs", run_id, result.exit_code, result.elapsed)
        return status, result.exit_code

    def _preflight(self, job: JobDefinition, work_dir: Path, env: Dict[str, str]) -> Tuple[str, Optional[Path]]:
        executable = self.which(self.settings.tool_command, path=env.get("PATH"))
        if not executable:
            raise PreflightError(
                "error:tool-not-found",
                f"{self.settings.tool_command} not found on PATH ({env.get('PATH', '')})",
            )
        if not work_dir.is_dir():
            raise PreflightError("error:workdir-not-found", f"working directory does not exist: {work_dir}")
        mcp_config: Optional[Path] = None
        if job.mcp_config_path:
            mcp_config = Path(job.mcp_config_path).expanduser()
            if not mcp_config.is_absolute():
                mcp_config = work_dir / mcp_config
            if not mcp_config.is_file():
                raise PreflightError("error:mcp-config-not-found", f"MCP config not found: {mcp_config}")
        return executable, mcp_config

    def _record_output(self, result: InvocationResult, run_id: str, log_path: Path) -> None:
        write_raw(log_path, "----- tool output -----\n" + result.output)
        write_raw(log_path, "----- end tool output -----")
        try:
            payload = parse_result(result.output)
        except Exception as exc:
            logger.debug("[%s] Result parsing failed: %s", run_id, exc)
            return
        if payload is None:
            logger.debug("[%s] Tool output contained no JSON result.", run_id)
            return
        summary = summarize_result(payload)
        if "cost_usd" in summary:
            logger.info("[%s] Cost: $%.4f", run_id, summary["cost_usd"])
        if "turns" in summary:
            logger.info("[%s] Turns: %s", run_id, summary["turns"])
        if "summary" in summary:
            logger.info("[%s] Result: %s", run_id, summary["summary"])
        if summary.get("tool_reported_error"):
            logger.warning("[%s] Tool reported an error in its result payload.", run_id)

    def _persist(self, name: str, started: datetime, status: str, duration: float, run_id: str) -> None:
        try:
            self.store.record_run(name, started.isoformat(timespec="seconds"), status, duration)
        except Exception as exc:
            logger.error("[%s] Failed to record outcome for %s: %s", run_id, name, exc)

    def _notify(self, name: str, status: str, event: str, run_id: str) -> None:
        try:
            self.dispatcher.notify(name, reason_for(status), event=event)
        except Exception as exc:
            logger.warning("[%s] Notification raised: %s", run_id, exc)


def reason_for(status: str) -> str:
    if status.startswith("failed:"):
        return f"the tool failed with exit code {status.split(':', 1)[1]}"
    if status == "error:tool-not-found":
        return "the CLI tool was not found on PATH"
    if status == RunTerminated.status:
        return "the run was terminated before finishing (time budget exceeded?)"
    if status.startswith("error:"):
        return f"run error ({status.split(':', 1)[1]})"
    return status

from __future__ import annotations

import argparse
import logging
from typing import Any, Dict, List, Optional

from promptcron.errors import PromptCronError
from promptcron.log import setup_logging
from promptcron.manager import JobManager, JobStatus
from promptcron.notify import VALID_NOTIFY_ON
from promptcron.registrar import registrar_for
from promptcron.runner import Runner, terminate_on_sigterm
from promptcron.schedule import GRAMMAR
from promptcron.settings import load_settings, resolve_home
from promptcron.store import JobStore

logger = logging.getLogger("promptcron")

# argparse dest -> JobDefinition attribute
POLICY_OPTIONS = {
    "description": "description",
    "prompt": "prompt",
    "schedule": "schedule",
    "model": "model",
    "effort": "effort",
    "max_budget_usd": "max_budget_usd",
    "work_dir": "work_dir",
    "allowed_tools": "allowed_tools",
    "disallowed_tools": "disallowed_tools",
    "mcp_config": "mcp_config_path",
    "append_system_prompt": "append_system_prompt",
    "log_retention_days": "log_retention_days",
    "session_persistence": "session_persistence",
}


def _add_policy_arguments(parser: argparse.ArgumentParser, creating: bool) -> None:
    parser.add_argument("--prompt", required=creating, help="Task given to the CLI tool")
    parser.add_argument("--schedule", required=creating, help='Schedule, e.g. "daily 09:00"')
    parser.add_argument("--description", help="Human-readable description")
    parser.add_argument("--model", help="Model passed to the tool (omitted when unset)")
    parser.add_argument("--effort", help="Effort level passed to the tool")
    parser.add_argument("--max-budget-usd", type=float, help="Spending cap per run")
    parser.add_argument("--work-dir", help="Working directory (default: home directory)")
    parser.add_argument("--allowed-tools", nargs="+", metavar="TOOL", help="Tools the job may use")
    parser.add_argument("--disallowed-tools", nargs="+", metavar="TOOL", help="Tools the job may not use")
    parser.add_argument("--mcp-config", help="Path to an MCP server config file")
    parser.add_argument("--append-system-prompt", help="Extra system prompt appended to the autonomy directive")
    parser.add_argument("--log-retention-days", type=int, help="Days to keep run logs")
    persistence = parser.add_mutually_exclusive_group()
    persistence.add_argument(
        "--session-persistence",
        dest="session_persistence",
        action="store_true",
        default=None,
        help="Keep tool sessions on disk",
    )
    persistence.add_argument(
        "--no-session-persistence",
        dest="session_persistence",
        action="store_false",
        help="Do not keep tool sessions (default)",
    )


def policy_fields(args: argparse.Namespace) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for dest, attr in POLICY_OPTIONS.items():
        value = getattr(args, dest, None)
        if value is not None:
            out[attr] = value
    return out


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="promptcron",
        description="Schedule recurring runs of a prompt-driven CLI tool",
        epilog=GRAMMAR,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--home", help="State directory (default: $PROMPTCRON_HOME or ~/.promptcron)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    create_parser = subparsers.add_parser("create", help="Create and schedule a job")
    create_parser.add_argument("name")
    _add_policy_arguments(create_parser, creating=True)
    create_parser.add_argument("--disabled", action="store_true", help="Create without scheduling")

    update_parser = subparsers.add_parser("update", help="Change fields of a job")
    update_parser.add_argument("name")
    _add_policy_arguments(update_parser, creating=False)

    subparsers.add_parser("list", help="List jobs with last run and sync state")

    for command in ("enable", "disable"):
        sub = subparsers.add_parser(command, help=f"{command.capitalize()} a job")
        sub.add_argument("name")

    run_parser = subparsers.add_parser("run", help="Run a job now")
    run_parser.add_argument("name")
    run_parser.add_argument("--background", action="store_true", help="Detach and return immediately")

    delete_parser = subparsers.add_parser("delete", help="Delete a job and its trigger")
    delete_parser.add_argument("name")
    delete_parser.add_argument("--keep-logs", action="store_true", help="Leave run logs on disk")

    logs_parser = subparsers.add_parser("logs", help="Show the latest run log of a job")
    logs_parser.add_argument("name")
    logs_parser.add_argument("--tail", type=int, help="Only the last N lines")

    purge_parser = subparsers.add_parser("purge-logs", help="Delete old run logs")
    purge_parser.add_argument("--days", type=int, help="Age threshold (default: each job's retention)")
    purge_parser.add_argument("--name", help="Only this job")

    status_parser = subparsers.add_parser("status", help="Show job details and OS scheduler state")
    status_parser.add_argument("name", nargs="?")

    notify_parser = subparsers.add_parser("setup-notify", help="Configure failure notifications")
    notify_parser.add_argument("--disable", action="store_true", help="Turn notifications off")
    notify_parser.add_argument("--command", dest="notify_command", help="Executable to run on failure")
    notify_parser.add_argument(
        "--arg",
        dest="notify_args",
        action="append",
        default=[],
        help="Argument for the command; {{message}} is replaced by the alert text (repeatable)",
    )
    notify_parser.add_argument(
        "--notify-on",
        dest="notify_on",
        action="append",
        choices=sorted(VALID_NOTIFY_ON),
        help="Event kinds to alert on (repeatable, default: all)",
    )

    subparsers.add_parser("test-notify", help="Send a test notification")

    exec_parser = subparsers.add_parser("exec", help="Run a job as the OS scheduler does")
    exec_parser.add_argument("name")

    return parser.parse_args(argv)


def _format_status_line(status: JobStatus) -> str:
    job = status.job
    last = job.last_run_status or "never run"
    if job.last_run_at:
        last = f"{last} at {job.last_run_at} ({job.last_run_duration_sec}s)"
    if status.registrar_error:
        sync = f"unknown ({status.registrar_error})"
    elif status.drift:
        sync = f"DRIFT: {status.drift}"
    else:
        sync = "in sync"
    state = "enabled" if job.enabled else "disabled"
    return f"- {job.name} [{state}] {job.schedule} | last: {last} | sync: {sync}"


def command_list(manager: JobManager) -> int:
    statuses = manager.list_jobs()
    if not statuses:
        print("No jobs.")
        return 0
    for status in statuses:
        print(_format_status_line(status))
    return 0


def command_status(manager: JobManager, name: Optional[str]) -> int:
    if name is None:
        return command_list(manager)
    status = manager.status(name)
    job = status.job
    print("=" * 80)
    print(f"Job: {job.name} (enabled={job.enabled})")
    if job.description:
        print(f"Description: {job.description}")
    print(f"Schedule: {job.schedule} -> {status.trigger.describe()}")
    print(f"Prompt: {job.prompt}")
    print(f"Model: {job.model or 'default'} | Effort: {job.effort or 'default'}")
    if job.max_budget_usd is not None:
        print(f"Max budget: ${job.max_budget_usd:g}")
    print(f"Work dir: {job.work_dir or '~'}")
    if job.allowed_tools:
        print(f"Allowed tools: {', '.join(job.allowed_tools)}")
    if job.disallowed_tools:
        print(f"Disallowed tools: {', '.join(job.disallowed_tools)}")
    if job.mcp_config_path:
        print(f"MCP config: {job.mcp_config_path}")
    print(f"Log retention: {job.log_retention_days} day(s)")
    print(f"Created: {job.created_at}")
    print(f"Last run: {job.last_run_at or 'never'} | status: {job.last_run_status or '-'}"
          f" | duration: {job.last_run_duration_sec if job.last_run_duration_sec is not None else '-'}s")
    if status.state is not None:
        print(
            f"OS scheduler: registered={status.state.registered} "
            f"enabled={status.state.enabled} running={status.state.running}"
        )
    if status.registrar_error:
        print(f"OS scheduler: unavailable ({status.registrar_error})")
    if status.drift:
        print(f"Sync drift: {status.drift}")
    if status.next_runs:
        print("Next run(s):")
        for run_at in status.next_runs:
            print(f"- {run_at.isoformat()}")
    print(f"Latest log: {status.latest_log or 'none'}")
    print("=" * 80)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        settings = load_settings(resolve_home(args.home))
        setup_logging(settings.home, settings.log_level)
        store = JobStore(settings.jobs_dir)

        if args.command == "exec":
            with terminate_on_sigterm():
                return Runner(store, settings).run(args.name)

        manager = JobManager(settings, registrar_for(settings), store=store)
        if args.command == "create":
            fields = policy_fields(args)
            fields["name"] = args.name
            fields["enabled"] = not args.disabled
            job = manager.create(fields)
            print(f"Created {job.name}: {job.schedule} (enabled={job.enabled})")
            return 0
        if args.command == "update":
            job = manager.update(args.name, policy_fields(args))
            print(f"Updated {job.name}")
            return 0
        if args.command == "list":
            return command_list(manager)
        if args.command == "enable":
            manager.enable(args.name)
            print(f"Enabled {args.name}")
            return 0
        if args.command == "disable":
            manager.disable(args.name)
            print(f"Disabled {args.name}")
            return 0
        if args.command == "run":
            return manager.run(args.name, background=args.background)
        if args.command == "delete":
            manager.delete(args.name, keep_logs=args.keep_logs)
            print(f"Deleted {args.name}")
            return 0
        if args.command == "logs":
            text = manager.logs(args.name, tail=args.tail)
            print(text if text is not None else f"No logs for {args.name}.")
            return 0
        if args.command == "purge-logs":
            deleted = manager.purge_logs(days=args.days, name=args.name)
            print(f"Deleted {len(deleted)} log file(s).")
            return 0
        if args.command == "status":
            return command_status(manager, args.name)
        if args.command == "setup-notify":
            config = manager.setup_notify(
                command=args.notify_command,
                args=args.notify_args,
                notify_on=args.notify_on,
                disable=args.disable,
            )
            print(f"Notifications {'enabled' if config.enabled else 'disabled'}: {config.command}")
            return 0
        if args.command == "test-notify":
            delivered = manager.test_notify()
            print("Test notification sent." if delivered else "Test notification failed; see log.")
            return 0 if delivered else 1
        raise PromptCronError(f"Unsupported command: {args.command}")
    except PromptCronError as exc:
        logger.error(str(exc))
        return 1
    except Exception as exc:
        logger.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

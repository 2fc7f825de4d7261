from __future__ import annotations

import json
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from promptcron.store import JobDefinition

AUTONOMY_DIRECTIVE = (
    "You are running as a scheduled, unattended job. There is no human operator "
    "watching this session and nobody can answer questions or approve actions. "
    "Proceed independently using your best judgement, do not wait for input, and "
    "finish with a short summary of what you did, what changed and anything that "
    "needs follow-up."
)
UNATTENDED_FLAGS = ["--output-format", "json", "--dangerously-skip-permissions"]


@dataclass(frozen=True)
class InvocationResult:
    output: str
    exit_code: int
    elapsed: float


class ProcessInvoker:
    """Runs the external tool once and waits for it."""

    def invoke(self, argv: List[str], cwd: Path, env: Mapping[str, str]) -> InvocationResult:
        raise NotImplementedError


class SubprocessInvoker(ProcessInvoker):
    def invoke(self, argv: List[str], cwd: Path, env: Mapping[str, str]) -> InvocationResult:
        started = time.monotonic()
        # No timeout: the OS scheduler owns the wall-clock budget.
        result = subprocess.run(
            argv,
            cwd=str(cwd),
            env=dict(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
        return InvocationResult(
            output=result.stdout or "",
            exit_code=result.returncode,
            elapsed=time.monotonic() - started,
        )


def augmented_environment(search_paths: List[Path], base: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Copy of the environment with existing search paths prepended to PATH."""
    env = dict(os.environ if base is None else base)
    current = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
    known = {os.path.normcase(os.path.normpath(entry)) for entry in current}
    missing: List[str] = []
    for directory in search_paths:
        key = os.path.normcase(os.path.normpath(str(directory)))
        if directory.is_dir() and key not in known:
            missing.append(str(directory))
            known.add(key)
    env["PATH"] = os.pathsep.join(missing + current)
    return env


def system_prompt_for(job: JobDefinition, autonomy_prompt: Optional[str] = None) -> str:
    parts = [autonomy_prompt or AUTONOMY_DIRECTIVE]
    if job.append_system_prompt:
        parts.append(job.append_system_prompt)
    return "\n\n".join(parts)


def build_tool_argv(
    executable: str,
    job: JobDefinition,
    autonomy_prompt: Optional[str] = None,
    mcp_config_path: Optional[Path] = None,
) -> List[str]:
    argv = [executable, "--print", job.prompt, *UNATTENDED_FLAGS]
    argv += ["--append-system-prompt", system_prompt_for(job, autonomy_prompt)]
    if job.model:
        argv += ["--model", job.model]
    if job.effort:
        argv += ["--effort", job.effort]
    if job.max_budget_usd is not None:
        argv += ["--max-budget-usd", repr(float(job.max_budget_usd))]
    if job.allowed_tools:
        argv += ["--allowedTools", *job.allowed_tools]
    if job.disallowed_tools:
        argv += ["--disallowedTools", *job.disallowed_tools]
    if mcp_config_path is not None:
        argv += ["--mcp-config", str(mcp_config_path)]
    if not job.session_persistence:
        argv.append("--no-session-persistence")
    return argv


def parse_result(output: str) -> Optional[Dict[str, Any]]:
    """Last JSON object printed by the tool, or None."""
    text = output.strip()
    if not text:
        return None
    candidates = [text] + [line.strip() for line in reversed(text.splitlines())]
    for candidate in candidates:
        if not candidate.startswith("{"):
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(payload, dict):
            return payload
    return None


def summarize_result(payload: Dict[str, Any], limit: int = 500) -> Dict[str, Any]:
    summary: Dict[str, Any] = {}
    cost = payload.get("total_cost_usd", payload.get("cost_usd"))
    if isinstance(cost, (int, float)) and not isinstance(cost, bool):
        summary["cost_usd"] = cost
    turns = payload.get("num_turns")
    if isinstance(turns, int):
        summary["turns"] = turns
    result = payload.get("result")
    if isinstance(result, str) and result.strip():
        text = " ".join(result.split())
        summary["summary"] = text if len(text) <= limit else text[: limit - 3] + "..."
    if payload.get("is_error") is True:
        summary["tool_reported_error"] = True
    return summary

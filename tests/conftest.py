from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import pytest

from promptcron.errors import RegistrationError
from promptcron.invoker import InvocationResult, ProcessInvoker
from promptcron.notify import NotificationDispatcher
from promptcron.registrar import RegistrationState, TriggerRegistrar
from promptcron.schedule import Trigger
from promptcron.settings import Settings
from promptcron.store import JobStore


class FakeInvoker(ProcessInvoker):
    def __init__(self, output: str = '{"result":"ok"}', exit_code: int = 0):
        self.output = output
        self.exit_code = exit_code
        self.calls: List[Tuple[List[str], Path, Dict[str, str]]] = []

    def invoke(self, argv: List[str], cwd: Path, env: Mapping[str, str]) -> InvocationResult:
        self.calls.append((list(argv), cwd, dict(env)))
        return InvocationResult(output=self.output, exit_code=self.exit_code, elapsed=0.01)


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self, config_path: Path, fail: bool = False):
        super().__init__(config_path)
        self.fail = fail
        self.calls: List[Tuple[str, str, str]] = []

    def notify(self, job_name: str, reason: str, event: str = "job-failure") -> bool:
        self.calls.append((job_name, reason, event))
        if self.fail:
            raise RuntimeError("notifier exploded")
        return True


class FakeRegistrar(TriggerRegistrar):
    def __init__(self, settings: Settings, fail_register: bool = False):
        super().__init__(settings)
        self.fail_register = fail_register
        self.triggers: Dict[str, Trigger] = {}
        self.enabled: Dict[str, bool] = {}
        self.started: List[str] = []

    def register(self, name: str, trigger: Trigger, enabled: bool = True) -> None:
        if self.fail_register:
            raise RegistrationError("Error: scheduler refused the trigger.")
        self.triggers[name] = trigger
        self.enabled[name] = enabled

    def deregister(self, name: str) -> None:
        self.triggers.pop(name, None)
        self.enabled.pop(name, None)

    def query(self, name: str) -> RegistrationState:
        if name not in self.triggers:
            return RegistrationState(registered=False)
        return RegistrationState(registered=True, enabled=self.enabled[name])

    def set_enabled(self, name: str, enabled: bool) -> None:
        self.enabled[name] = enabled

    def run_now(self, name: str) -> None:
        self.started.append(name)


def write_fake_tool(directory: Path, name: str = "claude") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    tool = directory / name
    tool.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    tool.chmod(0o755)
    return tool


@pytest.fixture
def tool_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "bin"
    write_fake_tool(directory)
    return directory


@pytest.fixture
def settings(tmp_path: Path, tool_dir: Path) -> Settings:
    return Settings(home=tmp_path / "home", tool_search_paths=[tool_dir])


@pytest.fixture
def store(settings: Settings) -> JobStore:
    return JobStore(settings.jobs_dir)


@pytest.fixture
def registrar(settings: Settings) -> FakeRegistrar:
    return FakeRegistrar(settings)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "work"
    directory.mkdir()
    return directory


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Optional[str]:
    monkeypatch.setenv("PROMPTCRON_HOME", str(tmp_path / "home"))
    return os.environ.get("PROMPTCRON_HOME")

from __future__ import annotations

import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import yaml

import promptcron.manager as manager_module
from conftest import FakeInvoker, FakeRegistrar, RecordingDispatcher
from promptcron.errors import (
    NotFoundError,
    RegistrationError,
    ScheduleError,
    ValidationError,
)
from promptcron.manager import JobManager
from promptcron.registrar import RegistrationState
from promptcron.runner import Runner
from promptcron.schedule import Daily, Interval
from promptcron.settings import Settings
from promptcron.store import JobStore


def make_manager(
    settings: Settings,
    store: JobStore,
    registrar: FakeRegistrar,
    invoker: Optional[FakeInvoker] = None,
) -> JobManager:
    dispatcher = RecordingDispatcher(settings.notification_file)
    runner = Runner(store, settings, invoker=invoker or FakeInvoker(), dispatcher=dispatcher)
    return JobManager(settings, registrar, store=store, dispatcher=dispatcher, runner=runner)


def job_fields(work_dir: Path, **overrides: Any) -> Dict[str, Any]:
    fields: Dict[str, Any] = {
        "name": "hn-summary",
        "prompt": "Summarize Hacker News",
        "schedule": "daily 09:00",
        "work_dir": str(work_dir),
    }
    fields.update(overrides)
    return fields


@pytest.fixture
def manager(settings: Settings, store: JobStore, registrar: FakeRegistrar) -> JobManager:
    return make_manager(settings, store, registrar)


def test_create_registers_trigger(manager: JobManager, registrar: FakeRegistrar, work_dir: Path) -> None:
    job = manager.create(job_fields(work_dir))

    assert job.enabled is True
    assert job.log_retention_days == 30
    assert registrar.triggers["hn-summary"] == Daily(hour=9, minute=0)
    assert registrar.enabled["hn-summary"] is True


def test_create_uses_configured_default_retention(
    tmp_path: Path, tool_dir: Path, registrar: FakeRegistrar, work_dir: Path
) -> None:
    settings = Settings(home=tmp_path / "home", tool_search_paths=[tool_dir], default_log_retention_days=7)
    manager = make_manager(settings, JobStore(settings.jobs_dir), registrar)
    assert manager.create(job_fields(work_dir)).log_retention_days == 7
    assert manager.create(job_fields(work_dir, name="other", log_retention_days=90)).log_retention_days == 90


def test_invalid_schedule_touches_nothing(
    manager: JobManager, store: JobStore, registrar: FakeRegistrar, work_dir: Path
) -> None:
    with pytest.raises(ScheduleError, match="every <N>m"):
        manager.create(job_fields(work_dir, schedule="every 0m"))
    assert store.list() == []
    assert registrar.triggers == {}


def test_unknown_field_is_a_validation_error(manager: JobManager, work_dir: Path) -> None:
    with pytest.raises(ValidationError):
        manager.create(job_fields(work_dir, colour="blue"))


def test_registration_failure_rolls_back(settings: Settings, store: JobStore, work_dir: Path) -> None:
    manager = make_manager(settings, store, FakeRegistrar(settings, fail_register=True))
    with pytest.raises(RegistrationError):
        manager.create(job_fields(work_dir))
    assert not store.exists("hn-summary")


def test_create_disabled_does_not_register(manager: JobManager, registrar: FakeRegistrar, work_dir: Path) -> None:
    manager.create(job_fields(work_dir, enabled=False))
    assert "hn-summary" not in registrar.triggers
    assert manager.status("hn-summary").drift is None


def test_past_once_schedule_warns(
    manager: JobManager, work_dir: Path, caplog: pytest.LogCaptureFixture
) -> None:
    with caplog.at_level("WARNING", logger="promptcron.manager"):
        job = manager.create(job_fields(work_dir, schedule="once 2001-01-01 00:00"))
    assert job.schedule == "once 2001-01-01 00:00"
    assert "in the past" in caplog.text


def test_disable_and_enable_keep_store_and_trigger_in_step(
    manager: JobManager, store: JobStore, registrar: FakeRegistrar, work_dir: Path
) -> None:
    original = manager.create(job_fields(work_dir, model="opus"))

    manager.disable("hn-summary")
    assert store.get("hn-summary").enabled is False
    assert registrar.enabled["hn-summary"] is False
    assert manager.status("hn-summary").drift is None

    manager.enable("hn-summary")
    assert store.get("hn-summary") == original
    assert registrar.enabled["hn-summary"] is True


def test_enable_registers_when_trigger_missing(
    manager: JobManager, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir, enabled=False))
    manager.enable("hn-summary")
    assert registrar.query("hn-summary") == RegistrationState(registered=True, enabled=True)


def test_update_schedule_reregisters(
    manager: JobManager, store: JobStore, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir))
    manager.update("hn-summary", {"schedule": "every 30m"})
    assert registrar.triggers["hn-summary"] == Interval(unit="m", every=30)
    assert store.get("hn-summary").schedule == "every 30m"

    with pytest.raises(ScheduleError):
        manager.update("hn-summary", {"schedule": "every 0m"})
    assert store.get("hn-summary").schedule == "every 30m"

    with pytest.raises(ValidationError, match="Nothing to update"):
        manager.update("hn-summary", {})


def test_update_prompt_leaves_trigger_alone(
    manager: JobManager, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir))
    registrar.triggers["hn-summary"] = Interval(unit="h", every=2)
    manager.update("hn-summary", {"prompt": "Another task"})
    assert registrar.triggers["hn-summary"] == Interval(unit="h", every=2)


def test_run_foreground_returns_tool_exit_code(
    settings: Settings, store: JobStore, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager = make_manager(settings, store, registrar, invoker=FakeInvoker(exit_code=4))
    manager.create(job_fields(work_dir))
    assert manager.run("hn-summary") == 4
    assert store.get("hn-summary").last_run_status == "failed:4"


def test_run_background_uses_registered_trigger(
    manager: JobManager, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir))
    assert manager.run("hn-summary", background=True) == 0
    assert registrar.started == ["hn-summary"]


def test_run_background_spawns_runner_when_unregistered(
    manager: JobManager, settings: Settings, work_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    spawned: List[List[str]] = []
    monkeypatch.setattr(manager_module, "spawn_detached", spawned.append)
    manager.create(job_fields(work_dir, enabled=False))

    assert manager.run("hn-summary", background=True) == 0
    assert spawned == [[sys.executable, "-m", "promptcron", "--home", str(settings.home), "exec", "hn-summary"]]


def test_run_unknown_job(manager: JobManager) -> None:
    with pytest.raises(NotFoundError):
        manager.run("ghost")


def test_delete_removes_record_trigger_and_logs(
    manager: JobManager, store: JobStore, registrar: FakeRegistrar, settings: Settings, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir))
    manager.run("hn-summary")
    assert (settings.logs_dir / "hn-summary").is_dir()

    manager.delete("hn-summary")

    assert not store.exists("hn-summary")
    assert "hn-summary" not in registrar.triggers
    assert not (settings.logs_dir / "hn-summary").exists()


def test_delete_keep_logs(manager: JobManager, settings: Settings, work_dir: Path) -> None:
    manager.create(job_fields(work_dir))
    manager.run("hn-summary")
    manager.delete("hn-summary", keep_logs=True)
    assert manager.retention.log_files("hn-summary") != []


def test_status_reports_drift_and_next_runs(
    manager: JobManager, registrar: FakeRegistrar, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir))
    status = manager.status("hn-summary")
    assert status.drift is None
    assert len(status.next_runs) == 3

    registrar.deregister("hn-summary")
    status = manager.status("hn-summary")
    assert status.drift is not None and "no trigger is registered" in status.drift
    assert manager.list_jobs()[0].drift == status.drift


def test_status_survives_registrar_errors(
    settings: Settings, store: JobStore, work_dir: Path
) -> None:
    class BrokenQuery(FakeRegistrar):
        def query(self, name: str) -> RegistrationState:
            raise RegistrationError("Error: crontab is not available on this system.")

    manager = make_manager(settings, store, BrokenQuery(settings))
    manager.create(job_fields(work_dir))

    status = manager.status("hn-summary")
    assert status.state is None
    assert status.registrar_error is not None and "not available" in status.registrar_error


def test_logs_tail(manager: JobManager, settings: Settings, work_dir: Path) -> None:
    manager.create(job_fields(work_dir))
    assert manager.logs("hn-summary") is None

    log_dir = settings.logs_dir / "hn-summary"
    log_dir.mkdir(parents=True)
    (log_dir / "20260101-000000.log").write_text("old\n", encoding="utf-8")
    (log_dir / "20260102-000000.log").write_text("one\ntwo\nthree\n", encoding="utf-8")

    assert manager.logs("hn-summary") == "one\ntwo\nthree\n"
    assert manager.logs("hn-summary", tail=2) == "two\nthree"
    with pytest.raises(ValidationError, match="--tail"):
        manager.logs("hn-summary", tail=0)


def test_purge_logs_uses_each_jobs_retention(
    manager: JobManager, settings: Settings, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir, name="short", log_retention_days=1))
    manager.create(job_fields(work_dir, name="long", log_retention_days=30))
    stamp = time.time() - 5 * 86400
    paths = {}
    for job in ("short", "long", "orphan"):
        directory = settings.logs_dir / job
        directory.mkdir(parents=True)
        path = directory / "20260101-000000.log"
        path.write_text("x\n", encoding="utf-8")
        age = stamp if job != "orphan" else time.time() - 40 * 86400
        os.utime(path, (age, age))
        paths[job] = path

    deleted = manager.purge_logs()

    assert sorted(deleted) == sorted([paths["short"], paths["orphan"]])
    assert paths["long"].exists()


def test_purge_logs_explicit_days_and_name(manager: JobManager, settings: Settings, work_dir: Path) -> None:
    manager.create(job_fields(work_dir))
    path = settings.logs_dir / "hn-summary" / "20260101-000000.log"
    path.parent.mkdir(parents=True)
    path.write_text("x\n", encoding="utf-8")
    stamp = time.time() - 3 * 86400
    os.utime(path, (stamp, stamp))

    assert manager.purge_logs(days=7, name="hn-summary") == []
    assert manager.purge_logs(days=2) == [path]


def test_setup_notify_writes_config(manager: JobManager, settings: Settings) -> None:
    config = manager.setup_notify(command="notify-send", args=["promptcron", "{{message}}"])
    assert config.enabled is True
    saved = yaml.safe_load(settings.notification_file.read_text(encoding="utf-8"))
    assert saved == {
        "enabled": True,
        "command": "notify-send",
        "args": ["promptcron", "{{message}}"],
        "notify_on": ["job-failure", "all-failures"],
    }

    disabled = manager.setup_notify(disable=True)
    assert disabled.enabled is False
    assert disabled.command == "notify-send"


def test_setup_notify_errors(manager: JobManager) -> None:
    with pytest.raises(ValidationError, match="not configured"):
        manager.setup_notify(disable=True)
    with pytest.raises(ValidationError, match="requires a command"):
        manager.setup_notify()


def test_test_notify(manager: JobManager, tmp_path: Path) -> None:
    with pytest.raises(ValidationError, match="setup-notify"):
        manager.test_notify()

    out_file = tmp_path / "alert.txt"
    manager.setup_notify(
        command=sys.executable,
        args=["-c", "import sys; open(sys.argv[1], 'w').write(sys.argv[2])", str(out_file), "{{message}}"],
    )
    assert manager.test_notify() is True
    assert "test notification" in out_file.read_text()


def test_purge_logs_skips_foreign_directories(
    manager: JobManager, settings: Settings, work_dir: Path
) -> None:
    manager.create(job_fields(work_dir, log_retention_days=1))
    stamp = time.time() - 5 * 86400
    job_log = settings.logs_dir / "hn-summary" / "20260101-000000.log"
    foreign_log = settings.logs_dir / "old.backup" / "20260101-000000.log"
    for path in (job_log, foreign_log):
        path.parent.mkdir(parents=True)
        path.write_text("x\n", encoding="utf-8")
        os.utime(path, (stamp, stamp))

    assert manager.purge_logs() == [job_log]
    assert foreign_log.exists()

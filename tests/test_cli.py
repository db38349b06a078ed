"""Tests for the renderq command line."""
import asyncio
import os
import signal
import sys

import pytest
from click.testing import CliRunner

from cli import cli, parse_when, serve
from conftest import FakeLauncher
from events import EventBus
from models import JobStatus
from storage import MemoryJobTable, Storage


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "queue.db")


@pytest.fixture
def invoke(db_path):
    runner = CliRunner()

    def _invoke(*args):
        return runner.invoke(cli, ["--db", db_path, *args])

    return _invoke


def _load(db_path, job_id):
    db = Storage(db_path)
    try:
        return db.get(job_id)
    finally:
        db.close()


def test_enqueue_and_list(invoke):
    result = invoke("enqueue", "blender -b a.blend -a", "--id", "a", "--priority", "3")
    assert result.exit_code == 0, result.output
    assert "Job a enqueued (priority=3)" in result.output

    result = invoke("list")
    assert "a | blender -b a.blend -a | status=pending | priority=3" in result.output
    assert "ready" in result.output


def test_enqueue_duplicate_id_fails(invoke):
    invoke("enqueue", "render", "--id", "a")
    result = invoke("enqueue", "render", "--id", "a")
    assert result.exit_code != 0
    assert "already exists" in result.output


def test_enqueue_with_dependencies_and_delay(invoke, db_path):
    invoke("enqueue", "render base", "--id", "base")
    result = invoke("enqueue", "render comp", "--id", "comp", "--depends-on", "base", "--run-at", "+3600")
    assert result.exit_code == 0, result.output

    job = _load(db_path, "comp")
    assert job.dependencies == ("base",)
    assert job.scheduled_time is not None

    listing = invoke("list", "--status", "pending").output
    assert "blocked: scheduled for" in listing


def test_invalid_run_at_is_rejected(invoke):
    result = invoke("enqueue", "render", "--run-at", "tomorrow-ish")
    assert result.exit_code != 0
    assert "Invalid time" in result.output


def test_missing_dependency_is_shown_as_blocked(invoke):
    invoke("enqueue", "render", "--id", "a", "--depends-on", "ghost")
    result = invoke("show", "a")
    assert "Blocked: missing dependency ghost" in result.output


def test_editing_commands(invoke, db_path):
    invoke("enqueue", "render", "--id", "a")
    invoke("enqueue", "render b", "--id", "b")

    assert invoke("priority", "a", "9").exit_code == 0
    assert invoke("depend", "add", "a", "b").exit_code == 0
    assert invoke("schedule", "a", "2030-01-01T00:00:00").exit_code == 0

    job = _load(db_path, "a")
    assert job.priority == 9
    assert job.dependencies == ("b",)
    assert job.scheduled_time.year == 2030

    invoke("depend", "remove", "a", "b")
    invoke("unschedule", "a")
    job = _load(db_path, "a")
    assert job.dependencies == ()
    assert job.scheduled_time is None


def test_commands_on_unknown_job_fail(invoke):
    for args in (("show", "ghost"), ("remove", "ghost"), ("priority", "ghost", "1"), ("reset", "ghost")):
        result = invoke(*args)
        assert result.exit_code != 0
        assert "not found" in result.output


def test_reset_and_rescue(invoke, db_path):
    invoke("enqueue", "render", "--id", "a")
    invoke("enqueue", "render b", "--id", "b")
    db = Storage(db_path)
    db.update("a", {"status": JobStatus.failed, "error": "exit code 2"})
    db.update("b", {"status": JobStatus.running})
    db.close()

    assert invoke("reset", "a").exit_code == 0
    assert _load(db_path, "a").status == JobStatus.pending

    result = invoke("rescue")
    assert "Returned 1 job(s) to pending: b" in result.output
    assert _load(db_path, "b").status == JobStatus.pending


def test_status_summary(invoke):
    assert "No jobs in the system yet." in invoke("status").output
    invoke("enqueue", "render", "--id", "a")
    assert "pending: 1" in invoke("status").output


def test_remove(invoke, db_path):
    invoke("enqueue", "render", "--id", "a")
    assert invoke("remove", "a").exit_code == 0
    assert _load(db_path, "a") is None


def test_config_commands(invoke):
    assert "max_concurrent=1" in invoke("config", "get", "max_concurrent").output
    invoke("config", "set", "max_concurrent", "3")
    assert "max_concurrent=3" in invoke("config", "get", "max_concurrent").output
    assert "max_concurrent=3" in invoke("config", "list").output


def test_parse_when_accepts_offsets_and_iso():
    assert parse_when("2024-05-01T12:00:00").tzinfo is not None
    assert parse_when("+10") > parse_when("+0")


@pytest.mark.parametrize("key, value, message", [
    ("max_concurrent", "many", "Invalid max_concurrent 'many'"),
    ("poll_interval", "soon", "Invalid poll_interval 'soon'"),
    ("max_concurrent", "0", "max_concurrent must be at least 1"),
])
def test_run_rejects_bad_config(invoke, key, value, message):
    invoke("config", "set", key, value)
    result = invoke("run")
    assert result.exit_code == 1
    assert message in result.output
    assert "Scheduler running" not in result.output


def test_run_rejects_bad_option(invoke):
    result = invoke("run", "--max-concurrent", "0")
    assert result.exit_code == 1
    assert "max_concurrent must be at least 1" in result.output


# ---------------- serve ----------------
class FakeWorker(FakeLauncher):
    """Launcher that also terminates, like the real subprocess launcher."""

    def __init__(self, table):
        super().__init__(table)
        self.terminated = []

    async def terminate(self, handle_id):
        self.terminated.append(handle_id)


async def _wait_for(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Timeout waiting for condition")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_serve_requeues_running_jobs_on_stop_event():
    table = MemoryJobTable()
    table.add("render a", job_id="a")
    worker = FakeWorker(table)
    stop_event = asyncio.Event()

    task = asyncio.create_task(serve(table, worker, EventBus(), poll_interval=0.05, stop_event=stop_event))
    await _wait_for(lambda: worker.calls)
    stop_event.set()
    await asyncio.wait_for(task, timeout=2.0)

    assert worker.terminated == ["proc-1"]
    assert table.get("a").status == JobStatus.pending


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == "win32", reason="loop signal handlers are POSIX only")
async def test_serve_shuts_down_on_sigint():
    table = MemoryJobTable()
    table.add("render a", job_id="a")
    worker = FakeWorker(table)

    task = asyncio.create_task(serve(table, worker, EventBus(), poll_interval=0.05))
    await _wait_for(lambda: worker.calls)
    os.kill(os.getpid(), signal.SIGINT)
    await asyncio.wait_for(task, timeout=2.0)

    assert worker.terminated == ["proc-1"]
    assert table.get("a").status == JobStatus.pending

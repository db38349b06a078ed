"""Shared fixtures: in-memory job table and fake worker collaborators."""
import os

# dashboard builds its module-level app at import time
os.environ.setdefault("RENDERQ_DB", ":memory:")

from datetime import datetime, timedelta, timezone

import pytest

from events import EventBus
from models import JobRecord, JobStatus, LaunchError
from storage import MemoryJobTable

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_job(job_id, status=JobStatus.pending, priority=0, created_offset=0, **kwargs):
    """JobRecord created ``created_offset`` seconds after BASE_TIME."""
    return JobRecord(
        id=job_id,
        command=kwargs.pop("command", f"render {job_id}"),
        status=status,
        priority=priority,
        created_at=BASE_TIME + timedelta(seconds=created_offset),
        **kwargs,
    )


class FakeLauncher:
    """Records launches; hands out handle ids in order or raises when told to."""

    def __init__(self, table=None, handle_ids=None):
        self.table = table
        self.handle_ids = list(handle_ids or [])
        self.calls = []
        self.status_at_launch = []
        self.fail_with = None

    async def launch(self, command):
        self.calls.append(command)
        if self.table is not None:
            job = next(j for j in self.table.snapshot() if j.command == command)
            self.status_at_launch.append(job.status)
        if self.fail_with is not None:
            raise self.fail_with
        if self.handle_ids:
            return self.handle_ids.pop(0)
        return f"proc-{len(self.calls)}"


class FakeTerminator:
    def __init__(self):
        self.calls = []
        self.fail_for = set()

    async def terminate(self, handle_id):
        self.calls.append(handle_id)
        if handle_id in self.fail_for:
            raise RuntimeError(f"cannot kill {handle_id}")


@pytest.fixture
def table():
    return MemoryJobTable()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def launcher(table):
    return FakeLauncher(table)


@pytest.fixture
def terminator():
    return FakeTerminator()


@pytest.fixture
def launch_error():
    return LaunchError("Command failed")

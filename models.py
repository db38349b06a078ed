# models.py
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple


def utc_now():
    return datetime.now(timezone.utc)


def as_utc(value):
    """Naive datetimes are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class JobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = (JobStatus.completed, JobStatus.failed)


class SchedulerError(Exception):
    """Base class for scheduler errors."""


class LaunchError(SchedulerError):
    """Raised by a launcher when a worker process cannot be started."""


@dataclass(frozen=True)
class JobRecord:
    id: str
    command: str
    status: JobStatus = JobStatus.pending
    priority: int = 0
    created_at: datetime = field(default_factory=utc_now)
    scheduled_time: Optional[datetime] = None
    dependencies: Tuple[str, ...] = ()
    progress: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def merged(self, patch):
        """Return a copy with *patch* applied.

        ``progress`` is merged into the existing mapping instead of replacing
        it; a ``None`` progress clears it.
        """
        changes = dict(patch)
        if "status" in changes:
            changes["status"] = JobStatus(changes["status"])
        if "dependencies" in changes:
            changes["dependencies"] = tuple(changes["dependencies"])
        if "progress" in changes:
            incoming = changes["progress"]
            changes["progress"] = {} if incoming is None else {**self.progress, **incoming}
        return replace(self, **changes)

    def to_dict(self):
        return {
            "id": self.id,
            "command": self.command,
            "status": self.status.value,
            "priority": self.priority,
            "created_at": self.created_at.isoformat(),
            "scheduled_time": self.scheduled_time.isoformat() if self.scheduled_time else None,
            "dependencies": list(self.dependencies),
            "progress": dict(self.progress),
            "error": self.error,
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

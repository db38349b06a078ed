# storage.py
import json
import sqlite3
import threading
import uuid
from datetime import datetime

from models import JobRecord, JobStatus, TERMINAL_STATUSES, utc_now

DEFAULT_CONFIG = {
    "max_concurrent": "1",
    "poll_interval": "1.0",
    "terminate_grace_seconds": "2.0",
}


def _stamp(record, patch, now):
    """Add lifecycle timestamps implied by a status change in *patch*."""
    patch = dict(patch)
    patch.setdefault("updated_at", now)
    status = patch.get("status")
    if status is not None and JobStatus(status) != record.status:
        if JobStatus(status) == JobStatus.running:
            patch.setdefault("started_at", now)
            patch.setdefault("finished_at", None)
        elif JobStatus(status) in TERMINAL_STATUSES:
            patch.setdefault("finished_at", now)
    return patch


class JobTable:
    """Job table contract plus the queue editing operations built on it.

    Subclasses provide ``snapshot``, ``get``, ``update``, ``_insert`` and
    ``_delete``. ``update`` on an unknown id does nothing.
    """

    def snapshot(self):
        raise NotImplementedError

    def get(self, job_id):
        raise NotImplementedError

    def update(self, job_id, patch):
        raise NotImplementedError

    def _insert(self, record):
        raise NotImplementedError

    def _delete(self, job_id):
        raise NotImplementedError

    # ---------------- Queue editing ----------------
    def add(self, command, priority=0, scheduled_time=None, dependencies=(), job_id=None):
        now = utc_now()
        record = JobRecord(
            id=job_id or uuid.uuid4().hex,
            command=command,
            priority=priority,
            created_at=now,
            updated_at=now,
            scheduled_time=scheduled_time,
            dependencies=tuple(dependencies),
        )
        self._insert(record)
        return record

    def remove(self, job_id):
        return self._delete(job_id)

    def set_priority(self, job_id, priority):
        self.update(job_id, {"priority": int(priority)})

    def add_dependency(self, job_id, dependency_id):
        job = self.get(job_id)
        if job is None or dependency_id in job.dependencies:
            return
        self.update(job_id, {"dependencies": job.dependencies + (dependency_id,)})

    def remove_dependency(self, job_id, dependency_id):
        job = self.get(job_id)
        if job is None:
            return
        self.update(job_id, {"dependencies": [d for d in job.dependencies if d != dependency_id]})

    def schedule(self, job_id, when):
        self.update(job_id, {"scheduled_time": when})

    def cancel_schedule(self, job_id):
        self.update(job_id, {"scheduled_time": None})

    def reset(self, job_id):
        self.update(job_id, {
            "status": JobStatus.pending,
            "progress": None,
            "error": None,
            "started_at": None,
            "finished_at": None,
        })

    def reset_all(self):
        for job in self.snapshot():
            self.reset(job.id)


class MemoryJobTable(JobTable):
    """In-process job table; records kept in insertion order."""

    def __init__(self, records=()):
        self._lock = threading.Lock()
        self._records = list(records)

    def snapshot(self):
        with self._lock:
            return list(self._records)

    def get(self, job_id):
        with self._lock:
            for record in self._records:
                if record.id == job_id:
                    return record
        return None

    def update(self, job_id, patch):
        with self._lock:
            for i, record in enumerate(self._records):
                if record.id == job_id:
                    self._records[i] = record.merged(_stamp(record, patch, utc_now()))
                    return

    def _insert(self, record):
        with self._lock:
            if any(r.id == record.id for r in self._records):
                raise ValueError(f"Job {record.id} already exists")
            self._records.append(record)

    def _delete(self, job_id):
        with self._lock:
            before = len(self._records)
            self._records = [r for r in self._records if r.id != job_id]
            return len(self._records) != before


def _to_iso(value):
    return value.isoformat() if value is not None else None


def _from_iso(value):
    return datetime.fromisoformat(value) if value else None


class Storage(JobTable):
    """SQLite-backed job table and runtime config."""

    def __init__(self, db_path="queue.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        # Lets `renderq run` and the editing commands share the file
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA synchronous=NORMAL;")

        self._init_schema()

    def _init_schema(self):
        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS jobs (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            command TEXT NOT NULL,
            status TEXT NOT NULL,
            priority INTEGER NOT NULL DEFAULT 0,
            scheduled_time TEXT,
            dependencies TEXT NOT NULL DEFAULT '[]',
            progress TEXT NOT NULL DEFAULT '{}',
            error TEXT,
            started_at TEXT,
            finished_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.execute("""
        CREATE TABLE IF NOT EXISTS config (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """)

        self.conn.commit()

    def close(self):
        self.conn.close()

    @staticmethod
    def _row_to_record(row):
        return JobRecord(
            id=row["id"],
            command=row["command"],
            status=JobStatus(row["status"]),
            priority=row["priority"],
            created_at=_from_iso(row["created_at"]),
            scheduled_time=_from_iso(row["scheduled_time"]),
            dependencies=tuple(json.loads(row["dependencies"] or "[]")),
            progress=json.loads(row["progress"] or "{}"),
            error=row["error"],
            started_at=_from_iso(row["started_at"]),
            finished_at=_from_iso(row["finished_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    def _write(self, record):
        self.conn.execute("""
            UPDATE jobs
            SET command=?, status=?, priority=?, scheduled_time=?, dependencies=?, progress=?,
                error=?, started_at=?, finished_at=?, updated_at=?
            WHERE id=?
        """, (record.command, record.status.value, record.priority, _to_iso(record.scheduled_time),
              json.dumps(list(record.dependencies)), json.dumps(record.progress), record.error,
              _to_iso(record.started_at), _to_iso(record.finished_at), _to_iso(record.updated_at),
              record.id))

    # ---------------- Job table contract ----------------
    def snapshot(self):
        with self._lock:
            rows = self.conn.execute("SELECT * FROM jobs ORDER BY seq").fetchall()
        return [self._row_to_record(r) for r in rows]

    def get(self, job_id):
        with self._lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def update(self, job_id, patch):
        with self._lock:
            # Read-merge-write in one write transaction so other processes
            # sharing the file never observe a half-applied patch
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                row = self.conn.execute("SELECT * FROM jobs WHERE id=?", (job_id,)).fetchone()
                if row is not None:
                    record = self._row_to_record(row)
                    self._write(record.merged(_stamp(record, patch, utc_now())))
            except Exception:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def _insert(self, record):
        with self._lock:
            try:
                self.conn.execute("""
                    INSERT INTO jobs (id, command, status, priority, scheduled_time, dependencies, progress,
                                      error, started_at, finished_at, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (record.id, record.command, record.status.value, record.priority,
                      _to_iso(record.scheduled_time), json.dumps(list(record.dependencies)),
                      json.dumps(record.progress), record.error, _to_iso(record.started_at),
                      _to_iso(record.finished_at), _to_iso(record.created_at), _to_iso(record.updated_at)))
                self.conn.commit()
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                raise ValueError(f"Job {record.id} already exists") from e

    def _delete(self, job_id):
        with self._lock:
            deleted = self.conn.execute("DELETE FROM jobs WHERE id=?", (job_id,)).rowcount
            self.conn.commit()
        return deleted == 1

    # ---------------- Config helpers ----------------
    def get_config(self, key, default=None):
        with self._lock:
            row = self.conn.execute("SELECT value FROM config WHERE key=?", (key,)).fetchone()
        if row:
            return row["value"]
        return default if default is not None else DEFAULT_CONFIG.get(key)

    def set_config(self, key, value):
        now = utc_now().isoformat()
        with self._lock:
            self.conn.execute("""
                INSERT INTO config (key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
            """, (key, str(value), now))
            self.conn.commit()

    def list_config(self):
        with self._lock:
            rows = self.conn.execute("SELECT key, value, updated_at FROM config ORDER BY key").fetchall()
        return [(r["key"], r["value"], r["updated_at"]) for r in rows]

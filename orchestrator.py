# orchestrator.py
import logging
from typing import Dict, List

from events import COMPLETE, ERROR, PROGRESS, Channel
from models import JobStatus

logger = logging.getLogger(__name__)


class ProcessOrchestrator:
    """Launches job workers and follows them until they settle.

    Owns the running-handle map (``job_id -> handle_id``), the only record of
    which jobs currently occupy a concurrency slot. The job table is only
    ever touched through ``update``.
    """

    def __init__(self, table, launcher, terminator, events):
        self.table = table
        self.launcher = launcher
        self.terminator = terminator
        self.events = events
        self._running: Dict[str, str] = {}
        self._subscriptions: Dict[str, List] = {}

    @property
    def running(self):
        """Read-only copy of the running-handle map."""
        return dict(self._running)

    @property
    def running_count(self) -> int:
        return len(self._running)

    def is_running(self, job_id) -> bool:
        return job_id in self._running

    def _log_transition(self, job_id, old_state, new_state, extra=""):
        logger.info("Job %s: %s → %s %s", job_id, old_state, new_state, extra)

    # ---------------- Launch ----------------
    async def start(self, job):
        # Marked running before the launch so a crash mid-launch leaves a visible row
        self.table.update(job.id, {"status": JobStatus.running, "error": None})
        self._log_transition(job.id, job.status.value, "running")

        try:
            handle_id = str(await self.launcher.launch(job.command))
        except Exception as e:
            self.table.update(job.id, {"status": JobStatus.failed, "error": f"launch failed: {e}"})
            self._log_transition(job.id, "running", "failed", f"(launch failed: {e})")
            return None

        self._running[job.id] = handle_id
        self._subscriptions[job.id] = [
            self.events.subscribe(Channel(PROGRESS, handle_id), lambda evt: self._on_progress(job.id, handle_id, evt)),
            self.events.subscribe(Channel(COMPLETE, handle_id), lambda evt: self._on_complete(job.id, handle_id, evt)),
            self.events.subscribe(Channel(ERROR, handle_id), lambda evt: self._on_error(job.id, handle_id, evt)),
        ]
        logger.info("Job %s launched as %s (%d running)", job.id, handle_id, len(self._running))
        return handle_id

    # ---------------- Event handlers ----------------
    def _owns(self, job_id, handle_id):
        return self._running.get(job_id) == handle_id

    def _on_progress(self, job_id, handle_id, event):
        if not self._owns(job_id, handle_id) or not event.payload:
            return
        self.table.update(job_id, {"progress": dict(event.payload)})

    def _on_complete(self, job_id, handle_id, event):
        if not self._owns(job_id, handle_id):
            return
        if event.exit_code == 0:
            self._settle(job_id, {"status": JobStatus.completed})
            self._log_transition(job_id, "running", "completed", "(exit_code=0)")
        else:
            self._settle(job_id, {"status": JobStatus.failed, "error": f"exit code {event.exit_code}"})
            self._log_transition(job_id, "running", "failed", f"(exit_code={event.exit_code})")

    def _on_error(self, job_id, handle_id, event):
        if not self._owns(job_id, handle_id):
            return
        self._settle(job_id, {"status": JobStatus.failed, "error": str(event.message)})
        logger.warning("Job %s worker %s reported: %s", job_id, handle_id, event.message)
        self._log_transition(job_id, "running", "failed", "(worker error)")

    def _settle(self, job_id, patch):
        # Handle is kept if the write fails, so table and running map still agree
        self.table.update(job_id, patch)
        self._release(job_id)

    def _release(self, job_id):
        """Drop the running handle and every subscription held for it."""
        handle_id = self._running.pop(job_id, None)
        for sub in self._subscriptions.pop(job_id, []):
            sub.cancel()
        return handle_id

    def clear(self):
        for job_id in list(self._running):
            self._release(job_id)

    # ---------------- Stop ----------------
    async def stop(self, job_id):
        """Terminate a tracked job and requeue it as pending; untracked ids are ignored."""
        handle_id = self._running.get(job_id)
        if handle_id is None:
            return False
        # Exit events caused by the termination itself must not settle the job
        for sub in self._subscriptions.pop(job_id, []):
            sub.cancel()
        try:
            await self.terminator.terminate(handle_id)
        finally:
            self._settle(job_id, {"status": JobStatus.pending})
            self._log_transition(job_id, "running", "pending", f"(stopped {handle_id})")
        return True

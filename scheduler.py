# scheduler.py
import asyncio
import logging
from typing import Optional

from models import utc_now
from orchestrator import ProcessOrchestrator
from selector import select_next

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Bound on how many jobs may hold a running handle at once."""

    def __init__(self, max_concurrent: int = 1) -> None:
        self.max_concurrent = 1
        self.set_max_concurrent(max_concurrent)

    def set_max_concurrent(self, n: int) -> None:
        n = int(n)
        if n < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {n}")
        self.max_concurrent = n

    def allows(self, running_count: int) -> bool:
        # Lowering the bound never preempts; it only blocks further launches
        return running_count < self.max_concurrent


class Scheduler:
    """Cooperative polling loop that feeds eligible jobs to the orchestrator.

    One scheduler instance owns its gate and orchestrator; build one per job
    table at startup and drive it with ``start()`` / ``stop()`` from a running
    event loop. At most one job is launched per tick.
    """

    def __init__(
        self,
        table,
        launcher,
        events,
        terminator=None,
        max_concurrent: int = 1,
        poll_interval: float = 1.0,
        clock=utc_now,
    ) -> None:
        self.table = table
        self.gate = ConcurrencyGate(max_concurrent)
        self.orchestrator = ProcessOrchestrator(
            table, launcher, terminator if terminator is not None else launcher, events
        )
        self.poll_interval = poll_interval
        self.clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    @property
    def active(self) -> bool:
        return self._task is not None

    @property
    def state(self) -> str:
        return "active" if self.active else "idle"

    def set_max_concurrent(self, n: int) -> None:
        self.gate.set_max_concurrent(n)
        logger.info("max_concurrent set to %d", self.gate.max_concurrent)

    # ---------------- Lifecycle ----------------
    def start(self) -> None:
        if self._task is not None:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._stopping))
        logger.info("Scheduler started (poll_interval=%ss, max_concurrent=%d)",
                    self.poll_interval, self.gate.max_concurrent)

    async def stop(self) -> None:
        """Halt polling, terminate every running worker and requeue its job."""
        task, self._task = self._task, None
        if task is not None:
            # A tick in progress finishes its launch before the loop exits
            self._stopping.set()
            await task

        for job_id in list(self.orchestrator.running):
            try:
                await self.orchestrator.stop(job_id)
            except Exception:
                logger.exception("Failed to stop job %s; continuing shutdown", job_id)
        self.orchestrator.clear()
        logger.info("Scheduler stopped")

    async def _run(self, stopping: asyncio.Event) -> None:
        while not stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduling tick failed")
            try:
                await asyncio.wait_for(stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ---------------- Tick ----------------
    async def tick(self):
        """Run one scheduling decision; returns the launched job, if any."""
        if not self.gate.allows(self.orchestrator.running_count):
            return None
        running_ids = set(self.orchestrator.running)
        job = select_next(self.table.snapshot(), running_ids, self.clock())
        if job is None:
            return None
        await self.orchestrator.start(job)
        return job

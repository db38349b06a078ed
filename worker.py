# worker.py
import asyncio
import logging
import os
import re
import signal
import time

from events import CompleteEvent, ErrorEvent, ProgressEvent
from models import LaunchError
from progress import frame_range, is_critical_error, parse_line, unique_output_command

logger = logging.getLogger(__name__)

CHUNK_SIZE = 4096
# Longest line kept whole; anything longer is handed on in pieces
MAX_LINE = 64 * 1024
LINE_BREAK = re.compile(rb"\r\n|\r|\n")


def _send(proc, sig):
    if os.name == "posix":
        os.killpg(proc.pid, sig)
    else:
        proc.send_signal(sig)


async def read_lines(stream, max_line=MAX_LINE):
    """Yield decoded lines from *stream*, splitting on ``\\r`` as well as ``\\n``.

    Renderers redraw progress with bare carriage returns, and a line may be
    arbitrarily long, so this reads fixed-size chunks instead of relying on
    ``StreamReader.readline``.
    """
    buffer = b""
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        buffer += chunk
        parts = LINE_BREAK.split(buffer)
        # Last piece has no line break yet
        buffer = parts.pop()
        for part in parts:
            yield part.decode(errors="replace")
        while len(buffer) > max_line:
            yield buffer[:max_line].decode(errors="replace")
            buffer = buffer[max_line:]
    if buffer:
        yield buffer.decode(errors="replace")


class SubprocessLauncher:
    """Runs job commands as shell subprocesses and reports on them through *events*.

    Serves as both launcher and terminator for the orchestrator. The handle id
    of a worker is its pid as a string. Every worker that is not terminated on
    request ends with exactly one complete or error event.
    """

    def __init__(self, events, grace_seconds=2.0):
        self.events = events
        self.grace_seconds = grace_seconds
        self._procs = {}
        self._watchers = {}
        self._terminated = set()
        self._reapers = set()

    @property
    def handles(self):
        return list(self._procs)

    async def launch(self, command):
        final_command = unique_output_command(command)
        if final_command != command:
            logger.info("Output exists, rendering with %r instead", final_command)
        try:
            proc = await asyncio.create_subprocess_shell(
                final_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                # Own process group, so the whole shell pipeline can be signalled
                start_new_session=(os.name == "posix"),
            )
        except (OSError, ValueError) as e:
            raise LaunchError(f"could not start {final_command!r}: {e}") from e

        handle_id = str(proc.pid)
        self._procs[handle_id] = proc
        # The watcher first runs after the caller has subscribed to this handle
        self._watchers[handle_id] = asyncio.create_task(
            self._watch(handle_id, proc, frame_range(final_command))
        )
        logger.debug("Spawned %s for %r", handle_id, final_command)
        return handle_id

    async def _watch(self, handle_id, proc, frames):
        start_time = time.monotonic()
        self.events.publish(ProgressEvent(handle_id, {
            "current_frame": frames[0],
            "total_frames": frames[1],
            "progress": 0.0,
        }))
        try:
            readers = [
                asyncio.create_task(self._read_stdout(handle_id, proc.stdout, frames)),
                asyncio.create_task(self._read_stderr(handle_id, proc.stderr)),
            ]
            try:
                await asyncio.gather(*readers)
            except Exception as e:
                logger.exception("Lost output of worker %s", handle_id)
                for reader in readers:
                    reader.cancel()
                if handle_id not in self._terminated:
                    self._terminated.add(handle_id)
                    self.events.publish(ErrorEvent(handle_id, f"output reader failed: {e}"))
                await self._signal(handle_id, proc)
            exit_code = await proc.wait()
        finally:
            self._procs.pop(handle_id, None)
            self._watchers.pop(handle_id, None)

        duration = time.monotonic() - start_time
        if handle_id in self._terminated:
            self._terminated.discard(handle_id)
            logger.info("Worker %s stopped (exit_code=%s, duration=%.3fs)", handle_id, exit_code, duration)
            return
        logger.info("Worker %s exited (exit_code=%s, duration=%.3fs)", handle_id, exit_code, duration)
        self.events.publish(CompleteEvent(handle_id, exit_code))

    async def _read_stdout(self, handle_id, stream, frames):
        async for line in read_lines(stream):
            line = line.rstrip()
            if not line:
                continue
            patch = parse_line(line, frames)
            if patch:
                self.events.publish(ProgressEvent(handle_id, patch))
            if is_critical_error(line):
                await self._fail(handle_id, line)
            elif "error" in line.lower():
                logger.warning("Worker %s: %s", handle_id, line)

    async def _read_stderr(self, handle_id, stream):
        async for line in read_lines(stream):
            line = line.rstrip()
            if not line:
                continue
            if is_critical_error(line):
                await self._fail(handle_id, line)
            else:
                logger.debug("Worker %s stderr: %s", handle_id, line)

    async def _fail(self, handle_id, message):
        if handle_id in self._terminated:
            return
        logger.error("Worker %s hit a critical error: %s", handle_id, message)
        self.events.publish(ErrorEvent(handle_id, message))
        # The job is settled; don't leave the process behind
        self._terminated.add(handle_id)
        task = asyncio.create_task(self._kill(handle_id))
        self._reapers.add(task)
        task.add_done_callback(self._reapers.discard)

    async def _kill(self, handle_id):
        proc = self._procs.get(handle_id)
        if proc is None or proc.returncode is not None:
            return
        await self._signal(handle_id, proc)

    async def terminate(self, handle_id):
        proc = self._procs.get(handle_id)
        if proc is None or proc.returncode is not None:
            return
        self._terminated.add(handle_id)
        await self._signal(handle_id, proc)

    async def _signal(self, handle_id, proc):
        """SIGTERM, then SIGKILL once the grace period runs out."""
        if proc.returncode is not None:
            return
        try:
            _send(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=self.grace_seconds)
            except asyncio.TimeoutError:
                logger.info("Force killing worker %s", handle_id)
                _send(proc, signal.SIGKILL if os.name == "posix" else signal.SIGTERM)
                await proc.wait()
        except ProcessLookupError:
            # Exited between the check and the signal
            pass

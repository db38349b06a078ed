# progress.py
"""Render command flags and worker output parsing."""
import os
import re

FRAME_RE = re.compile(r"Fra:(\d+)")
MEMORY_RE = re.compile(r"Mem:([\d.]+)([MG]).*Peak\s+([\d.]+)([MG])")
SAMPLE_RE = re.compile(r"Sample (\d+)/(\d+)")
COMPOSITING_RE = re.compile(r"Compositing \| (.*?)(?=\||$)")

SINGLE_FRAME_FLAG = re.compile(r"-f\s+(\d+)")
START_FRAME_FLAG = re.compile(r"-s\s+(\d+)")
END_FRAME_FLAG = re.compile(r"-e\s+(\d+)")
OUTPUT_FLAG = re.compile(r'-o\s+("[^"]*"|\S+)')
FORMAT_FLAG = re.compile(r"-F\s+(\S+)")

FORMAT_EXTENSIONS = {"JPEG": ".jpg", "OPEN_EXR": ".exr", "TIFF": ".tif"}

CRITICAL_ERRORS = (
    "no camera found in scene",
    "process exited unexpectedly",
    "failed to start blender",
    "invalid command",
    "segmentation fault",
    "access violation",
    "fatal error",
    "exception",
    "terminated unexpectedly",
    "possible crash",
)


def frame_range(command):
    """Frame range requested by a render command; ``(1, 1)`` when unspecified."""
    single = SINGLE_FRAME_FLAG.search(command)
    if single:
        frame = int(single.group(1))
        return frame, frame
    start = START_FRAME_FLAG.search(command)
    end = END_FRAME_FLAG.search(command)
    if not start or not end:
        return 1, 1
    return int(start.group(1)), int(end.group(1))


def output_extension(command):
    """File extension Blender uses for the command's ``-F`` format (PNG by default)."""
    match = FORMAT_FLAG.search(command)
    if not match:
        return ".png"
    fmt = match.group(1).upper()
    return FORMAT_EXTENSIONS.get(fmt, "." + fmt.lower())


def unique_output_command(command, exists=os.path.exists):
    """Rewrite the ``-o`` path of *command* so it does not overwrite an earlier render.

    The first frame file the command would write is predicted from ``-o``,
    ``-f``/``-s`` and ``-F``. If that file exists, the output base gets an
    ``_N`` suffix, N being the lowest number whose frame file is free.
    Commands without an output path or start frame are returned unchanged.
    """
    output = OUTPUT_FLAG.search(command)
    frame = SINGLE_FRAME_FLAG.search(command) or START_FRAME_FLAG.search(command)
    if not output or not frame:
        return command

    padded = f"{int(frame.group(1)):04d}"
    extension = output_extension(command)
    base = output.group(1).replace('"', "")
    if not exists(f"{base}{padded}{extension}"):
        return command

    separator = "" if base.endswith(("_", os.sep)) else "_"
    counter = 1
    while exists(f"{base}{separator}{counter}{padded}{extension}"):
        counter += 1
    return command.replace(output.group(0), f'-o "{base}{separator}{counter}"', 1)


def _to_mb(value, unit):
    value = float(value)
    return value * 1024 if unit == "G" else value


def parse_line(line, frames=(1, 1)):
    """Return the progress fields found in one line of worker output."""
    patch = {}
    start, end = frames

    frame = FRAME_RE.search(line)
    if frame:
        current = int(frame.group(1))
        if start == end:
            percent = 100.0 if current >= start else 0.0
        else:
            percent = (current - start) / (end - start) * 100.0
        patch.update(current_frame=current, total_frames=end, progress=round(max(0.0, min(100.0, percent)), 2))

    memory = MEMORY_RE.search(line)
    if memory:
        patch.update(
            memory_mb=_to_mb(memory.group(1), memory.group(2)),
            peak_memory_mb=_to_mb(memory.group(3), memory.group(4)),
        )

    sample = SAMPLE_RE.search(line)
    if sample:
        patch.update(current_sample=int(sample.group(1)), total_samples=int(sample.group(2)))

    if "Compositing" in line:
        patch["in_compositing"] = True
        comp = COMPOSITING_RE.search(line)
        if comp:
            patch["compositing_operation"] = comp.group(1).strip()

    return patch


def is_critical_error(text):
    lowered = text.lower()
    return any(marker in lowered for marker in CRITICAL_ERRORS)

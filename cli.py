# cli.py
import asyncio
import logging
import signal
from datetime import datetime, timedelta

import click

from events import EventBus
from models import JobStatus, as_utc, utc_now
from scheduler import Scheduler
from selector import blocked_reason
from storage import Storage
from worker import SubprocessLauncher

logger = logging.getLogger(__name__)


def parse_when(value):
    """ISO timestamp (naive means UTC) or ``+N`` seconds from now."""
    if value.startswith("+"):
        return utc_now() + timedelta(seconds=int(value[1:]))
    return as_utc(datetime.fromisoformat(value))


class WhenType(click.ParamType):
    name = "when"

    def convert(self, value, param, ctx):
        if isinstance(value, datetime):
            return value
        try:
            return parse_when(value)
        except ValueError as e:
            self.fail(f"Invalid time {value!r} ({e})", param, ctx)


WHEN = WhenType()


def _fmt_time(value):
    return as_utc(value).isoformat() if value else "-"


def _fmt_progress(progress):
    pct = progress.get("progress")
    return f"{pct:.1f}%" if isinstance(pct, (int, float)) else "-"


@click.group()
@click.option("--db", default="queue.db", envvar="RENDERQ_DB", show_default=True, help="Queue database file")
@click.option("--log-level", default="INFO", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]))
@click.pass_context
def cli(ctx, db, log_level):
    """renderq - priority render queue with dependencies and scheduling"""
    logging.basicConfig(level=log_level, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    ctx.obj = Storage(db)
    ctx.call_on_close(ctx.obj.close)


# ---------------- Enqueue ----------------
@cli.command()
@click.argument("command")
@click.option("--id", "job_id", default=None, help="Job ID (random if omitted)")
@click.option("--priority", default=0, type=int, help="Job priority (higher runs first)")
@click.option("--run-at", default=None, type=WHEN, help="ISO timestamp (UTC) or +seconds delay")
@click.option("--depends-on", multiple=True, help="Job ID that must complete first (repeatable)")
@click.pass_obj
def enqueue(db, command, job_id, priority, run_at, depends_on):
    """Add a new job to the queue"""
    try:
        job = db.add(command, priority=priority, scheduled_time=run_at, dependencies=depends_on, job_id=job_id)
    except ValueError as e:
        raise click.ClickException(str(e))
    extra = f", run_at={_fmt_time(run_at)}" if run_at else ""
    deps = f", depends_on={','.join(depends_on)}" if depends_on else ""
    click.echo(f"✅ Job {job.id} enqueued (priority={priority}{extra}{deps}).")


# ---------------- List Jobs ----------------
@cli.command(name="list")
@click.option("--status", default=None, type=click.Choice([s.value for s in JobStatus]), help="Filter jobs by status")
@click.pass_obj
def list_jobs(db, status):
    """List jobs in the queue"""
    snapshot = db.snapshot()
    now = utc_now()
    rows = [job for job in snapshot if status is None or job.status.value == status]
    if not rows:
        click.echo("No jobs found.")
        return

    for job in rows:
        line = (f"{job.id} | {job.command} | status={job.status.value} | priority={job.priority} "
                f"| run_at={_fmt_time(job.scheduled_time)} | progress={_fmt_progress(job.progress)}")
        if job.status == JobStatus.pending:
            reason = blocked_reason(job, snapshot, set(), now)
            line += f" | {'blocked: ' + reason if reason else 'ready'}"
        click.echo(line)


# ---------------- Status ----------------
@cli.command()
@click.pass_obj
def status(db):
    """Show summary of job statuses"""
    snapshot = db.snapshot()
    if not snapshot:
        click.echo("No jobs in the system yet.")
        return

    click.echo("📊 Job Status Summary:")
    for s in JobStatus:
        count = sum(1 for job in snapshot if job.status == s)
        if count:
            click.echo(f"  {s.value}: {count}")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def show(db, job_id):
    """Show details of a single job"""
    job = db.get(job_id)
    if job is None:
        raise click.ClickException(f"Job {job_id} not found.")

    click.echo(f"🔎 Job {job.id}")
    click.echo(f"  Command: {job.command}")
    click.echo(f"  Status: {job.status.value}")
    click.echo(f"  Priority: {job.priority}")
    click.echo(f"  Run at: {_fmt_time(job.scheduled_time)}")
    click.echo(f"  Depends on: {', '.join(job.dependencies) or '-'}")
    click.echo(f"  Created: {_fmt_time(job.created_at)}")
    click.echo(f"  Started: {_fmt_time(job.started_at)}")
    click.echo(f"  Finished: {_fmt_time(job.finished_at)}")
    click.echo(f"  Error: {job.error or '-'}")
    if job.status == JobStatus.pending:
        reason = blocked_reason(job, db.snapshot(), set(), utc_now())
        click.echo(f"  Blocked: {reason or 'no, ready to run'}")
    if job.progress:
        click.echo("  Progress:")
        for key, value in job.progress.items():
            click.echo(f"    {key}: {value}")


# ---------------- Queue editing ----------------
def _require(db, job_id):
    if db.get(job_id) is None:
        raise click.ClickException(f"Job {job_id} not found.")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def remove(db, job_id):
    """Remove a job from the queue"""
    if not db.remove(job_id):
        raise click.ClickException(f"Job {job_id} not found.")
    click.echo(f"🗑 Job {job_id} removed.")


@cli.command()
@click.argument("job_id")
@click.argument("value", type=int)
@click.pass_obj
def priority(db, job_id, value):
    """Change a job's priority"""
    _require(db, job_id)
    db.set_priority(job_id, value)
    click.echo(f"Job {job_id} priority set to {value}.")


@cli.command()
@click.argument("job_id")
@click.argument("when", type=WHEN)
@click.pass_obj
def schedule(db, job_id, when):
    """Hold a job until WHEN (ISO timestamp or +seconds)"""
    _require(db, job_id)
    db.schedule(job_id, when)
    click.echo(f"⏰ Job {job_id} scheduled for {_fmt_time(when)}.")


@cli.command()
@click.argument("job_id")
@click.pass_obj
def unschedule(db, job_id):
    """Clear a job's scheduled time"""
    _require(db, job_id)
    db.cancel_schedule(job_id)
    click.echo(f"Job {job_id} no longer scheduled.")


@cli.command()
@click.argument("job_id", required=False)
@click.option("--all", "reset_all", is_flag=True, help="Reset every job")
@click.pass_obj
def reset(db, job_id, reset_all):
    """Move a job back to pending, clearing progress and errors"""
    if reset_all:
        db.reset_all()
        click.echo("♻️ All jobs moved back to pending.")
        return
    if job_id is None:
        raise click.UsageError("Give a JOB_ID or --all.")
    _require(db, job_id)
    db.reset(job_id)
    click.echo(f"♻️ Job {job_id} moved back to pending.")


@cli.group()
def depend():
    """Manage job dependencies"""
    pass


@depend.command("add")
@click.argument("job_id")
@click.argument("dependency_id")
@click.pass_obj
def depend_add(db, job_id, dependency_id):
    """JOB_ID waits for DEPENDENCY_ID to complete"""
    _require(db, job_id)
    db.add_dependency(job_id, dependency_id)
    click.echo(f"Job {job_id} now depends on {dependency_id}.")


@depend.command("remove")
@click.argument("job_id")
@click.argument("dependency_id")
@click.pass_obj
def depend_remove(db, job_id, dependency_id):
    """Drop a dependency"""
    _require(db, job_id)
    db.remove_dependency(job_id, dependency_id)
    click.echo(f"Job {job_id} no longer depends on {dependency_id}.")


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration for the scheduler"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(db, key, value):
    """Set a config key to a value"""
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.pass_obj
def config_get(db, key):
    """Get a config key"""
    value = db.get_config(key)
    if value is None:
        click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(db):
    """List all config keys"""
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for key, value, updated_at in rows:
        click.echo(f"{key}={value} (updated_at={updated_at})")


# ---------------- Rescue ----------------
@cli.command()
@click.pass_obj
def rescue(db):
    """Return jobs left running by a scheduler that died to pending"""
    stuck = [job.id for job in db.snapshot() if job.status == JobStatus.running]
    if not stuck:
        click.echo("No stuck jobs found.")
        return
    for job_id in stuck:
        db.update(job_id, {"status": JobStatus.pending})
    click.echo(f"🔧 Returned {len(stuck)} job(s) to pending: {', '.join(stuck)}")


# ---------------- Scheduler ----------------
def _install_stop_handlers(loop, stop_event):
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows loops lack signal handlers; Ctrl+C arrives as KeyboardInterrupt
            logger.debug("No loop signal handler for %s", sig)
            continue
        installed.append(sig)
    return installed


async def serve(db, launcher, events, max_concurrent=1, poll_interval=1.0, stop_event=None):
    """Run a scheduler over *db* until SIGINT/SIGTERM or *stop_event*, then shut it down."""
    loop = asyncio.get_running_loop()
    if stop_event is None:
        stop_event = asyncio.Event()
    installed = _install_stop_handlers(loop, stop_event)
    scheduler = Scheduler(db, launcher, events, max_concurrent=max_concurrent, poll_interval=poll_interval)
    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()
        for sig in installed:
            loop.remove_signal_handler(sig)


def _setting(db, key, cast, value=None):
    raw = db.get_config(key) if value is None else value
    try:
        return cast(raw)
    except (TypeError, ValueError):
        raise click.ClickException(f"Invalid {key} {raw!r}; fix it with: renderq config set {key} <number>")


@cli.command()
@click.option("--max-concurrent", default=None, type=int, help="Concurrent workers (uses config if set)")
@click.option("--poll-interval", default=None, type=float, help="Seconds between scheduling ticks (uses config if set)")
@click.pass_obj
def run(db, max_concurrent, poll_interval):
    """Run the scheduler until Ctrl+C"""
    max_concurrent = _setting(db, "max_concurrent", int, max_concurrent)
    poll_interval = _setting(db, "poll_interval", float, poll_interval)
    grace_seconds = _setting(db, "terminate_grace_seconds", float)
    if max_concurrent < 1:
        raise click.ClickException(f"max_concurrent must be at least 1, got {max_concurrent}")
    if poll_interval <= 0:
        raise click.ClickException(f"poll_interval must be positive, got {poll_interval}")

    events = EventBus()
    launcher = SubprocessLauncher(events, grace_seconds=grace_seconds)
    click.echo(f"🚀 Scheduler running (max_concurrent={max_concurrent}, poll={poll_interval}s)")
    click.echo("Press Ctrl+C to stop; running jobs go back to pending.")
    try:
        asyncio.run(serve(db, launcher, events, max_concurrent, poll_interval))
    except KeyboardInterrupt:
        click.echo("\n⚠️ Interrupted; run `renderq rescue` if jobs were left running.")
        return
    click.echo("\n✅ Scheduler stopped cleanly.")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()

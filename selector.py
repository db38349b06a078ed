# selector.py
"""Eligibility rules for picking the next job to launch.

Everything here is a pure function of a table snapshot, the set of job ids
currently holding a running handle, and the current time.
"""
from models import JobStatus, as_utc


def _dependencies_met(job, by_id):
    for dep_id in job.dependencies:
        dep = by_id.get(dep_id)
        if dep is None or dep.status != JobStatus.completed:
            return False
    return True


def is_eligible(job, by_id, running_ids, now):
    if job.status != JobStatus.pending or job.id in running_ids:
        return False
    if job.scheduled_time is not None and as_utc(job.scheduled_time) > as_utc(now):
        return False
    return _dependencies_met(job, by_id)


def select_next(snapshot, running_ids, now):
    """Return the next job to launch, or None.

    Highest priority wins; equal priority goes to the oldest ``created_at``,
    and a full tie to whichever comes first in the snapshot.
    """
    by_id = {job.id: job for job in snapshot}
    candidates = [job for job in snapshot if is_eligible(job, by_id, running_ids, now)]
    if not candidates:
        return None
    # min() keeps the first of equal keys, which preserves snapshot order
    return min(candidates, key=lambda job: (-job.priority, as_utc(job.created_at)))


def blocked_reason(job, snapshot, running_ids, now):
    """Explain why *job* would not be selected, or None if it is eligible."""
    if job.id in running_ids:
        return "running"
    if job.status != JobStatus.pending:
        return f"status is {job.status.value}"
    if job.scheduled_time is not None and as_utc(job.scheduled_time) > as_utc(now):
        return f"scheduled for {as_utc(job.scheduled_time).isoformat()}"
    by_id = {j.id: j for j in snapshot}
    for dep_id in job.dependencies:
        dep = by_id.get(dep_id)
        if dep is None:
            return f"missing dependency {dep_id}"
        if dep.status == JobStatus.failed:
            return f"dependency {dep_id} failed"
        if dep.status != JobStatus.completed:
            if _reaches(dep_id, job.id, by_id):
                return f"dependency cycle through {dep_id}"
            return f"waiting on dependency {dep_id}"
    return None


def _reaches(start_id, target_id, by_id):
    """True if *target_id* is reachable from *start_id* over unfinished dependencies."""
    seen = set()
    stack = [start_id]
    while stack:
        current = stack.pop()
        if current == target_id:
            return True
        if current in seen:
            continue
        seen.add(current)
        job = by_id.get(current)
        if job is None or job.status == JobStatus.completed:
            continue
        stack.extend(job.dependencies)
    return False

"""Tests for the eligibility selector and blocked reasons."""
from datetime import timedelta

from conftest import BASE_TIME, make_job
from models import JobStatus
from selector import blocked_reason, select_next

NOW = BASE_TIME + timedelta(days=1)


def test_returns_none_without_pending_jobs():
    snapshot = [
        make_job("a", status=JobStatus.completed),
        make_job("b", status=JobStatus.failed),
        make_job("c", status=JobStatus.running),
    ]
    assert select_next(snapshot, set(), NOW) is None


def test_returns_none_for_empty_snapshot():
    assert select_next([], set(), NOW) is None


def test_returns_first_pending_job():
    pending = make_job("a")
    running = make_job("b", status=JobStatus.running)
    assert select_next([pending, running], set(), NOW) is pending


def test_highest_priority_wins():
    low = make_job("low", priority=1)
    high = make_job("high", priority=5)
    medium = make_job("medium", priority=3)
    assert select_next([low, high, medium], set(), NOW) is high


def test_oldest_wins_on_equal_priority():
    older = make_job("older", priority=1, created_offset=0)
    newer = make_job("newer", priority=1, created_offset=86400)
    assert select_next([newer, older], set(), NOW) is older


def test_full_tie_resolves_to_snapshot_order():
    first = make_job("first", priority=2)
    second = make_job("second", priority=2)
    assert select_next([first, second], set(), NOW) is first
    assert select_next([second, first], set(), NOW) is second


def test_negative_priorities_are_ordered():
    a = make_job("a", priority=-5)
    b = make_job("b", priority=-1)
    assert select_next([a, b], set(), NOW) is b


def test_future_scheduled_job_is_skipped():
    scheduled = make_job("scheduled", priority=10, scheduled_time=NOW + timedelta(hours=1))
    immediate = make_job("immediate")
    assert select_next([scheduled, immediate], set(), NOW) is immediate


def test_past_scheduled_job_is_included():
    scheduled = make_job("scheduled", scheduled_time=NOW - timedelta(hours=1))
    assert select_next([scheduled], set(), NOW) is scheduled


def test_job_scheduled_exactly_now_is_included():
    scheduled = make_job("scheduled", scheduled_time=NOW)
    assert select_next([scheduled], set(), NOW) is scheduled


def test_naive_scheduled_time_is_treated_as_utc():
    scheduled = make_job("scheduled", scheduled_time=(NOW + timedelta(minutes=5)).replace(tzinfo=None))
    assert select_next([scheduled], set(), NOW) is None
    assert select_next([scheduled], set(), NOW + timedelta(minutes=5)) is scheduled


def test_uncompleted_dependency_blocks_job():
    dep1 = make_job("dep1", status=JobStatus.completed)
    dep2 = make_job("dep2", status=JobStatus.running)
    dependent = make_job("dependent", priority=9, dependencies=("dep1", "dep2"))
    assert select_next([dep1, dep2, dependent], set(), NOW) is None


def test_completed_dependencies_release_job():
    dep1 = make_job("dep1", status=JobStatus.completed)
    dep2 = make_job("dep2", status=JobStatus.completed)
    dependent = make_job("dependent", dependencies=("dep1", "dep2"))
    assert select_next([dep1, dep2, dependent], set(), NOW) is dependent


def test_missing_dependency_is_unsatisfied():
    dependent = make_job("dependent", dependencies=("ghost",))
    assert select_next([dependent], set(), NOW) is None


def test_failed_dependency_is_unsatisfied():
    dep = make_job("dep", status=JobStatus.failed)
    dependent = make_job("dependent", dependencies=("dep",))
    assert select_next([dep, dependent], set(), NOW) is None


def test_running_ids_are_never_selected():
    job = make_job("a", priority=100)
    other = make_job("b", priority=1)
    assert select_next([job], {"a"}, NOW) is None
    assert select_next([job, other], {"a"}, NOW) is other


def test_blocked_reason_for_eligible_job_is_none():
    job = make_job("a")
    assert blocked_reason(job, [job], set(), NOW) is None


def test_blocked_reasons():
    done = make_job("done", status=JobStatus.completed)
    broken = make_job("broken", status=JobStatus.failed)
    waiting_on = make_job("waiting_on")
    later = make_job("later", scheduled_time=NOW + timedelta(hours=2))
    missing = make_job("missing", dependencies=("ghost",))
    failed_dep = make_job("failed_dep", dependencies=("done", "broken"))
    waiting = make_job("waiting", dependencies=("later",))
    snapshot = [done, broken, waiting_on, later, missing, failed_dep, waiting]

    assert blocked_reason(waiting_on, snapshot, {"waiting_on"}, NOW) == "running"
    assert blocked_reason(done, snapshot, set(), NOW) == "status is completed"
    assert blocked_reason(later, snapshot, set(), NOW).startswith("scheduled for ")
    assert blocked_reason(missing, snapshot, set(), NOW) == "missing dependency ghost"
    assert blocked_reason(failed_dep, snapshot, set(), NOW) == "dependency broken failed"
    assert blocked_reason(waiting, snapshot, set(), NOW) == "waiting on dependency later"


def test_blocked_reason_reports_cycles():
    a = make_job("a", dependencies=("b",))
    b = make_job("b", dependencies=("a",))
    selfish = make_job("selfish", dependencies=("selfish",))
    snapshot = [a, b, selfish]

    assert select_next(snapshot, set(), NOW) is None
    assert blocked_reason(a, snapshot, set(), NOW) == "dependency cycle through b"
    assert blocked_reason(selfish, snapshot, set(), NOW) == "dependency cycle through selfish"

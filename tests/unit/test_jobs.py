"""Tests for the background job queue."""

from __future__ import annotations

import threading

import pytest

from tracker.jobs import JobQueue


@pytest.fixture
def queue():
    q = JobQueue(retries=1)
    yield q
    q.shutdown(wait=True)


def test_submit_runs_job_and_returns_result(queue):
    job_id = queue.submit("project:p1", lambda a, b: a + b, 2, b=3)
    assert queue.wait(job_id, timeout=5) == 5
    status = queue.status(job_id)
    assert status["status"] == "done"
    assert status["attempts"] == 1
    assert status["completed_at"] is not None


def test_same_key_is_not_queued_twice(queue):
    release = threading.Event()
    first = queue.submit("project:p1", release.wait, 5)
    assert queue.submit("project:p1", lambda: None) is None
    other = queue.submit("mail:alice", lambda: "ok")
    assert other is not None

    release.set()
    queue.wait(first, timeout=5)
    assert queue.wait(other, timeout=5) == "ok"


def test_key_is_released_after_completion(queue):
    first = queue.submit("project:p1", lambda: 1)
    queue.wait(first, timeout=5)
    second = queue.submit("project:p1", lambda: 2)
    assert second is not None and second != first
    assert queue.wait(second, timeout=5) == 2


def test_failed_attempt_is_retried(queue):
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise RuntimeError("transient")
        return "recovered"

    job_id = queue.submit("project:p1", flaky)
    assert queue.wait(job_id, timeout=5) == "recovered"
    assert queue.status(job_id)["attempts"] == 2
    assert queue.status(job_id)["error"] is None


def test_job_failing_every_attempt_is_marked_failed(queue):
    def broken():
        raise RuntimeError("always")

    job_id = queue.submit("project:p1", broken)
    assert queue.wait(job_id, timeout=5) is None
    status = queue.status(job_id)
    assert (status["status"], status["attempts"], status["error"]) == ("failed", 2, "always")
    # a failed job frees its key too
    assert queue.submit("project:p1", lambda: None) is not None


def test_jobs_run_in_submission_order(queue):
    order = []
    ids = [queue.submit(f"k{i}", order.append, i) for i in range(5)]
    for job_id in ids:
        queue.wait(job_id, timeout=5)
    assert order == [0, 1, 2, 3, 4]


def test_recent_lists_newest_first(queue):
    ids = [queue.submit(f"k{i}", lambda: None) for i in range(3)]
    for job_id in ids:
        queue.wait(job_id, timeout=5)
    assert len(queue.recent(limit=2)) == 2
    assert {j["id"] for j in queue.recent()} == set(ids)


def test_status_unknown_job(queue):
    assert queue.status("nope") is None


def test_history_is_capped_and_futures_released():
    queue = JobQueue(retries=0, max_history=50)
    try:
        ids = [queue.submit(f"k{i}", lambda i=i: i) for i in range(300)]
        assert queue.wait(ids[-1], timeout=10) == 299
    finally:
        queue.shutdown(wait=True)

    assert len(queue.recent(limit=1000)) == 50
    assert queue._futures == {}
    assert len(queue._results) <= 50
    assert queue.status(ids[0]) is None
    with pytest.raises(KeyError):
        queue.wait(ids[0])


def test_wait_after_completion_returns_stored_result(queue):
    job_id = queue.submit("project:p1", lambda: "report")
    queue.wait(job_id, timeout=5)
    assert queue.wait(job_id) == "report"

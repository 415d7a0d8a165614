"""Background job queue.

One worker thread runs jobs in submission order, which keeps SQLite writes
off concurrent threads. Each job carries a key (``project:<id>``,
``mail:<user>``); a key that is already pending or running is not queued
again, so the same project or mailbox is never processed twice at once.
Jobs open their own database connection.
"""

from __future__ import annotations

import concurrent.futures
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable

from tracker.log import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_HISTORY = 200


class JobQueue:
    """Single-worker executor with per-key de-duplication and retries.

    Finished jobs stay visible through ``status``/``recent``/``wait`` until
    more than *max_history* jobs are tracked; the oldest finished ones are
    then forgotten. Pending and running jobs are never dropped.

    Args:
        retries: Extra attempts after a failed run.
        max_history: Jobs (finished or not) kept for inspection.
    """

    def __init__(self, retries: int = 1, max_history: int = DEFAULT_MAX_HISTORY) -> None:
        self.retries = max(0, retries)
        self.max_history = max(1, max_history)
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="tracker-job"
        )
        # Submission order; oldest first.
        self._jobs: OrderedDict[str, dict[str, Any]] = OrderedDict()
        # Only unfinished jobs keep a future; finished results live in _results.
        self._futures: dict[str, concurrent.futures.Future] = {}
        self._results: dict[str, Any] = {}
        self._active_keys: dict[str, str] = {}
        self._lock = threading.Lock()

    def submit(self, key: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> str | None:
        """Queue ``fn(*args, **kwargs)`` under *key*.

        Returns:
            The job id, or None when a job with *key* is already pending or running.
        """
        with self._lock:
            if key in self._active_keys:
                logger.info("Job %s already queued as %s, skipping", key, self._active_keys[key])
                return None
            job_id = str(uuid.uuid4())
            self._active_keys[key] = job_id
            self._jobs[job_id] = {
                "id": job_id,
                "key": key,
                "status": "pending",
                "attempts": 0,
                "submitted_at": datetime.now(timezone.utc).isoformat(),
                "completed_at": None,
                "error": None,
            }
            self._futures[job_id] = self._executor.submit(self._run, job_id, fn, args, kwargs)
            self._prune()
        logger.info("Submitted job %s (%s)", key, job_id)
        return job_id

    def _run(self, job_id: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> Any:
        job = self._jobs[job_id]
        try:
            for attempt in range(1, self.retries + 2):
                with self._lock:
                    job["status"] = "running"
                    job["attempts"] = attempt
                try:
                    result = fn(*args, **kwargs)
                except Exception as exc:  # job failures are recorded, never raised into the worker
                    logger.error(
                        "Job %s attempt %d/%d failed: %s",
                        job["key"],
                        attempt,
                        self.retries + 1,
                        exc,
                        exc_info=True,
                    )
                    with self._lock:
                        job["error"] = str(exc)
                    continue
                with self._lock:
                    job["status"] = "done"
                    job["error"] = None
                    self._results[job_id] = result
                logger.info("Job %s done", job["key"])
                return result
            with self._lock:
                job["status"] = "failed"
            return None
        finally:
            with self._lock:
                job["completed_at"] = datetime.now(timezone.utc).isoformat()
                if self._active_keys.get(job["key"]) == job_id:
                    del self._active_keys[job["key"]]
                self._futures.pop(job_id, None)
                self._prune()

    def _prune(self) -> None:
        """Forget the oldest finished jobs beyond max_history. Caller holds the lock."""
        excess = len(self._jobs) - self.max_history
        if excess <= 0:
            return
        finished = [jid for jid, job in self._jobs.items() if job["completed_at"] is not None]
        for job_id in finished[:excess]:
            del self._jobs[job_id]
            self._results.pop(job_id, None)

    def status(self, job_id: str) -> dict[str, Any] | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return dict(job) if job else None

    def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        """Newest jobs first."""
        with self._lock:
            jobs = list(reversed(self._jobs.values()))
            return [dict(j) for j in jobs[:limit]]

    def wait(self, job_id: str, timeout: float | None = None) -> Any:
        """Block until *job_id* finishes and return its result (None on failure).

        Raises:
            KeyError: *job_id* was never submitted or has aged out of the history.
        """
        with self._lock:
            future = self._futures.get(job_id)
            if future is None:
                if job_id not in self._jobs:
                    raise KeyError(job_id)
                return self._results.get(job_id)
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

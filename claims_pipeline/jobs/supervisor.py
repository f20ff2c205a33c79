"""
Supervised worker pool for ingestion and enrichment jobs.

Callers submit a job and immediately get back an identifier they already
hold (processing id or run id); progress is read from the store, never
from the running task.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from claims_pipeline.core.exceptions import PreconditionFailed
from claims_pipeline.jobs.cancellation import CancellationToken
from claims_pipeline.observability.logger import get_logger
from claims_pipeline.observability.metrics import (
    active_jobs,
    dec_gauge,
    inc_gauge,
)

logger = get_logger(__name__)


class JobSupervisor:
    """
    Runs jobs on a thread pool and keeps one cancellation token per live job.

    Jobs are keyed by (job type, file id); at most one live job per key.
    """

    def __init__(self, max_workers: int = 4):
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="claims-job")
        self._lock = threading.Lock()
        self._jobs: dict[tuple[str, str], tuple[Future, CancellationToken]] = {}

    def submit(
        self,
        job: str,
        key: str,
        fn: Callable[..., Any],
        *args: Any,
        token: CancellationToken | None = None,
        **kwargs: Any,
    ) -> Future:
        """
        Schedule fn(*args, **kwargs) on the pool.

        Raises:
            PreconditionFailed: If a job of the same type is still running for key,
                or the pool has been shut down
        """
        token = token or CancellationToken()
        with self._lock:
            existing = self._jobs.get((job, key))
            if existing is not None and not existing[0].done():
                raise PreconditionFailed(f"A {job} job is already running for {key}")

            try:
                future = self.executor.submit(fn, *args, **kwargs)
            except RuntimeError as e:
                raise PreconditionFailed(f"Cannot start {job} job for {key}: {e}") from e
            inc_gauge(active_jobs, job=job)
            self._jobs[(job, key)] = (future, token)

        logger.info(f"Submitted {job} job for {key}", extra={"job": job, "key": key})
        future.add_done_callback(lambda f: self._on_done(job, key, f))
        return future

    def _on_done(self, job: str, key: str, future: Future) -> None:
        dec_gauge(active_jobs, job=job)
        with self._lock:
            current = self._jobs.get((job, key))
            if current is not None and current[0] is future:
                del self._jobs[(job, key)]

        if future.cancelled():
            logger.warning(f"{job} job for {key} was cancelled before it started")
            return
        error = future.exception()
        if error is not None:
            logger.error(
                f"{job} job for {key} failed: {error}",
                extra={"job": job, "key": key, "error_type": type(error).__name__},
                exc_info=(type(error), error, error.__traceback__),
            )
        else:
            logger.info(f"{job} job for {key} finished", extra={"job": job, "key": key})

    def token_for(self, job: str, key: str) -> CancellationToken | None:
        with self._lock:
            entry = self._jobs.get((job, key))
        return entry[1] if entry else None

    def is_running(self, job: str, key: str) -> bool:
        with self._lock:
            entry = self._jobs.get((job, key))
        return entry is not None and not entry[0].done()

    def cancel(self, job: str, key: str, reason: str = "cancelled by request") -> bool:
        """Set the cancellation token of a live job. Returns False if none is running."""
        token = self.token_for(job, key)
        if token is None:
            return False
        token.cancel(reason)
        logger.info(f"Cancellation requested for {job} job {key}: {reason}")
        return True

    def wait_all(self, timeout: float | None = None) -> None:
        with self._lock:
            futures = [future for future, _ in self._jobs.values()]
        wait(futures, timeout=timeout)

    def shutdown(self, wait_for_jobs: bool = True) -> None:
        if not wait_for_jobs:
            with self._lock:
                for _, token in self._jobs.values():
                    token.cancel("supervisor shutting down")
        self.executor.shutdown(wait=wait_for_jobs)

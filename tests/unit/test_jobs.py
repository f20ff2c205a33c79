"""
Unit tests for the job supervisor and cancellation tokens.
"""

import threading
import time

import pytest

from claims_pipeline.core.exceptions import PreconditionFailed
from claims_pipeline.jobs import CancellationToken, JobCancelled, JobSupervisor


@pytest.fixture
def supervisor():
    sup = JobSupervisor(max_workers=2)
    yield sup
    sup.shutdown()


@pytest.mark.unit
class TestCancellationToken:
    def test_initially_clear(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()

    def test_cancel_with_reason(self):
        token = CancellationToken()
        token.cancel("operator stop")

        assert token.cancelled
        assert token.reason == "operator stop"
        with pytest.raises(JobCancelled, match="operator stop"):
            token.raise_if_cancelled()


@pytest.mark.unit
class TestJobSupervisor:
    """Tests for JobSupervisor"""

    def test_runs_job_and_returns_result(self, supervisor):
        future = supervisor.submit("ingestion", "file-1", lambda a, b=0: a + b, 2, b=3)

        assert future.result(timeout=5) == 5

    def test_rejects_second_live_job_for_same_key(self, supervisor):
        release = threading.Event()
        supervisor.submit("ingestion", "file-1", release.wait, 5)

        try:
            with pytest.raises(PreconditionFailed, match="already running"):
                supervisor.submit("ingestion", "file-1", lambda: None)
            # other job types and keys are independent
            supervisor.submit("enrichment", "file-1", lambda: None).result(timeout=5)
            supervisor.submit("ingestion", "file-2", lambda: None).result(timeout=5)
        finally:
            release.set()
        supervisor.wait_all(timeout=5)

    def test_rejects_jobs_after_shutdown(self):
        sup = JobSupervisor(max_workers=1)
        sup.shutdown()

        with pytest.raises(PreconditionFailed, match="Cannot start ingestion job"):
            sup.submit("ingestion", "file-1", lambda: None)
        assert not sup.is_running("ingestion", "file-1")

    def test_key_reusable_after_completion(self, supervisor):
        supervisor.submit("ingestion", "file-1", lambda: 1).result(timeout=5)
        supervisor.wait_all(timeout=5)

        assert supervisor.submit("ingestion", "file-1", lambda: 2).result(timeout=5) == 2

    def test_cancel_sets_job_token(self, supervisor):
        token = CancellationToken()
        started = threading.Event()

        def job():
            started.set()
            while not token.cancelled:
                time.sleep(0.01)
            return token.reason

        future = supervisor.submit("enrichment", "file-1", job, token=token)
        started.wait(timeout=5)

        assert supervisor.is_running("enrichment", "file-1")
        assert supervisor.cancel("enrichment", "file-1", "stop now") is True
        assert future.result(timeout=5) == "stop now"

    def test_cancel_unknown_job(self, supervisor):
        assert supervisor.cancel("enrichment", "missing") is False
        assert supervisor.token_for("enrichment", "missing") is None

    def test_failed_job_surfaces_through_future(self, supervisor):
        def boom():
            raise ValueError("bad input")

        future = supervisor.submit("ingestion", "file-1", boom)

        with pytest.raises(ValueError, match="bad input"):
            future.result(timeout=5)

    def test_wait_all(self, supervisor):
        results = []
        for key in ("a", "b", "c"):
            supervisor.submit("ingestion", key, results.append, key)

        supervisor.wait_all(timeout=5)

        assert sorted(results) == ["a", "b", "c"]

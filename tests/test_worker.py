"""Queue consumer and health endpoints."""

import pytest
from fastapi.testclient import TestClient

from conftest import JOB_ID, FakeRedis
from shorts_worker import queue as job_queue
from shorts_worker.pipeline.models import JobStatus
from shorts_worker.worker import Worker


class FakeRunner:
    def __init__(self, outcome=JobStatus.READY, exc=None):
        self.outcome = outcome
        self.exc = exc
        self.ran = []

    async def run(self, job):
        self.ran.append(job.id)
        if self.exc:
            raise self.exc
        return self.outcome


class TestWorker:

    @pytest.mark.asyncio
    async def test_claims_and_runs(self, store, settings):
        runner = FakeRunner()
        worker = Worker(FakeRedis(), store, runner, settings)

        assert await worker.process(JOB_ID) == JobStatus.READY
        assert runner.ran == [JOB_ID]
        assert store.jobs[JOB_ID]["claimed_by"] == settings.worker_id

    @pytest.mark.asyncio
    async def test_ready_job_is_not_rerun(self, store, settings):
        store.jobs[JOB_ID]["status"] = "READY"
        runner = FakeRunner()
        worker = Worker(FakeRedis(), store, runner, settings)

        assert await worker.process(JOB_ID) == JobStatus.READY
        assert runner.ran == []

    @pytest.mark.asyncio
    async def test_missing_job(self, store, settings):
        worker = Worker(FakeRedis(), store, FakeRunner(), settings)
        assert await worker.process("nope") is None

    @pytest.mark.asyncio
    async def test_failed_pipeline_is_acked(self, store, settings):
        r = FakeRedis()
        job_queue.enqueue_job(r, JOB_ID, "user-1", "proj-1")
        worker = Worker(r, store, FakeRunner(outcome=JobStatus.FAILED), settings)

        assert await worker.consume_once(timeout=0) == JOB_ID
        assert job_queue.get_processing_count(r) == 0
        assert job_queue.get_queue_length(r) == 0
        assert job_queue.get_job_meta(r, JOB_ID)["status"] == "FAILED"

    @pytest.mark.asyncio
    async def test_crash_is_nacked(self, store, settings):
        r = FakeRedis()
        job_queue.enqueue_job(r, JOB_ID, "user-1", "proj-1")
        worker = Worker(r, store, FakeRunner(exc=RuntimeError("db gone")), settings)

        await worker.consume_once(timeout=0)
        assert job_queue.get_queue_length(r) == 1
        assert job_queue.get_job_meta(r, JOB_ID)["last_error"] == "db gone"

    @pytest.mark.asyncio
    async def test_empty_queue(self, store, settings):
        worker = Worker(FakeRedis(), store, FakeRunner(), settings)
        assert await worker.consume_once(timeout=0) is None


class TestHealth:

    def test_health_without_redis(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        monkeypatch.setenv("WORKER_ID", "worker-test")
        from shorts_worker.health import app

        with TestClient(app) as client:
            health = client.get("/health").json()
            queue = client.get("/queue").json()

        assert health["status"] == "ok"
        assert health["worker_id"] == "worker-test"
        assert health["consumer_running"] is False
        assert queue["status"] == "no_consumer"

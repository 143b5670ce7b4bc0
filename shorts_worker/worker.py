"""
Queue consumer: pulls job ids from Redis and runs each through the
pipeline.

Entry point: `python -m shorts_worker.worker` (or the `shorts-worker`
script). Serves the health app with uvicorn; the app's lifespan starts the
consumer loop.
"""

import asyncio
import logging
import os
from typing import Optional

import httpx
import redis
import uvicorn

from . import queue as job_queue
from .pipeline import JobRow, JobStatus, PipelineRunner
from .pipeline.credits import SupabaseCreditLedger
from .settings import WorkerSettings
from .storage import R2ObjectStore, create_r2_client
from .supabase_store import SupabaseJobStore, create_service_client

logger = logging.getLogger(__name__)

IDLE_SLEEP = 5      # seconds, when Redis is unavailable
ERROR_BACKOFF = 2   # seconds, after an unexpected loop error


class Worker:
    """One consumer: dequeue, claim, run, ack."""

    def __init__(self, redis_client, store, runner: PipelineRunner, settings: WorkerSettings):
        self.redis = redis_client
        self.store = store
        self.runner = runner
        self.settings = settings
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        self._stopping.set()

    async def process(self, job_id: str) -> Optional[JobStatus]:
        """Run one job. Returns its final status, None if the job row is gone."""
        row = await self.store.get_job(job_id)
        if not row:
            logger.warning(f"[{job_id}] Job not found, dropping")
            return None

        job = JobRow.model_validate(row)
        if job.status == JobStatus.READY:
            logger.info(f"[{job_id}] Already READY, dropping")
            return JobStatus.READY

        await self.store.update_job(job_id, {"claimed_by": self.settings.worker_id})
        logger.info(f"[{job_id}] Claimed by {self.settings.worker_id} (status={job.status.value})")
        return await self.runner.run(job)

    async def consume_once(self, timeout: int = 5) -> Optional[str]:
        """Dequeue and process at most one job. Returns the job id handled."""
        job_id = await asyncio.to_thread(job_queue.dequeue_job, self.redis, timeout)
        if job_id is None:
            return None

        try:
            status = await self.process(job_id)
        except Exception as e:
            logger.error(f"[{job_id}] Worker crashed around the pipeline: {e}", exc_info=True)
            await asyncio.to_thread(job_queue.nack_job, self.redis, job_id, str(e))
            return job_id

        outcome = status.value if status else "missing"
        await asyncio.to_thread(job_queue.ack_job, self.redis, job_id, outcome)
        return job_id

    async def consume_forever(self) -> None:
        logger.info(f"Queue consumer started ({self.settings.worker_id})")
        recovered = await asyncio.to_thread(job_queue.recover_stale_jobs, self.redis)
        if recovered:
            logger.info(f"Recovered {recovered} stale job(s) from a previous session")

        while not self._stopping.is_set():
            try:
                await self.consume_once()
            except redis.exceptions.ConnectionError as e:
                logger.error(f"Redis unavailable: {e}")
                await asyncio.sleep(IDLE_SLEEP)
            except Exception as e:
                logger.error(f"Queue consumer loop error: {e}", exc_info=True)
                await asyncio.sleep(ERROR_BACKOFF)

        logger.info("Queue consumer stopped")


def build_worker(settings: WorkerSettings, http: httpx.AsyncClient) -> Worker:
    """Wire real clients from settings."""
    if not settings.redis_url:
        raise RuntimeError("REDIS_URL must be set")

    sb = create_service_client(settings)
    store = SupabaseJobStore(sb)
    runner = PipelineRunner(
        store=store,
        ledger=SupabaseCreditLedger(sb),
        object_store=R2ObjectStore(create_r2_client(settings), settings.r2_bucket_name),
        settings=settings,
        http=http,
    )
    redis_client = redis.from_url(settings.redis_url, decode_responses=False)
    return Worker(redis_client, store, runner, settings)


def main():
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "shorts_worker.health:app",
        host="0.0.0.0",
        port=int(os.environ.get("PORT", "8000")),
    )


if __name__ == "__main__":
    main()

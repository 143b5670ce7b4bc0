"""
Liveness/queue endpoints for the worker host. The lifespan wires the
worker and runs its consumer loop for as long as the app is up.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from . import queue as job_queue
from .settings import WorkerSettings
from .worker import build_worker

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = WorkerSettings.from_env()
    app.state.settings = settings
    app.state.worker = None

    async with httpx.AsyncClient() as http:
        consumer = None
        if settings.redis_url:
            worker = build_worker(settings, http)
            app.state.worker = worker
            consumer = asyncio.create_task(worker.consume_forever())
            logger.info("Queue consumer launched")
        else:
            logger.warning("No REDIS_URL, consumer not started")

        yield

        logger.info("Worker shutting down...")
        if consumer is not None:
            app.state.worker.stop()
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)


app = FastAPI(lifespan=lifespan)


@app.get("/health")
def health_check():
    """Worker is up and configured."""
    settings: WorkerSettings = app.state.settings
    return {
        "status": "ok",
        "worker_id": settings.worker_id,
        "consumer_running": app.state.worker is not None,
        "supabase_url_set": bool(settings.supabase_url),
        "openai_api_key_set": bool(settings.openai_api_key),
        "gemini_api_key_set": bool(settings.gemini_api_key),
        "render_service_set": bool(settings.render_service_url),
    }


@app.get("/queue")
def queue_status():
    """Queue depths from Redis."""
    worker = app.state.worker
    if worker is None:
        return {"queue_length": 0, "processing": 0, "dead_letter": 0, "status": "no_consumer"}

    r = worker.redis
    return {
        "queue_length": job_queue.get_queue_length(r),
        "processing": job_queue.get_processing_count(r),
        "dead_letter": job_queue.get_dead_letter_count(r),
        "status": "ok",
    }

"""
Redis-backed FIFO job queue with reliable delivery.

Reliable-queue pattern, so a job id is always in exactly one list:
  1. LPUSH → `shorts:jobs`                  (enqueue)
  2. BLMOVE → `shorts:processing`           (atomic dequeue + in-flight tracking)
  3. LREM from processing when the run ends (ack)
  4. Requeue, or → `shorts:dead_letter` after 3 crashes (nack)

Keys:
  shorts:jobs            pending job ids (Redis list, FIFO)
  shorts:processing      in-flight job ids (Redis list)
  shorts:dead_letter     job ids whose worker crashed repeatedly
  shorts:meta:{job_id}   per-job metadata (Redis hash, TTL 2h)

A pipeline failure is not a queue failure: the runner records FAILED in the
database and the job is acked. Nack is for crashes around the runner.
"""

import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

QUEUE_KEY = "shorts:jobs"
PROCESSING_KEY = "shorts:processing"
DEAD_LETTER_KEY = "shorts:dead_letter"
META_PREFIX = "shorts:meta:"
META_TTL = 7200  # 2 hours

MAX_DELIVERIES = 3
STALE_TASK_TIMEOUT = 2400  # longer than one stage timeout plus slack


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _meta_key(job_id: str) -> str:
    return f"{META_PREFIX}{job_id}"


# ── Enqueue ──────────────────────────────────────────────────────────────────

def enqueue_job(redis_client, job_id: str, user_id: str, project_id: str) -> int:
    """Add a job to the back of the queue. Returns its 1-based position."""
    pipe = redis_client.pipeline(transaction=True)
    pipe.hset(_meta_key(job_id), mapping={
        "job_id": job_id,
        "user_id": user_id,
        "project_id": project_id,
        "enqueued_at": str(time.time()),
        "status": "queued",
        "deliveries": "0",
    })
    pipe.expire(_meta_key(job_id), META_TTL)
    pipe.lpush(QUEUE_KEY, job_id)
    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued job {job_id} for user {user_id} (pos={position})")
    return position


# ── Reliable dequeue ─────────────────────────────────────────────────────────

def dequeue_job(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Move the oldest pending job into the processing list.

    Returns the job id, or None when nothing arrived within `timeout`.
    """
    result = redis_client.blmove(QUEUE_KEY, PROCESSING_KEY, timeout, "RIGHT", "LEFT")
    if result is None:
        return None

    job_id = _decode(result)
    redis_client.hset(_meta_key(job_id), mapping={
        "status": "processing",
        "processing_started_at": str(time.time()),
    })
    logger.info(f"Dequeued job {job_id} → processing")
    return job_id


# ── Ack / Nack ───────────────────────────────────────────────────────────────

def ack_job(redis_client, job_id: str, outcome: str = "done") -> None:
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_job_status(redis_client, job_id, outcome)
    logger.info(f"Acked job {job_id} ({outcome})")


def nack_job(redis_client, job_id: str, error_msg: str = "") -> bool:
    """
    Return a crashed job to the queue, or dead-letter it after
    MAX_DELIVERIES attempts. Returns True when it was requeued.
    """
    meta_key = _meta_key(job_id)
    deliveries = int(redis_client.hget(meta_key, "deliveries") or 0) + 1
    redis_client.hset(meta_key, "deliveries", str(deliveries))
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if deliveries < MAX_DELIVERIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_job_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked job {job_id} (delivery {deliveries}/{MAX_DELIVERIES}), requeued")
        return True

    redis_client.lpush(DEAD_LETTER_KEY, job_id)
    update_job_status(redis_client, job_id, "dead_letter")
    logger.error(f"Job {job_id} moved to dead-letter queue after {MAX_DELIVERIES} deliveries: {error_msg}")
    return False


# ── Stale recovery ───────────────────────────────────────────────────────────

def recover_stale_jobs(redis_client, now: Optional[float] = None) -> int:
    """
    Requeue in-flight jobs whose worker has been silent for longer than
    STALE_TASK_TIMEOUT. Call on startup. Returns the number recovered.
    """
    now = now if now is not None else time.time()
    recovered = 0

    for item in redis_client.lrange(PROCESSING_KEY, 0, -1):
        job_id = _decode(item)
        meta = get_job_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > STALE_TASK_TIMEOUT:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.lpush(QUEUE_KEY, job_id)
            update_job_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s)")

    if recovered:
        logger.info(f"Recovered {recovered} stale job(s) from processing list")
    return recovered


# ── Inspection ───────────────────────────────────────────────────────────────

def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_dead_letter_count(redis_client) -> int:
    return redis_client.llen(DEAD_LETTER_KEY)


def get_job_meta(redis_client, job_id: str) -> Optional[dict]:
    data = redis_client.hgetall(_meta_key(job_id))
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_job_status(redis_client, job_id: str, status: str) -> None:
    redis_client.hset(_meta_key(job_id), "status", status)

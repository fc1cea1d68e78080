"""
Redis-backed job queue with reliable delivery for generation jobs.

Uses the BLMOVE (reliable queue) pattern so a job id is never lost:
  1. LPUSH → `generation:queue`              (enqueue)
  2. BLMOVE → `generation:processing`        (atomic dequeue + in-flight tracking)
  3. LREM from processing when the run ends  (ack)
  4. Requeue, or → `generation:dead_letter` after 3 deliveries (nack)

Keys:
  generation:queue           — pending job ids (Redis list, FIFO)
  generation:processing      — in-flight job ids (Redis list)
  generation:dead_letter     — job ids whose runner kept crashing
  generation:meta:{job_id}   — per-job delivery metadata (Redis hash, TTL 24h)

The queue only carries job ids. Job state lives in the job store, so
running the same id twice is harmless.
"""

import time
import logging
from typing import Optional

logger = logging.getLogger(__name__)

QUEUE_KEY = "generation:queue"
PROCESSING_KEY = "generation:processing"
DEAD_LETTER_KEY = "generation:dead_letter"
META_PREFIX = "generation:meta:"
META_TTL = 86400  # 24 hours

MAX_DELIVERIES = 3
STALE_JOB_TIMEOUT = 600  # 10 minutes


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_job(redis_client, job_id: str, resume: bool = False) -> int:
    """
    Add a job to the back of the queue.
    `resume` marks runs that should pick up units left in-progress.
    Returns the queue length after the push.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    pipe = redis_client.pipeline(transaction=True)
    pipe.hset(meta_key, mapping={
        "job_id": job_id,
        "enqueued_at": str(time.time()),
        "status": "queued",
        "resume": "1" if resume else "0",
        "deliveries": "0",
    })
    pipe.expire(meta_key, META_TTL)
    pipe.lpush(QUEUE_KEY, job_id)
    pipe.execute()

    position = redis_client.llen(QUEUE_KEY)
    logger.info(f"Enqueued generation job {job_id} (resume={resume}, pos={position})")
    return position


# ── Reliable Dequeue ──────────────────────────────────────────────────────────

def dequeue_job(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a job id from the pending queue to the processing list.
    Returns the job id, or None on timeout.
    """
    result = redis_client.blmove(QUEUE_KEY, PROCESSING_KEY, timeout, "RIGHT", "LEFT")
    if result is None:
        return None

    job_id = _decode(result)
    meta_key = f"{META_PREFIX}{job_id}"
    redis_client.hset(meta_key, mapping={
        "processing_started_at": str(time.time()),
        "status": "processing",
    })
    logger.info(f"Dequeued generation job {job_id} → processing")
    return job_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_job(redis_client, job_id: str):
    """The runner finished (whatever the job outcome) — drop it from processing."""
    redis_client.lrem(PROCESSING_KEY, 1, job_id)
    update_job_status(redis_client, job_id, "done")
    logger.info(f"Acked generation job {job_id}")


def nack_job(redis_client, job_id: str, error_msg: str = ""):
    """
    The runner crashed. Requeue with resume=1 until MAX_DELIVERIES,
    then park the id in the dead-letter list.
    """
    meta_key = f"{META_PREFIX}{job_id}"
    deliveries = int(redis_client.hget(meta_key, "deliveries") or 0) + 1
    redis_client.hset(meta_key, mapping={"deliveries": str(deliveries), "resume": "1"})
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, job_id)

    if deliveries < MAX_DELIVERIES:
        redis_client.lpush(QUEUE_KEY, job_id)
        update_job_status(redis_client, job_id, "queued")
        logger.warning(f"Nacked generation job {job_id} (delivery {deliveries}/{MAX_DELIVERIES}), requeued")
    else:
        redis_client.lpush(DEAD_LETTER_KEY, job_id)
        update_job_status(redis_client, job_id, "dead_letter")
        logger.error(f"Generation job {job_id} dead-lettered after {MAX_DELIVERIES} deliveries: {error_msg}")


# ── Stale Recovery ────────────────────────────────────────────────────────────

def recover_stale_jobs(redis_client, stale_after: float = STALE_JOB_TIMEOUT) -> int:
    """
    Requeue job ids that have been in processing for at least `stale_after`
    seconds (their worker most likely died). With stale_after=0 every
    in-flight id is requeued, which is right when this process is the only
    consumer. Call on startup. Returns how many were moved.
    """
    recovered = 0
    now = time.time()

    for item in redis_client.lrange(PROCESSING_KEY, 0, -1):
        job_id = _decode(item)
        meta = get_job_meta(redis_client, job_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            logger.warning(f"Removed orphaned job {job_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) >= stale_after:
            redis_client.lrem(PROCESSING_KEY, 1, job_id)
            redis_client.hset(f"{META_PREFIX}{job_id}", "resume", "1")
            redis_client.lpush(QUEUE_KEY, job_id)
            update_job_status(redis_client, job_id, "queued")
            recovered += 1
            logger.warning(f"Recovered stale job {job_id} (in-flight {int(now - started_at)}s)")

    if recovered:
        logger.info(f"Recovered {recovered} stale generation job(s)")
    return recovered


# ── Metadata Helpers ──────────────────────────────────────────────────────────

def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_dead_letter_jobs(redis_client, limit: int = 50) -> list:
    return [_decode(item) for item in redis_client.lrange(DEAD_LETTER_KEY, 0, limit - 1)]


def get_job_meta(redis_client, job_id: str) -> Optional[dict]:
    data = redis_client.hgetall(f"{META_PREFIX}{job_id}")
    if not data:
        return None
    return {_decode(k): _decode(v) for k, v in data.items()}


def update_job_status(redis_client, job_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{job_id}", "status", status)

"""
Redis-backed task queue for workflow invocations, with reliable delivery.

Uses the BLMOVE (reliable queue) pattern so no invocation is lost:
  1. LPUSH → `workflow:tasks`             (enqueue)
  2. BLMOVE → `workflow:tasks:processing` (atomic dequeue + in-flight tracking)
  3. LREM from processing on success      (ack)
  4. Requeue or → `workflow:tasks:dead_letter` after 3 failures (nack)

Delayed work (sleeps, wait timeouts, retry backoff) sits in a sorted set
scored by due time until `promote_due_tasks()` moves it onto the queue.

Keys:
  workflow:tasks              — pending task ids (Redis list, FIFO)
  workflow:tasks:processing   — in-flight task ids (Redis list)
  workflow:tasks:dead_letter  — permanently failed task ids (Redis list)
  workflow:tasks:scheduled    — delayed task ids (sorted set, score = run_at)
  workflow:tasks:meta:{id}    — per-task metadata (Redis hash, TTL 24h)
"""

import json
import time
import uuid
import logging
from typing import Optional

logger = logging.getLogger(__name__)

QUEUE_KEY = "workflow:tasks"
PROCESSING_KEY = "workflow:tasks:processing"
DEAD_LETTER_KEY = "workflow:tasks:dead_letter"
SCHEDULED_KEY = "workflow:tasks:scheduled"
META_PREFIX = "workflow:tasks:meta:"
META_TTL = 86400  # outlives the longest wait timeout

MAX_RETRIES = 3
STALE_TASK_TIMEOUT = 900  # longer than any single invocation should run


def _new_task(redis_client, task_type: str, payload: dict, pipe) -> str:
    task_id = uuid.uuid4().hex
    meta_key = f"{META_PREFIX}{task_id}"
    pipe.hset(meta_key, mapping={
        "task_type": task_type,
        "payload": json.dumps(payload),
        "enqueued_at": str(time.time()),
        "status": "queued",
        "retries": "0",
    })
    pipe.expire(meta_key, META_TTL)
    return task_id


# ── Enqueue ───────────────────────────────────────────────────────────────────

def enqueue_task(redis_client, task_type: str, payload: dict) -> str:
    """Add a task to the back of the queue. Returns the task id."""
    pipe = redis_client.pipeline(transaction=True)
    task_id = _new_task(redis_client, task_type, payload, pipe)
    pipe.lpush(QUEUE_KEY, task_id)
    pipe.execute()
    logger.debug(f"Enqueued task {task_id} (type={task_type})")
    return task_id


def schedule_task(redis_client, task_type: str, payload: dict, run_at: float) -> str:
    """Park a task until ``run_at`` (unix seconds). Returns the task id."""
    pipe = redis_client.pipeline(transaction=True)
    task_id = _new_task(redis_client, task_type, payload, pipe)
    pipe.hset(f"{META_PREFIX}{task_id}", "status", "scheduled")
    pipe.zadd(SCHEDULED_KEY, {task_id: run_at})
    pipe.execute()
    logger.debug(f"Scheduled task {task_id} (type={task_type}) for {run_at:.1f}")
    return task_id


def promote_due_tasks(redis_client, now: float, limit: int = 100) -> int:
    """
    Move scheduled tasks whose due time has passed onto the pending queue.

    ZREM decides ownership, so concurrent schedulers never promote the same
    task twice. Returns the number of promoted tasks.
    """
    due = redis_client.zrangebyscore(SCHEDULED_KEY, "-inf", now, start=0, num=limit)
    promoted = 0
    for task_id in due:
        if redis_client.zrem(SCHEDULED_KEY, task_id) == 1:
            redis_client.lpush(QUEUE_KEY, task_id)
            update_task_status(redis_client, task_id, "queued")
            promoted += 1
    return promoted


def next_scheduled_at(redis_client) -> Optional[float]:
    """Due time of the earliest scheduled task, or None."""
    head = redis_client.zrange(SCHEDULED_KEY, 0, 0, withscores=True)
    if not head:
        return None
    return float(head[0][1])


# ── Reliable Dequeue (BLMOVE) ─────────────────────────────────────────────────

def dequeue_task(redis_client, timeout: int = 5) -> Optional[str]:
    """
    Atomically move a task from the pending queue to the processing list.

    The task is never in limbo: it's either in the queue or in processing.
    If the worker crashes, `recover_stale_tasks()` will move it back.

    ``timeout=0`` polls without blocking. Returns the task id or None.
    """
    if timeout:
        task_id = redis_client.blmove(
            QUEUE_KEY, PROCESSING_KEY, timeout, src="RIGHT", dest="LEFT",
        )
    else:
        task_id = redis_client.lmove(QUEUE_KEY, PROCESSING_KEY, src="RIGHT", dest="LEFT")

    if task_id is None:
        return None

    meta_key = f"{META_PREFIX}{task_id}"
    redis_client.hset(meta_key, mapping={
        "processing_started_at": str(time.time()),
        "status": "processing",
    })
    return task_id


# ── Ack / Nack ────────────────────────────────────────────────────────────────

def ack_task(redis_client, task_id: str):
    """Acknowledge successful handling: remove from the processing list."""
    redis_client.lrem(PROCESSING_KEY, 1, task_id)
    update_task_status(redis_client, task_id, "completed")


def nack_task(redis_client, task_id: str, error_msg: str = ""):
    """
    Negative-acknowledge a task whose handling crashed.
    Requeues below MAX_RETRIES, otherwise moves it to the dead-letter list.
    """
    meta_key = f"{META_PREFIX}{task_id}"
    retries = int(redis_client.hget(meta_key, "retries") or 0) + 1
    redis_client.hset(meta_key, "retries", str(retries))
    if error_msg:
        redis_client.hset(meta_key, "last_error", error_msg[:500])

    redis_client.lrem(PROCESSING_KEY, 1, task_id)

    if retries < MAX_RETRIES:
        redis_client.lpush(QUEUE_KEY, task_id)
        update_task_status(redis_client, task_id, "queued")
        logger.warning(f"Nacked task {task_id} (retry {retries}/{MAX_RETRIES}), requeued")
    else:
        redis_client.lpush(DEAD_LETTER_KEY, task_id)
        update_task_status(redis_client, task_id, "dead_letter")
        logger.error(f"Task {task_id} moved to dead-letter queue after {MAX_RETRIES} failures: {error_msg}")


# ── Stale Task Recovery ───────────────────────────────────────────────────────

def recover_stale_tasks(redis_client, stale_after: float = STALE_TASK_TIMEOUT) -> int:
    """
    Move tasks that have been in-flight longer than ``stale_after`` back to
    the pending queue. Call on worker startup.
    Returns the number of recovered tasks.
    """
    recovered = 0
    now = time.time()

    for task_id in redis_client.lrange(PROCESSING_KEY, 0, -1):
        meta = get_task_meta(redis_client, task_id)

        if not meta:
            redis_client.lrem(PROCESSING_KEY, 1, task_id)
            logger.warning(f"Removed orphaned task {task_id} from processing (no metadata)")
            continue

        started_at = float(meta.get("processing_started_at", 0))
        if started_at > 0 and (now - started_at) > stale_after:
            redis_client.lrem(PROCESSING_KEY, 1, task_id)
            redis_client.lpush(QUEUE_KEY, task_id)
            update_task_status(redis_client, task_id, "queued")
            recovered += 1
            logger.warning(
                f"Recovered stale task {task_id} (in-flight {int(now - started_at)}s > {int(stale_after)}s)"
            )

    if recovered:
        logger.info(f"Recovered {recovered} stale task(s) from processing queue")
    return recovered


# ── Inspection ────────────────────────────────────────────────────────────────

def get_dead_letter_tasks(redis_client, limit: int = 50) -> list:
    """Return the most recent dead-letter task ids."""
    return redis_client.lrange(DEAD_LETTER_KEY, 0, limit - 1)


def get_queue_length(redis_client) -> int:
    return redis_client.llen(QUEUE_KEY)


def get_processing_count(redis_client) -> int:
    return redis_client.llen(PROCESSING_KEY)


def get_scheduled_count(redis_client) -> int:
    return redis_client.zcard(SCHEDULED_KEY)


def get_task_meta(redis_client, task_id: str) -> Optional[dict]:
    """Get metadata for a queued/processing task."""
    data = redis_client.hgetall(f"{META_PREFIX}{task_id}")
    return data or None


def update_task_status(redis_client, task_id: str, status: str):
    redis_client.hset(f"{META_PREFIX}{task_id}", "status", status)

"""
Durable step executor for event-driven workflow functions.

A workflow function is a plain handler ``handler(ctx, event)``. Every side
effect goes through the StepContext (run_step / sleep / wait_for_event /
send_event), which records results in Redis. Re-invoking the handler after a
retry, a resume or a worker crash replays recorded steps instead of
repeating them, so handlers must be deterministic between steps.

Suspension (sleep, event wait) parks the run and releases the worker thread;
the scheduler re-enqueues it when the sleep is due, the event arrives or the
wait times out.

Keys:
  workflow:run:{run_id}             — run state (hash)
  workflow:steps:{run_id}           — recorded step results (hash of JSON)
  workflow:runs:{function_id}       — run ids per function (set)
  workflow:wait:{run_id}:{step}     — pending sleep/wait marker; DEL claims it
  workflow:waiters:{event}          — open event waits (hash)
  workflow:recent:{event}           — recently emitted events (list, TTL)
  workflow:lock:{run_id}            — single-invocation lock per run
  workflow:failure-handled:{run_id} — on_failure guard
  workflow:idempotency:{fn}:{value} — first run started for an idempotency value
"""

import json
import time
import uuid
import random
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from . import queue as task_queue
from . import concurrency
from . import metrics
from .errors import NonRetriableError

logger = logging.getLogger(__name__)

RUN_PREFIX = "workflow:run:"
STEPS_PREFIX = "workflow:steps:"
RUNS_BY_FUNCTION_PREFIX = "workflow:runs:"
WAIT_PREFIX = "workflow:wait:"
WAITERS_PREFIX = "workflow:waiters:"
RECENT_PREFIX = "workflow:recent:"
LOCK_PREFIX = "workflow:lock:"
FAILURE_FLAG_PREFIX = "workflow:failure-handled:"
IDEMPOTENCY_PREFIX = "workflow:idempotency:"

RUN_TTL = 7 * 86400
RECENT_EVENTS_MAX = 500
RECENT_EVENTS_TTL = 3600
RUN_LOCK_TTL = 900
WAIT_MARKER_GRACE = 3600
IDEMPOTENCY_TTL = 86400

RETRY_BASE_DELAY = 5.0
RETRY_MAX_DELAY = 300.0
BUSY_DELAY = 1.0
SCHEDULER_INTERVAL = 0.5

# ── Task types ───────────────────────────────────────────────────────────────
TASK_START = "start"
TASK_RESUME = "resume"
TASK_WAKE = "wake"
TASK_RETRY = "retry"

# ── Run statuses ─────────────────────────────────────────────────────────────
RUN_QUEUED = "queued"
RUN_RUNNING = "running"
RUN_SLEEPING = "sleeping"
RUN_WAITING = "waiting"
RUN_RETRYING = "retrying"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"

TERMINAL_STATUSES = {RUN_COMPLETED, RUN_FAILED}


@dataclass
class WorkflowFunction:
    """A handler bound to the event that triggers it."""
    id: str
    trigger: str
    handler: Callable[["StepContext", dict], Any]
    retries: int = 2
    concurrency: Optional[int] = None
    on_failure: Optional[Callable[["StepContext", BaseException], None]] = None
    # Event data field; a second event with the same value starts no run
    idempotency_key: Optional[str] = None


class _Suspend(BaseException):
    """Unwinds a handler at a sleep or wait.

    Derives from BaseException so ``except Exception`` in handler code
    cannot swallow it.
    """

    def __init__(self, step: str, status: str):
        super().__init__(step)
        self.step = step
        self.status = status


def _wait_field(run_id: str, step: str) -> str:
    return f"{run_id}:{step}"


def _parked_elsewhere(run: dict, step: str) -> bool:
    """True when the run has its own pending task or is suspended at another step."""
    if run["status"] in (RUN_QUEUED, RUN_RETRYING):
        return True
    if run["status"] in (RUN_SLEEPING, RUN_WAITING):
        return run.get("suspended_at", "") not in ("", step)
    return False


# ═════════════════════════════════════════════════════════════════════════════
# Step context
# ═════════════════════════════════════════════════════════════════════════════

class StepContext:
    """Per-invocation handle passed to workflow handlers."""

    def __init__(self, engine: "WorkflowEngine", run: dict, function: WorkflowFunction):
        self.engine = engine
        self.deps = engine.deps
        self.run_id = run["id"]
        self.function_id = function.id
        self.event = run["event"]
        self.attempt = run["attempt"]
        self._history = engine.get_steps(self.run_id)
        self._visited: set[str] = set()
        # Completion events emitted at or after this point belong to this run
        self._last_ts = float(self.event.get("ts", 0.0))

    @property
    def data(self) -> dict:
        return self.event.get("data", {})

    def _enter(self, name: str) -> Optional[dict]:
        if name in self._visited:
            raise ValueError(f"Duplicate step name '{name}' in {self.function_id} run {self.run_id}")
        self._visited.add(name)
        record = self._history.get(name)
        if record is not None:
            self._last_ts = record["ts"]
        return record

    def _remember(self, name: str, record: dict) -> Any:
        self._history[name] = record
        self._last_ts = record["ts"]
        return record["data"]

    def run_step(self, name: str, fn: Callable[[], Any]) -> Any:
        """Run ``fn`` once per run; later invocations get the recorded result."""
        record = self._enter(name)
        if record is not None:
            return record["data"]

        started = time.monotonic()
        result = fn()
        metrics.record_latency(f"step.{self.function_id}", (time.monotonic() - started) * 1000)
        record = self.engine._record_step(self.run_id, name, result)
        return self._remember(name, record)

    def sleep(self, name: str, seconds: float):
        """Suspend the run for at least ``seconds``."""
        if self._enter(name) is not None:
            return
        self.engine._park_sleep(self.run_id, name, seconds)
        raise _Suspend(name, RUN_SLEEPING)

    def wait_for_event(self, name: str, event: str, timeout: float, match: str) -> Optional[dict]:
        """
        Suspend until ``event`` arrives with ``data[match]`` equal to this
        run's ``data[match]``. Returns the event, or None on timeout.
        """
        record = self._enter(name)
        if record is not None:
            return record["data"]

        value = self.data.get(match)
        if value is None:
            raise ValueError(f"Cannot wait on '{event}': run data has no '{match}'")

        engine = self.engine
        buffered = engine._find_recent(event, match, value, since=self._last_ts)
        if buffered is not None:
            return self._remember(name, engine._record_step(self.run_id, name, buffered))

        if engine._park_wait(self.run_id, name, event, match, value, timeout):
            # Close the gap between the buffer check and registration
            buffered = engine._find_recent(event, match, value, since=self._last_ts)
            if buffered is not None:
                engine._record_once(self.run_id, name, buffered)
                engine._unregister_waiter(event, self.run_id, name)
                engine._claim(self.run_id, name)
                return self._remember(name, engine._get_step(self.run_id, name))

        raise _Suspend(name, RUN_WAITING)

    def send_event(self, name: str, event: str, data: dict) -> str:
        """Emit ``event`` exactly once per run. Returns the event id."""
        return self.run_step(name, lambda: self.engine.emit(event, data))


# ═════════════════════════════════════════════════════════════════════════════
# Engine
# ═════════════════════════════════════════════════════════════════════════════

class WorkflowEngine:
    """Event bus, run store and task runner backed by one Redis instance."""

    def __init__(
        self,
        redis_client,
        functions: list[WorkflowFunction],
        deps: Any = None,
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis_client
        self.deps = deps
        self.clock = clock
        self.functions = {fn.id: fn for fn in functions}
        self._subscribers: dict[str, list[WorkflowFunction]] = {}
        for fn in functions:
            self._subscribers.setdefault(fn.trigger, []).append(fn)
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    # ── Events ────────────────────────────────────────────────────────────────

    def emit(self, name: str, data: dict) -> str:
        """Start every subscribed function and resolve matching waits."""
        event = {"id": uuid.uuid4().hex, "name": name, "data": data, "ts": self.clock()}

        for fn in self._subscribers.get(name, []):
            self._start_run(fn, event)

        self._deliver_to_waiters(event)
        self._buffer_event(event)
        metrics.inc_counter(f"events.{name}")
        logger.info(f"Event {name} emitted (id={event['id']}, data={data})")
        return event["id"]

    def _start_run(self, fn: WorkflowFunction, event: dict) -> Optional[str]:
        run_id = uuid.uuid4().hex
        if fn.idempotency_key:
            value = event["data"].get(fn.idempotency_key)
            key = f"{IDEMPOTENCY_PREFIX}{fn.id}:{value}"
            if value is not None and not self.redis.set(key, run_id, nx=True, ex=IDEMPOTENCY_TTL):
                metrics.record_run(fn.id, "deduplicated")
                logger.warning(
                    f"[{fn.id}] {fn.idempotency_key}={value} already has run {self.redis.get(key)}, "
                    f"ignoring event {event['id']}"
                )
                return None

        now = str(self.clock())
        key = f"{RUN_PREFIX}{run_id}"
        pipe = self.redis.pipeline(transaction=True)
        pipe.hset(key, mapping={
            "function_id": fn.id,
            "event": json.dumps(event),
            "status": RUN_QUEUED,
            "attempt": "0",
            "created_at": now,
            "updated_at": now,
        })
        pipe.expire(key, RUN_TTL)
        pipe.sadd(f"{RUNS_BY_FUNCTION_PREFIX}{fn.id}", run_id)
        pipe.execute()
        task_queue.enqueue_task(self.redis, TASK_START, {"run_id": run_id})
        metrics.record_run(fn.id, "started")
        return run_id

    def _deliver_to_waiters(self, event: dict):
        key = f"{WAITERS_PREFIX}{event['name']}"
        for field, raw in self.redis.hgetall(key).items():
            waiter = json.loads(raw)
            if event["data"].get(waiter["match"]) != waiter["value"]:
                continue
            # Record before removing the marker so a crash in between leaves
            # the timeout wake able to resume the run
            won = self._record_once(waiter["run_id"], waiter["step"], event)
            self.redis.hdel(key, field)
            self._claim(waiter["run_id"], waiter["step"])
            if won:
                task_queue.enqueue_task(self.redis, TASK_RESUME, {"run_id": waiter["run_id"]})

    def _buffer_event(self, event: dict):
        key = f"{RECENT_PREFIX}{event['name']}"
        pipe = self.redis.pipeline(transaction=True)
        pipe.lpush(key, json.dumps(event))
        pipe.ltrim(key, 0, RECENT_EVENTS_MAX - 1)
        pipe.expire(key, RECENT_EVENTS_TTL)
        pipe.execute()

    def _find_recent(self, name: str, match: str, value: Any, since: float) -> Optional[dict]:
        # Oldest first: the first matching event after ``since`` wins
        for raw in reversed(self.redis.lrange(f"{RECENT_PREFIX}{name}", 0, -1)):
            event = json.loads(raw)
            if event["ts"] >= since and event["data"].get(match) == value:
                return event
        return None

    # ── Run state ─────────────────────────────────────────────────────────────

    def get_run(self, run_id: str) -> Optional[dict]:
        raw = self.redis.hgetall(f"{RUN_PREFIX}{run_id}")
        if not raw:
            return None
        return {
            "id": run_id,
            "function_id": raw["function_id"],
            "status": raw["status"],
            "attempt": int(raw.get("attempt", 0)),
            "event": json.loads(raw["event"]),
            "output": json.loads(raw["output"]) if raw.get("output") else None,
            "error": raw.get("error"),
            "suspended_at": raw.get("suspended_at", ""),
            "created_at": float(raw.get("created_at", 0)),
            "updated_at": float(raw.get("updated_at", 0)),
        }

    def get_steps(self, run_id: str) -> dict[str, dict]:
        return {
            name: json.loads(raw)
            for name, raw in self.redis.hgetall(f"{STEPS_PREFIX}{run_id}").items()
        }

    def list_runs(self, function_id: str) -> list[dict]:
        runs = [
            self.get_run(run_id)
            for run_id in self.redis.smembers(f"{RUNS_BY_FUNCTION_PREFIX}{function_id}")
        ]
        return sorted((r for r in runs if r), key=lambda r: r["created_at"])

    def _update_run(self, run_id: str, **fields):
        fields["updated_at"] = self.clock()
        self.redis.hset(f"{RUN_PREFIX}{run_id}", mapping={k: str(v) for k, v in fields.items()})

    def _encode_step(self, name: str, result: Any) -> str:
        try:
            return json.dumps({"data": result, "ts": self.clock()})
        except TypeError as e:
            raise TypeError(f"Step '{name}' returned a non-JSON-serialisable result: {e}") from e

    def _record_step(self, run_id: str, name: str, result: Any) -> dict:
        encoded = self._encode_step(name, result)
        key = f"{STEPS_PREFIX}{run_id}"
        self.redis.hset(key, name, encoded)
        self.redis.expire(key, RUN_TTL)
        return json.loads(encoded)

    def _record_once(self, run_id: str, name: str, result: Any) -> bool:
        """Record a sleep/wait outcome unless one exists. True if this call set it."""
        key = f"{STEPS_PREFIX}{run_id}"
        won = self.redis.hsetnx(key, name, self._encode_step(name, result))
        self.redis.expire(key, RUN_TTL)
        return bool(won)

    def _get_step(self, run_id: str, name: str) -> Optional[dict]:
        raw = self.redis.hget(f"{STEPS_PREFIX}{run_id}", name)
        return json.loads(raw) if raw else None

    # ── Suspension ────────────────────────────────────────────────────────────

    def _claim(self, run_id: str, step: str) -> bool:
        """Drop the sleep/wait marker once its outcome is recorded."""
        return self.redis.delete(f"{WAIT_PREFIX}{_wait_field(run_id, step)}") == 1

    def _park_sleep(self, run_id: str, step: str, seconds: float):
        marker = f"{WAIT_PREFIX}{_wait_field(run_id, step)}"
        if self.redis.set(marker, "sleep", nx=True, ex=int(seconds) + WAIT_MARKER_GRACE):
            task_queue.schedule_task(
                self.redis, TASK_WAKE, {"run_id": run_id, "step": step},
                run_at=self.clock() + seconds,
            )

    def _park_wait(self, run_id: str, step: str, event: str, match: str, value: Any, timeout: float) -> bool:
        """Register a wait. Returns False if it was already registered."""
        marker = f"{WAIT_PREFIX}{_wait_field(run_id, step)}"
        if not self.redis.set(marker, "wait", nx=True, ex=int(timeout) + WAIT_MARKER_GRACE):
            return False
        self.redis.hset(
            f"{WAITERS_PREFIX}{event}",
            _wait_field(run_id, step),
            json.dumps({"run_id": run_id, "step": step, "match": match, "value": value}),
        )
        task_queue.schedule_task(
            self.redis, TASK_WAKE, {"run_id": run_id, "step": step, "event": event},
            run_at=self.clock() + timeout,
        )
        return True

    def _unregister_waiter(self, event: str, run_id: str, step: str):
        self.redis.hdel(f"{WAITERS_PREFIX}{event}", _wait_field(run_id, step))

    # ── Task processing ───────────────────────────────────────────────────────

    def process_task(self, task_type: str, payload: dict):
        """Handle one dequeued task. Raises only on engine-level faults."""
        run_id = payload["run_id"]
        run = self.get_run(run_id)
        if run is None:
            logger.warning(f"Dropping {task_type} task for unknown run {run_id}")
            return
        if run["status"] in TERMINAL_STATUSES:
            logger.debug(f"Dropping {task_type} task for finished run {run_id}")
            return

        fn = self.functions.get(run["function_id"])
        if fn is None:
            logger.error(f"Run {run_id} references unknown function {run['function_id']}")
            self._update_run(run_id, status=RUN_FAILED, error="Unknown function")
            return

        lock_key = f"{LOCK_PREFIX}{run_id}"
        if not self.redis.set(lock_key, "1", nx=True, ex=RUN_LOCK_TTL):
            self._reschedule(task_type, payload)
            return

        slot_taken = False
        try:
            if fn.concurrency:
                if not concurrency.acquire_slot(self.redis, fn.id, fn.concurrency):
                    self._reschedule(task_type, payload)
                    return
                slot_taken = True

            if task_type == TASK_WAKE:
                step = payload["step"]
                timed_out = self._record_once(run_id, step, None)
                if payload.get("event"):
                    self._unregister_waiter(payload["event"], run_id, step)
                    if timed_out:
                        logger.info(f"[{fn.id}] run {run_id}: wait '{step}' timed out")
                self._claim(run_id, step)
                if _parked_elsewhere(run, step):
                    # An event already resumed the run
                    return

            self._invoke(fn, self.get_run(run_id))
        finally:
            if slot_taken:
                concurrency.release_slot(self.redis, fn.id)
            self.redis.delete(lock_key)

    def _reschedule(self, task_type: str, payload: dict):
        task_queue.schedule_task(
            self.redis, task_type, payload,
            run_at=self.clock() + BUSY_DELAY + random.uniform(0, BUSY_DELAY),
        )

    def _invoke(self, fn: WorkflowFunction, run: dict):
        run_id = run["id"]
        attempt = run["attempt"]
        self._update_run(run_id, status=RUN_RUNNING, suspended_at="")
        ctx = StepContext(self, run, fn)
        started = time.monotonic()

        try:
            output = fn.handler(ctx, run["event"])
        except _Suspend as suspend:
            self._update_run(run_id, status=suspend.status, suspended_at=suspend.step)
            logger.info(f"[{fn.id}] run {run_id} {suspend.status} at '{suspend.step}'")
            return
        except NonRetriableError as e:
            self._fail(fn, ctx, e)
            return
        except Exception as e:
            if attempt < fn.retries:
                delay = min(RETRY_BASE_DELAY * (2 ** attempt), RETRY_MAX_DELAY) + random.uniform(0, 1)
                self._update_run(run_id, status=RUN_RETRYING, attempt=attempt + 1, error=str(e)[:500])
                task_queue.schedule_task(self.redis, TASK_RETRY, {"run_id": run_id}, run_at=self.clock() + delay)
                metrics.record_run(fn.id, "retried")
                logger.warning(
                    f"[{fn.id}] run {run_id} attempt {attempt + 1}/{fn.retries + 1} failed: {e}, "
                    f"retrying in {delay:.1f}s"
                )
                return
            self._fail(fn, ctx, e)
            return

        self._update_run(run_id, status=RUN_COMPLETED, output=json.dumps(output, default=str))
        metrics.record_run(fn.id, "completed", duration_ms=(time.monotonic() - started) * 1000)
        logger.info(f"[{fn.id}] run {run_id} completed")

    def _fail(self, fn: WorkflowFunction, ctx: StepContext, error: BaseException):
        self._update_run(ctx.run_id, status=RUN_FAILED, error=str(error)[:500])
        metrics.record_run(fn.id, "failed")
        metrics.record_error(fn.id, type(error).__name__, str(error), run_id=ctx.run_id)
        logger.error(f"[{fn.id}] run {ctx.run_id} failed: {error}")

        if fn.on_failure is None:
            return
        if not self.redis.set(f"{FAILURE_FLAG_PREFIX}{ctx.run_id}", "1", nx=True, ex=RUN_TTL):
            return
        try:
            fn.on_failure(ctx, error)
        except Exception as hook_error:
            metrics.record_error(fn.id, "on_failure", str(hook_error), run_id=ctx.run_id)
            logger.exception(f"[{fn.id}] on_failure hook crashed for run {ctx.run_id}: {hook_error}")

    def _handle_task(self, task_id: str):
        meta = task_queue.get_task_meta(self.redis, task_id)
        if not meta:
            logger.warning(f"No metadata for task {task_id}, skipping")
            task_queue.ack_task(self.redis, task_id)
            return
        try:
            self.process_task(meta["task_type"], json.loads(meta.get("payload", "{}")))
        except Exception as e:
            logger.exception(f"Task {task_id} ({meta.get('task_type')}) crashed: {e}")
            task_queue.nack_task(self.redis, task_id, str(e))
            return
        task_queue.ack_task(self.redis, task_id)

    # ── Drivers ───────────────────────────────────────────────────────────────

    def run_until_idle(self, max_tasks: int = 10000) -> int:
        """Process every due task synchronously. Returns how many ran."""
        processed = 0
        while processed < max_tasks:
            task_queue.promote_due_tasks(self.redis, self.clock())
            task_id = task_queue.dequeue_task(self.redis, timeout=0)
            if task_id is None:
                break
            self._handle_task(task_id)
            processed += 1
        return processed

    def start(self, workers: int = 4):
        """Recover stale tasks, then start consumer and scheduler threads."""
        recovered = task_queue.recover_stale_tasks(self.redis)
        if recovered:
            logger.info(f"Recovered {recovered} in-flight task(s) from a previous worker")
        self._stop.clear()
        for i in range(workers):
            t = threading.Thread(target=self._consume_loop, name=f"workflow-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        t = threading.Thread(target=self._scheduler_loop, name="workflow-scheduler", daemon=True)
        t.start()
        self._threads.append(t)
        logger.info(f"Workflow engine started ({workers} workers, {len(self.functions)} functions)")

    def stop(self, timeout: float = 10.0):
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads.clear()
        logger.info("Workflow engine stopped")

    def _scheduler_loop(self):
        while not self._stop.is_set():
            try:
                task_queue.promote_due_tasks(self.redis, self.clock())
                metrics.set_gauge("queue_depth", task_queue.get_queue_length(self.redis))
                metrics.set_gauge("tasks_in_flight", task_queue.get_processing_count(self.redis))
                metrics.set_gauge("tasks_scheduled", task_queue.get_scheduled_count(self.redis))
            except Exception as e:
                logger.error(f"Scheduler loop error: {e}", exc_info=True)
            self._stop.wait(SCHEDULER_INTERVAL)

    def _consume_loop(self):
        while not self._stop.is_set():
            try:
                task_id = task_queue.dequeue_task(self.redis, timeout=2)
                if task_id is None:
                    continue
                self._handle_task(task_id)
            except Exception as e:
                logger.error(f"Consumer loop error: {e}", exc_info=True)
                self._stop.wait(2)

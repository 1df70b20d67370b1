"""
Thread-safe in-memory metrics for the workflow worker.

Run outcomes are counted per workflow function as
``runs.<outcome>.<function_id>`` and rolled up in the snapshot into a
per-function table with a success rate over finished runs. Step and run
durations, recent failures (with run id) and the queue gauges
(queue_depth, tasks_in_flight, tasks_scheduled, dead_letter_count) sit
alongside.

All data is ephemeral (resets on restart). The durable record of every run
lives in Redis and the project tables.
"""

import time
import threading
from typing import Dict, List, Optional
from collections import defaultdict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

_recent_errors: List[dict] = []
MAX_ERRORS = 50

RUN_OUTCOMES = ("started", "completed", "failed", "retried", "deduplicated")


# ── Public API ────────────────────────────────────────────────────────────────

def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'events.tts-completed', 'webhooks.did.done')."""
    with _lock:
        _counters[name] += amount


def record_run(function_id: str, outcome: str, duration_ms: Optional[float] = None):
    """Count a run outcome for a workflow function; completed runs also carry their duration."""
    if outcome not in RUN_OUTCOMES:
        raise ValueError(f"Unknown run outcome '{outcome}'")
    with _lock:
        _counters[f"runs.{outcome}.{function_id}"] += 1
        if duration_ms is not None:
            _add_sample(f"run.{function_id}", duration_ms)


def record_latency(name: str, duration_ms: float):
    """Record a latency sample in milliseconds (e.g. 'step.tts-generator', 'render')."""
    with _lock:
        _add_sample(name, duration_ms)


def _add_sample(name: str, duration_ms: float):
    samples = _latency_samples[name]
    samples.append(duration_ms)
    if len(samples) > MAX_SAMPLES:
        _latency_samples[name] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(function_id: str, error_type: str, message: str, run_id: str = ""):
    """Record a failure for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "function": function_id,
            "error_type": error_type,
            "message": message[:300],
            "run_id": run_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def _function_table() -> Dict[str, dict]:
    table: Dict[str, dict] = defaultdict(lambda: {outcome: 0 for outcome in RUN_OUTCOMES})
    for name, value in _counters.items():
        parts = name.split(".", 2)
        if len(parts) == 3 and parts[0] == "runs" and parts[1] in RUN_OUTCOMES:
            table[parts[2]][parts[1]] = value

    for row in table.values():
        finished = row["completed"] + row["failed"]
        row["success_rate"] = round(row["completed"] / finished * 100, 2) if finished else None
    return dict(table)


def get_snapshot() -> dict:
    """Complete metrics snapshot for the /metrics endpoint."""
    now = time.time()

    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[name] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['function']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "functions": _function_table(),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything. Used by tests."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()

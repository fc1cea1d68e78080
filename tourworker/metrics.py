"""
Thread-safe in-memory metrics for the generation worker.

  - Counters: jobs started/completed/failed, unit outcomes, retries, errors
  - Gauges: active jobs, queue depth
  - Latency: unit generation and composition durations (last 100 samples)
  - Recent errors: last 50 failures for debugging

Everything resets on restart; job history lives in the job store.
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List, Optional

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = defaultdict(float)

_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_recent_errors: List[dict] = []
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    """Increment a counter (e.g. 'jobs.started', 'errors.unit_ProviderTimeout')."""
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def add_gauge(name: str, delta: float):
    with _lock:
        _gauges[name] += delta


def record_latency(name: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[name] = samples[-MAX_SAMPLES:]


def record_error(source: str, error_type: str, message: str, job_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "job_id": job_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def reset():
    """Clear everything (used by tests)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency_samples.clear()
        _recent_errors.clear()


def _ratio(part: int, whole: int) -> Optional[float]:
    return round(part / whole, 3) if whole else None


def _generation_summary() -> dict:
    """Outcome rates since startup. Caller holds _lock."""
    units_done = _counters.get("units.completed", 0)
    units_failed = _counters.get("units.failed", 0)
    jobs_done = _counters.get("jobs.completed", 0)
    jobs_finished = jobs_done + _counters.get("jobs.failed", 0)
    return {
        "unit_success_rate": _ratio(units_done, units_done + units_failed),
        "job_success_rate": _ratio(jobs_done, jobs_finished),
        "retries_per_unit": _ratio(_counters.get("units.retries", 0), units_done + units_failed),
    }


def get_snapshot() -> dict:
    """Snapshot for the /metrics endpoint."""
    now = time.time()
    with _lock:
        latency_stats = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            latency_stats[name] = {
                "p50": ordered[n // 2],
                "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
                "avg": sum(ordered) / n,
                "count": n,
            }

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "generation": _generation_summary(),
            "recent_errors": list(_recent_errors[-10:]),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }

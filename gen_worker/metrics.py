"""
Thread-safe in-memory metrics for the generation worker.

Counters follow a dotted naming scheme:
  dispatch.new / dispatch.legacy / dispatch.fallback / dispatch.failed
  poll.completed / poll.failed / poll.timeout / poll.exhausted / poll.cancelled
  persist.ok / persist.failed
  quota.denied / kick.<status>

All data is ephemeral (resets on restart).
"""

import time
import threading
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_latency_samples: Dict[str, List[float]] = defaultdict(list)
_gauges: Dict[str, float] = {}
_recent_errors: List[dict] = []

MAX_SAMPLES = 100
MAX_ERRORS = 50


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def record_latency(name: str, duration_ms: float):
    """Keep the last MAX_SAMPLES latency samples (ms) per name."""
    with _lock:
        samples = _latency_samples[name]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            del samples[:-MAX_SAMPLES]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(stage: str, error_type: str, message: str, run_id: str = ""):
    """Keep a bounded log of recent failures for root-cause analysis."""
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "stage": stage,
            "error_type": error_type,
            "message": message[:300],
            "run_id": run_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        latency = {}
        for name, samples in _latency_samples.items():
            if not samples:
                continue
            ordered = sorted(samples)
            n = len(ordered)
            latency[name] = {
                "p50": ordered[n // 2],
                "p95": ordered[int(n * 0.95)] if n >= 20 else ordered[-1],
                "avg": sum(ordered) / n,
                "count": n,
            }

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency,
            "recent_errors": list(_recent_errors[-10:]),
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear everything (used by tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()

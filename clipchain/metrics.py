"""
Thread-safe in-memory metrics for the generation service.

Counters are dotted names, e.g.:
  generations.started / generations.completed / generations.failed
  webhook.received.video / webhook.duplicate / webhook.unknown_prediction
  stitch.copy / stitch.reencode / stitch.failed
  frames.failed / credits.refunded

Everything resets on restart; durable history lives in the
video_generations and credit_transactions tables.
"""

import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)
_gauges: Dict[str, float] = {}

MAX_SAMPLES = 100
_latency: Dict[str, Deque[float]] = defaultdict(lambda: deque(maxlen=MAX_SAMPLES))

MAX_ERRORS = 50
_errors: Deque[dict] = deque(maxlen=MAX_ERRORS)


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_latency(endpoint: str, duration_ms: float):
    with _lock:
        _latency[endpoint].append(duration_ms)


def record_error(where: str, error_type: str, message: str, generation_id: str = ""):
    """Keep the last MAX_ERRORS failures for root-cause analysis."""
    with _lock:
        _errors.append({
            "timestamp": time.time(),
            "where": where,
            "error_type": error_type,
            "message": message[:300],
            "generation_id": generation_id,
        })
        _counters[f"errors.{error_type}"] += 1


def get_counter(name: str) -> int:
    with _lock:
        return _counters.get(name, 0)


def _percentile(sorted_samples: list, pct: float) -> float:
    index = min(len(sorted_samples) - 1, int(len(sorted_samples) * pct))
    return sorted_samples[index]


def get_snapshot() -> dict:
    """Point-in-time copy of everything collected, for GET /metrics."""
    now = time.time()
    with _lock:
        latency = {}
        for endpoint, samples in _latency.items():
            if not samples:
                continue
            ordered = sorted(samples)
            latency[endpoint] = {
                "p50": _percentile(ordered, 0.50),
                "p95": _percentile(ordered, 0.95),
                "avg": sum(ordered) / len(ordered),
                "count": len(ordered),
            }

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency,
            "recent_errors": list(_errors)[-10:],
            "uptime_seconds": now - _gauges.get("start_time", now),
        }


def reset():
    """Clear all collected data (tests)."""
    with _lock:
        _counters.clear()
        _gauges.clear()
        _latency.clear()
        _errors.clear()

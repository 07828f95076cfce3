"""
Pipeline metrics kept in process.

Three kinds of series:
  - counters: job outcomes, broadcast events, relay traffic, provider calls
  - histograms: processing and provider latency, broadcast fan-out
  - gauges: queue depth per job state and live stream connections,
    refreshed whenever /metrics is read

Snapshots are served from /metrics.
"""

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Mapping

from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)

_counters: Dict[str, int] = defaultdict(int)
_histograms: Dict[str, List[float]] = defaultdict(list)
_gauges: Dict[str, float] = {}

MAX_HISTOGRAM_SAMPLES = 500  # Rolling window

FANOUT_HISTOGRAM = "broadcast.fanout"


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def observe(name: str, value: float) -> None:
    """Record a histogram sample; only the newest MAX_HISTOGRAM_SAMPLES are kept."""
    bucket = _histograms[name]
    bucket.append(value)
    if len(bucket) > MAX_HISTOGRAM_SAMPLES:
        _histograms[name] = bucket[-MAX_HISTOGRAM_SAMPLES:]


def set_gauge(name: str, value: float) -> None:
    _gauges[name] = value


def record_queue_depth(counts: Mapping[str, int]) -> None:
    """Mirror PriorityJobQueue.get_metrics() into `queue.<state>` gauges."""
    for state, count in counts.items():
        set_gauge(f"queue.{state}", count)


def record_fanout(delivered: int) -> None:
    observe(FANOUT_HISTOGRAM, delivered)


@asynccontextmanager
async def track_duration(service: str, operation: str = "call"):
    """
    Time a block into `<service>.<operation>.duration_ms` and count it as
    `.success` or `.error`.

    Usage:
        async with track_duration("processor", "process"):
            ...
    """
    start = time.monotonic()
    try:
        yield
    except Exception:
        _finish(service, operation, start, "error")
        raise
    _finish(service, operation, start, "success")


def _finish(service: str, operation: str, start: float, status: str) -> None:
    duration_ms = (time.monotonic() - start) * 1000
    observe(f"{service}.{operation}.duration_ms", duration_ms)
    inc(f"{service}.{operation}.{status}")
    log = logger.warning if status == "error" else logger.debug
    log(
        "metrics.call",
        extra={"service": service, "duration_ms": round(duration_ms, 1), "status": status},
    )


def get_counter(name: str) -> int:
    return _counters.get(name, 0)


def get_gauge(name: str) -> float:
    return _gauges.get(name, 0)


def _summarize(samples: List[float]) -> Dict[str, float]:
    ordered = sorted(samples)
    last = len(ordered) - 1
    return {
        "count": len(ordered),
        "p50": round(ordered[int(len(ordered) * 0.5)], 1),
        "p95": round(ordered[min(int(len(ordered) * 0.95), last)], 1),
        "max": round(ordered[-1], 1),
    }


def get_snapshot() -> Dict[str, Any]:
    return {
        "counters": dict(_counters),
        "gauges": dict(_gauges),
        "histograms": {name: _summarize(samples) for name, samples in _histograms.items() if samples},
    }


def reset() -> None:
    _counters.clear()
    _histograms.clear()
    _gauges.clear()

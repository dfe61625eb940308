"""
In-process scheduler metrics: counters for job transitions and deliveries,
histograms for handler durations. Served as a snapshot at /metrics.
"""

import time
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Dict, Any


_counters: Dict[str, int] = defaultdict(int)
_histograms: Dict[str, list] = defaultdict(list)

MAX_HISTOGRAM_SAMPLES = 500  # Rolling window


def inc(name: str, value: int = 1) -> None:
    _counters[name] += value


def observe(name: str, value: float) -> None:
    bucket = _histograms[name]
    bucket.append(value)
    if len(bucket) > MAX_HISTOGRAM_SAMPLES:
        _histograms[name] = bucket[-MAX_HISTOGRAM_SAMPLES:]


@asynccontextmanager
async def track_duration(name: str):
    """
    Record how long the wrapped block took and whether it raised.

    Usage:
        async with track_duration("handler.recurring_messages"):
            result = await handler(ctx, params)
    """
    start = time.monotonic()
    try:
        yield
    except Exception:
        observe(f"{name}.duration_ms", (time.monotonic() - start) * 1000)
        inc(f"{name}.error")
        raise
    observe(f"{name}.duration_ms", (time.monotonic() - start) * 1000)
    inc(f"{name}.success")


def get_snapshot() -> Dict[str, Any]:
    """Counters plus p50/p95/max summaries of every histogram."""
    summaries = {}
    for name, samples in _histograms.items():
        if not samples:
            continue
        ordered = sorted(samples)
        summaries[name] = {
            "count": len(ordered),
            "p50": round(ordered[int(len(ordered) * 0.5)], 1),
            "p95": round(ordered[min(int(len(ordered) * 0.95), len(ordered) - 1)], 1),
            "max": round(ordered[-1], 1),
        }
    return {"counters": dict(_counters), "histograms": summaries}


def reset() -> None:
    """Reset all metrics (useful for testing)."""
    _counters.clear()
    _histograms.clear()

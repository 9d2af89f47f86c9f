import logging
from collections import deque
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

_recent_timings: deque[Dict[str, Any]] = deque(maxlen=50)


def record_timing(label: str, duration_ms: float) -> None:
    _recent_timings.append({"label": label, "duration_ms": round(duration_ms, 2)})


def get_recent_timings() -> List[Dict[str, Any]]:
    return list(_recent_timings)


def summarize_timings() -> Dict[str, Dict[str, float]]:
    """Count / avg / max per label over the recent window."""
    summary: Dict[str, Dict[str, float]] = {}
    for entry in _recent_timings:
        stats = summary.setdefault(entry["label"], {"count": 0, "total_ms": 0.0, "max_ms": 0.0})
        stats["count"] += 1
        stats["total_ms"] += entry["duration_ms"]
        stats["max_ms"] = max(stats["max_ms"], entry["duration_ms"])
    for stats in summary.values():
        stats["avg_ms"] = round(stats.pop("total_ms") / stats["count"], 2)
    return summary


@contextmanager
def time_block(label: str):
    start = perf_counter()
    try:
        yield
    finally:
        duration_ms = (perf_counter() - start) * 1000.0
        record_timing(label, duration_ms)
        logger.debug(f"[perf] {label} took {duration_ms:.2f}ms")

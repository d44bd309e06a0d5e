"""
Per-process latency samples for store transactions and outbound calls.

    async with timeit("store.reconcile"):
        ...

Samples are kept raw and only aggregated when an admin asks for them or
the server shuts down.
"""
from __future__ import annotations
import statistics
import time
from collections import defaultdict, deque
from typing import DefaultDict, Deque, Dict

# stats cover the most recent MAX_SAMPLES per kind; counts cover all
MAX_SAMPLES = 10_000

# event loop is single threaded; no locking
_SAMPLES: DefaultDict[str, Deque[float]] = defaultdict(
    lambda: deque(maxlen=MAX_SAMPLES)
)
_COUNTS: DefaultDict[str, int] = defaultdict(int)
_ERRORS: DefaultDict[str, int] = defaultdict(int)


def record_timing(kind: str, seconds: float, failed: bool = False) -> None:
    _SAMPLES[kind].append(float(seconds))
    _COUNTS[kind] += 1
    if failed:
        _ERRORS[kind] += 1


class timeit:
    """Records the wall time of the block under `kind`, failures included."""
    __slots__ = ("kind", "_started")

    def __init__(self, kind: str):
        self.kind = kind
        self._started = 0.0

    async def __aenter__(self):
        self._started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self.kind, time.perf_counter() - self._started,
                      failed=exc_type is not None)


def _p95(values: Deque[float]) -> float:
    if len(values) < 2:
        return values[0]
    return statistics.quantiles(values, n=20, method="inclusive")[-1]


def summary() -> Dict[str, Dict[str, float]]:
    """
    {kind: {n, errors, window, mean, std, p95, max}}, durations in seconds.
    n and errors count every sample; the rest describe the last `window`.
    """
    out: Dict[str, Dict[str, float]] = {}
    for kind in sorted(_SAMPLES):
        vals = _SAMPLES[kind]
        if not vals:
            continue
        out[kind] = {
            "n": _COUNTS[kind],
            "errors": _ERRORS.get(kind, 0),
            "window": len(vals),
            "mean": statistics.fmean(vals),
            "std": statistics.stdev(vals) if len(vals) > 1 else 0.0,
            "p95": _p95(vals),
            "max": max(vals),
        }
    return out


def reset() -> None:
    _SAMPLES.clear()
    _COUNTS.clear()
    _ERRORS.clear()

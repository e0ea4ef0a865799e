# eventverse/infra/timings.py
from __future__ import annotations
import statistics
import time
from collections import defaultdict
from typing import DefaultDict, Dict, List

# durations in seconds per kind ("mpesa.stk_push", "db.create_tickets", ...)
_SAMPLES: DefaultDict[str, List[float]] = defaultdict(list)


def record(kind: str, seconds: float) -> None:
    _SAMPLES[kind].append(float(seconds))


class timeit:
    """Record how long the block took under ``kind``, errors included.

        async with timeit("card.create_session"):
            await provider.create_session(...)
    """
    __slots__ = ("kind", "started")

    def __init__(self, kind: str):
        self.kind = kind
        self.started = 0.0

    async def __aenter__(self):
        self.started = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record(self.kind, time.perf_counter() - self.started)


def _summary(kind: str, values: List[float]) -> Dict[str, float | int | str]:
    ordered = sorted(values)
    p95 = ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]
    return {
        "kind": kind,
        "n": len(values),
        "mean": statistics.fmean(values),
        "std": statistics.stdev(values) if len(values) > 1 else 0.0,
        "p95": p95,
        "max": ordered[-1],
    }


def snapshot(reset: bool = False) -> List[Dict[str, float | int | str]]:
    out = [
        _summary(kind, values)
        for kind, values in sorted(_SAMPLES.items()) if values
    ]
    if reset:
        _SAMPLES.clear()
    return out

# priella/infra/timings.py
from __future__ import annotations
import time
import statistics
from typing import Dict, List

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}


def _now() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("ledger.complete"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = _now()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, _now() - self._t0)


# ------------ stats only on read ------------
def snapshot() -> List[Dict[str, float]]:
    """One aggregate per kind, sorted by kind. Values in milliseconds."""
    out = []
    for kind in sorted(_TIMINGS):
        vals = _TIMINGS[kind]
        if not vals:
            continue
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean_ms": statistics.mean(vals) * 1000,
            "max_ms": max(vals) * 1000,
            "std_ms": (
                statistics.stdev(vals) * 1000 if len(vals) > 1 else 0.0
            ),
        })
    return out

from __future__ import annotations
import logging
from collections import deque
from threading import Lock
from typing import Deque, Dict, Optional, Sequence
from clubwatch.models import BenchmarkStatus, PerformanceBenchmark, Trend

log = logging.getLogger(__name__)

WINDOW     = 10
TREND_BAND = 0.05

# operation, baseline ms, threshold ms
DEFAULT_BENCHMARKS = [
    ("find_clubs_by_liga",          50,  100),
    ("find_viktoria_club_by_team",  20,   50),
    ("get_club_with_logo",          30,   75),
    ("get_club_statistics",        100,  200),
    ("validate_club_in_liga",       25,   60),
    ("create_club_if_not_exists",  150,  300),
]

def operation_for(metric_name: str) -> str:
    op = metric_name[len("club_"):] if metric_name.startswith("club_") else metric_name
    return op[:-len("_duration")] if op.endswith("_duration") else op

def metric_for(operation: str) -> str:
    return f"club_{operation}_duration"

def classify(current: float, baseline: float, threshold: float) -> str:
    if current <= baseline:  return BenchmarkStatus.GOOD
    if current <= threshold: return BenchmarkStatus.WARNING
    return BenchmarkStatus.CRITICAL

def direction(new: float, old: float, band: float = TREND_BAND) -> str:
    if new < old * (1 - band): return Trend.IMPROVING
    if new > old * (1 + band): return Trend.DEGRADING
    return Trend.STABLE

def trend(values: Sequence[float]) -> Dict[str, float]:
    """First half vs second half of a series; change is in percent."""
    if len(values) < 2: return {"trend": Trend.STABLE, "change": 0.0}
    mid = len(values) // 2
    first, second = sum(values[:mid]) / mid, sum(values[mid:]) / (len(values) - mid)
    change = ((second - first) / first) * 100 if first else 0.0
    label  = Trend.IMPROVING if change < -TREND_BAND * 100 else Trend.DEGRADING if change > TREND_BAND * 100 else Trend.STABLE
    return {"trend": label, "change": change}

class BenchmarkTracker:
    def __init__(self, benchmarks: Optional[Sequence] = None, window: int = WINDOW):
        self.window = window
        self._benchmarks: Dict[str, PerformanceBenchmark] = {}
        self._samples: Dict[str, Deque[float]] = {}
        self._lock = Lock()
        for op, baseline, threshold in (DEFAULT_BENCHMARKS if benchmarks is None else benchmarks):
            self.add(op, baseline, threshold)

    def add(self, operation: str, baseline: float, threshold: float) -> PerformanceBenchmark:
        if threshold < baseline: raise ValueError(f"{operation}: threshold {threshold} below baseline {baseline}")
        with self._lock:
            bm = PerformanceBenchmark(operation, float(baseline), float(threshold), current=float(baseline))
            self._benchmarks[operation] = bm
            self._samples[operation] = deque(maxlen=self.window)
        return bm

    def tracks(self, metric_name: str) -> bool:
        return operation_for(metric_name) in self._benchmarks

    def observe(self, metric_name: str, value: float) -> Optional[PerformanceBenchmark]:
        op = operation_for(metric_name)
        with self._lock:
            bm = self._benchmarks.get(op)
            if bm is None: return None
            samples = self._samples[op]; samples.append(float(value))
            previous   = bm.current
            bm.current = sum(samples) / len(samples)
            bm.status  = classify(bm.current, bm.baseline, bm.threshold)
            bm.trend   = direction(bm.current, previous)
            snapshot   = PerformanceBenchmark(**bm.to_dict())
        if snapshot.status == BenchmarkStatus.CRITICAL:
            log.warning(f"Benchmark {op} critical: {snapshot.current:.1f}ms (threshold {snapshot.threshold}ms)")
        return snapshot

    def get(self, operation: str) -> Optional[PerformanceBenchmark]:
        with self._lock:
            bm = self._benchmarks.get(operation)
            return PerformanceBenchmark(**bm.to_dict()) if bm else None

    def all(self) -> Dict[str, PerformanceBenchmark]:
        with self._lock: return {op: PerformanceBenchmark(**bm.to_dict()) for op, bm in self._benchmarks.items()}

    def summary(self) -> Dict[str, Dict[str, int]]:
        by_status: Dict[str, int] = {}; by_trend: Dict[str, int] = {}
        for bm in self.all().values():
            by_status[bm.status] = by_status.get(bm.status, 0) + 1
            by_trend[bm.trend]   = by_trend.get(bm.trend, 0) + 1
        return {"by_status": by_status, "by_trend": by_trend}

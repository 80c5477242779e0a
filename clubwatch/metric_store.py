from __future__ import annotations
import logging, math
from collections import deque
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Optional
from clubwatch.models import MetricKind, MetricPoint, canonical_tags, utcnow

log = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000

# name, kind, unit, description
DEFAULT_METRICS = [
    ("club_creation_rate",              MetricKind.COUNTER,   "/min",    "Rate of club creation operations"),
    ("club_update_rate",                MetricKind.COUNTER,   "/min",    "Rate of club update operations"),
    ("club_deletion_rate",              MetricKind.COUNTER,   "/min",    "Rate of club deletion operations"),
    ("club_validation_errors",          MetricKind.COUNTER,   " errors", "Number of club validation errors"),
    ("club_cache_hit_rate",             MetricKind.GAUGE,     "%",       "Club cache hit rate percentage"),
    ("club_cache_miss_rate",            MetricKind.GAUGE,     "%",       "Club cache miss rate percentage"),
    ("club_query_response_time",        MetricKind.HISTOGRAM, "ms",      "Club query response time distribution"),
    ("club_game_processing_time",       MetricKind.HISTOGRAM, "ms",      "Club-based game processing time"),
    ("club_table_calculation_duration", MetricKind.HISTOGRAM, "ms",      "Club table calculation duration"),
    ("club_migration_progress",         MetricKind.GAUGE,     "%",       "Club migration progress percentage"),
    ("active_clubs_count",              MetricKind.GAUGE,     " clubs",  "Number of active clubs"),
    ("viktoria_clubs_count",            MetricKind.GAUGE,     " clubs",  "Number of Viktoria clubs"),
    ("opponent_clubs_count",            MetricKind.GAUGE,     " clubs",  "Number of opponent clubs"),
    ("club_based_games_count",          MetricKind.GAUGE,     " games",  "Number of club-based games"),
    ("club_table_entries_count",        MetricKind.GAUGE,     " entries", "Number of club-based table entries"),
    ("system_cpu_percent",              MetricKind.GAUGE,     "%",       "Host CPU utilisation"),
    ("system_memory_percent",           MetricKind.GAUGE,     "%",       "Host memory utilisation"),
]

class MetricSeries:
    def __init__(self, name: str, kind: str, unit: str = "", description: str = "", capacity: int = DEFAULT_CAPACITY):
        self.name = name; self.kind = kind; self.unit = unit; self.description = description
        self.capacity = capacity
        self._points: Deque[MetricPoint] = deque(maxlen=capacity)
        self._lock = Lock()

    def append(self, point: MetricPoint) -> None:
        with self._lock: self._points.append(point)

    def points(self) -> List[MetricPoint]:
        with self._lock: return list(self._points)

    def latest(self) -> Optional[MetricPoint]:
        with self._lock: return self._points[-1] if self._points else None

    def tail(self, count: int) -> List[float]:
        with self._lock: pts = list(self._points)[-count:] if count > 0 else []
        return [p.value for p in pts]

    def drop_before(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [p for p in self._points if p.timestamp >= cutoff]
            removed = len(self._points) - len(kept)
            if removed:
                self._points.clear(); self._points.extend(kept)
        return removed

    def __len__(self) -> int:
        with self._lock: return len(self._points)

class MetricStore:
    def __init__(self, capacity: int = DEFAULT_CAPACITY, clock: Callable[[], datetime] = utcnow, defaults: bool = True):
        self.capacity = capacity
        self._clock   = clock
        self._series: Dict[str, MetricSeries] = {}
        self._lock    = Lock()
        if defaults:
            for name, kind, unit, desc in DEFAULT_METRICS: self.register(name, kind, unit, desc)

    def register(self, name: str, kind: str = MetricKind.GAUGE, unit: str = "", description: str = "") -> MetricSeries:
        if kind not in MetricKind.ALL: raise ValueError(f"Unknown metric kind: {kind}")
        with self._lock:
            series = self._series.get(name)
            if series is None:
                series = self._series[name] = MetricSeries(name, kind, unit, description, self.capacity)
        return series

    def has(self, name: str) -> bool:
        return name in self._series

    def series(self, name: str) -> Optional[MetricSeries]:
        return self._series.get(name)

    def names(self) -> List[str]:
        with self._lock: return list(self._series)

    def unit(self, name: str) -> str:
        s = self._series.get(name)
        return s.unit if s else ""

    def record(self, name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> bool:
        series = self._series.get(name)
        if series is None:
            log.warning(f"Unknown metric: {name}"); return False
        try:
            value = float(value)
        except (TypeError, ValueError):
            log.warning(f"Ignoring non-numeric value for {name}: {value!r}"); return False
        if math.isnan(value):
            log.warning(f"Ignoring NaN value for {name}"); return False
        try:
            tag_items = canonical_tags(tags)
        except (AttributeError, TypeError):
            log.warning(f"Ignoring malformed tags for {name}: {tags!r}"); tag_items = ()
        series.append(MetricPoint(self._clock(), value, tag_items))
        log.debug(f"Recorded metric {name}: {value} {dict(tag_items)}")
        return True

    def latest(self, name: str) -> Optional[float]:
        series = self._series.get(name)
        point  = series.latest() if series else None
        return point.value if point else None

    def latest_point(self, name: str) -> Optional[MetricPoint]:
        series = self._series.get(name)
        return series.latest() if series else None

    def recent_values(self, name: str, count: int) -> List[float]:
        series = self._series.get(name)
        return series.tail(count) if series else []

    def window(self, name: str, window: timedelta) -> List[MetricPoint]:
        series = self._series.get(name)
        if series is None: return []
        cutoff = self._clock() - window
        return [p for p in series.points() if p.timestamp >= cutoff]

    def stats(self, name: str, window: timedelta = timedelta(minutes=60)) -> Optional[Dict[str, float]]:
        values = [p.value for p in self.window(name, window)]
        if not values: return None
        return {"min": min(values), "max": max(values), "avg": sum(values) / len(values),
                "count": len(values), "latest": values[-1]}

    def export_all(self) -> Dict[str, Any]:
        with self._lock: series = list(self._series.values())
        metrics = {}
        for s in series:
            latest = s.latest()
            metrics[s.name] = {"type": s.kind, "description": s.description, "unit": s.unit,
                               "point_count": len(s), "latest": latest.to_dict() if latest else None,
                               "stats": self.stats(s.name)}
        return {"timestamp": self._clock().isoformat(), "system": "clubwatch-metrics", "metrics": metrics}

    def purge_older_than(self, age: timedelta) -> int:
        cutoff = self._clock() - age
        with self._lock: series = list(self._series.values())
        total = 0
        for s in series:
            removed = s.drop_before(cutoff)
            if removed: log.debug(f"Cleared {removed} old points from {s.name}")
            total += removed
        return total

    @property
    def total_points(self) -> int:
        with self._lock: series = list(self._series.values())
        return sum(len(s) for s in series)

from __future__ import annotations
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple
from clubwatch.collectors.base import BaseCollector, Sample
from clubwatch.models import utcnow

log = logging.getLogger(__name__)

ENTITY_METRICS = ("active_clubs_count", "viktoria_clubs_count", "opponent_clubs_count",
                  "club_based_games_count", "club_table_entries_count")

class CacheCounter:
    def __init__(self):
        self._hits = 0; self._misses = 0; self._lock = Lock()

    def hit(self) -> None:
        with self._lock: self._hits += 1

    def miss(self) -> None:
        with self._lock: self._misses += 1

    def drain(self) -> Optional[Tuple[float, float]]:
        """Hit and miss rate in percent since the last drain, or None without traffic."""
        with self._lock:
            hits, misses = self._hits, self._misses
            self._hits = self._misses = 0
        total = hits + misses
        if not total: return None
        return hits / total * 100, misses / total * 100

class BasicCollector(BaseCollector):
    def collect(self) -> List[Sample]:
        fn = self._source_call("entity_counts")
        if fn is None: return []
        counts: Dict[str, Any] = fn() or {}
        return [self._sample(name, counts[name]) for name in ENTITY_METRICS if counts.get(name) is not None]

class PerformanceCollector(BaseCollector):
    def __init__(self, cfg: Dict, source: Any = None, cache: Optional[CacheCounter] = None):
        super().__init__(cfg, source); self.cache = cache

    def collect(self) -> List[Sample]:
        samples: List[Sample] = []
        rates = self.cache.drain() if self.cache else None
        if rates is None and self._source_call("cache_metrics"):
            cm = self._source_call("cache_metrics")() or {}
            if cm.get("hit_rate") is not None and cm.get("miss_rate") is not None:
                rates = (cm["hit_rate"] * 100, cm["miss_rate"] * 100)
        if rates is not None:
            samples.append(self._sample("club_cache_hit_rate", rates[0]))
            samples.append(self._sample("club_cache_miss_rate", rates[1]))
        fn = self._source_call("performance_metrics")
        if fn:
            pm = fn() or {}
            if pm.get("average_response_time") is not None:
                samples.append(self._sample("club_query_response_time", pm["average_response_time"]))
            if pm.get("table_calculation_time") is not None:
                samples.append(self._sample("club_table_calculation_duration", pm["table_calculation_time"]))
        return samples

class OperationalCollector(BaseCollector):
    def __init__(self, cfg: Dict, source: Any = None, clock: Callable[[], datetime] = utcnow):
        super().__init__(cfg, source); self._clock = clock
        self.lookback = timedelta(minutes=float(cfg.get("lookback_minutes", 60)))

    def collect(self) -> List[Sample]:
        samples: List[Sample] = []
        fn = self._source_call("recent_activity")
        if fn:
            activity = fn(self._clock() - self.lookback) or {}
            if activity.get("created") is not None: samples.append(self._sample("club_creation_rate", activity["created"]))
            if activity.get("updated") is not None: samples.append(self._sample("club_update_rate", activity["updated"]))
        fn = self._source_call("migration_progress")
        if fn:
            samples.append(self._sample("club_migration_progress", fn() or 0))
        return samples

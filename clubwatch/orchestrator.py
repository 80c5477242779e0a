from __future__ import annotations
import copy, logging, signal, socket, threading
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Callable, Dict, List, Optional
from clubwatch import __version__
from clubwatch.alerters import make_alerter
from clubwatch.benchmarks import BenchmarkTracker, metric_for, trend
from clubwatch.collectors import (BaseCollector, BasicCollector, CacheCounter, OperationalCollector,
                                  PerformanceCollector, SystemCollector)
from clubwatch.config import (DEFAULTS, build_benchmarks, build_channels, build_escalations, build_rules,
                              cfg_get, deep_merge)
from clubwatch.dispatcher import NotificationDispatcher
from clubwatch.escalation import EscalationMonitor
from clubwatch.evaluator import RuleEvaluator
from clubwatch.events import EventHub
from clubwatch.metric_store import MetricStore
from clubwatch.models import Alert, AlertRule, MetricKind, Severity, ValidationError, utcnow

log = logging.getLogger(__name__)

# event -> (metric, value key or None for a unit count, ((tag, data key), ...))
EVENT_METRICS = {
    "club.created":          ("club_creation_rate", None, (("club_type", "club_type"),)),
    "club.updated":          ("club_update_rate", None, (("club_id", "id"),)),
    "club.deleted":          ("club_deletion_rate", None, (("club_id", "id"),)),
    "club.validation.error": ("club_validation_errors", None, (("error_type", "type"), ("club_id", "club_id"))),
    "club.game.processed":   ("club_game_processing_time", "duration", (("game_id", "game_id"), ("liga_id", "liga_id"))),
    "club.table.calculated": ("club_table_calculation_duration", "duration", (("liga_id", "liga_id"), ("club_count", "club_count"))),
    "club.query.completed":  ("club_query_response_time", "duration", (("operation", "operation"),)),
}
CACHE_EVENTS  = ("club.cache.hit", "club.cache.miss")
DOMAIN_EVENTS = tuple(EVENT_METRICS) + CACHE_EVENTS

TEST_VALUES = {Severity.CRITICAL: 100, Severity.WARNING: 50, Severity.INFO: 10}

class PeriodicTask(threading.Thread):
    def __init__(self, name: str, fn: Callable[[], Any], interval: float, clock: Callable[[], datetime] = utcnow):
        super().__init__(name=f"clubwatch-{name}", daemon=True)
        self.task = name; self.fn = fn; self.interval = interval; self.clock = clock
        self.ticks = 0; self.last_run: Optional[datetime] = None; self.last_error: Optional[str] = None
        self._halt = threading.Event()

    def stop(self) -> None: self._halt.set()

    def tick(self) -> None:
        try:
            self.fn(); self.last_error = None
        except Exception as e:
            self.last_error = str(e)
            log.error(f"Task {self.task} error: {e}", exc_info=True)
        self.ticks += 1; self.last_run = self.clock()

    def run(self) -> None:
        log.debug(f"Task started: {self.task} (interval={self.interval}s)")
        while not self._halt.is_set():
            self.tick()
            self._halt.wait(timeout=self.interval)

def _interval(cfg: Dict, *keys: str, scale: float = 1.0) -> float:
    raw = cfg_get(cfg, *keys)
    try: value = float(raw) * scale
    except (TypeError, ValueError): raise ValidationError(f"{'.'.join(keys)} must be a number, got {raw!r}") from None
    if value <= 0: raise ValidationError(f"{'.'.join(keys)} must be > 0")
    return value

class MonitoringOrchestrator:
    def __init__(self, cfg: Optional[Dict] = None, source: Any = None, clock: Callable[[], datetime] = utcnow,
                 alerter_factory=make_alerter, scheduler=None):
        self.cfg        = deep_merge(DEFAULTS, cfg or {})
        self.source     = source
        self._clock     = clock
        self.started_at = clock()
        self.last_check: Optional[datetime] = None
        self.hostname   = cfg_get(self.cfg, "monitor", "host_tag") or socket.gethostname()
        self.events     = EventHub()
        self.cache      = CacheCounter()

        self.store = MetricStore(int(cfg_get(self.cfg, "metrics", "capacity", default=1000)), clock)
        benchmarks = build_benchmarks(self.cfg)
        self.benchmarks = BenchmarkTracker(benchmarks)
        for op, _, _ in benchmarks:
            self.store.register(metric_for(op), MetricKind.TIMER, "ms", f"Duration of {op}")

        ncfg = self.cfg.get("notifications", {})
        self.dispatcher = NotificationDispatcher(build_channels(self.cfg), max_workers=int(ncfg.get("max_workers", 4)),
                                                 retries=int(ncfg.get("retries", 2)),
                                                 retry_backoff=float(ncfg.get("retry_backoff", 30)),
                                                 history_size=int(ncfg.get("history_size", 1000)),
                                                 scheduler=scheduler, alerter_factory=alerter_factory, clock=clock)
        self.evaluator  = RuleEvaluator(build_rules(self.cfg), on_trigger=self._on_trigger, events=self.events,
                                        units=self.store.unit, clock=clock)
        self.escalation = EscalationMonitor(self.dispatcher, self.evaluator.active_alerts, build_escalations(self.cfg), clock)
        if not self.dispatcher.enabled_channels():
            log.warning("No notification channels enabled, alerts will only be logged")

        self._tasks: List[PeriodicTask] = []
        self._running = False
        self._exit    = threading.Event()
        self._lock    = threading.Lock()
        for event in DOMAIN_EVENTS: self.events.subscribe(event, partial(self._on_event, event))

    @classmethod
    def from_config(cls, path: Optional[str] = None, **kwargs) -> "MonitoringOrchestrator":
        from clubwatch.config import load_config
        return cls(load_config(path), **kwargs)

    def _enabled(self, section: str) -> bool:
        return bool(cfg_get(self.cfg, section, "enabled", default=True))

    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    def start(self, tasks: Optional[List[PeriodicTask]] = None) -> None:
        with self._lock:
            if self._running:
                log.warning("Monitoring already running"); return
            self._tasks = tasks if tasks is not None else self._build_tasks()
            self._running = True
            for t in self._tasks: t.start()
        log.info(f"ClubWatch started: host={self.hostname}, tasks={[t.task for t in self._tasks]}")

    def stop(self) -> None:
        with self._lock:
            if not self._running: return
            self._running = False
            tasks, self._tasks = self._tasks, []
        for t in tasks: t.stop()
        for t in tasks: t.join(timeout=5)
        log.info("ClubWatch stopped.")

    def shutdown(self) -> None:
        self.stop()
        self.dispatcher.shutdown()

    def run(self) -> None:
        self.start()
        signal.signal(signal.SIGINT,  self._signal)
        signal.signal(signal.SIGTERM, self._signal)
        while not self._exit.wait(timeout=1): pass
        self.shutdown()

    def _signal(self, sig, frame) -> None:
        log.info(f"Signal {sig} received, shutting down...")
        self._exit.set()

    def _build_tasks(self) -> List[PeriodicTask]:
        tasks: List[PeriodicTask] = []
        if self._enabled("metrics"):
            mcfg = self.cfg["metrics"]
            perf = _interval(self.cfg, "metrics", "performance_interval")
            collectors = [("basic", BasicCollector({}, self.source), _interval(self.cfg, "metrics", "basic_interval")),
                          ("performance", PerformanceCollector({}, self.source, self.cache), perf),
                          ("operational", OperationalCollector({}, self.source, self._clock),
                           _interval(self.cfg, "metrics", "operational_interval"))]
            if mcfg.get("system", True):
                collectors.append(("system", SystemCollector({"host_tag": self.hostname}), perf))
            for name, collector, every in collectors:
                tasks.append(PeriodicTask(name, partial(self.collect, collector), every, self._clock))
        if self._enabled("alerting"):
            tasks.append(PeriodicTask("alerts", self.check_rules, _interval(self.cfg, "alerting", "check_interval"), self._clock))
        if self._enabled("escalation"):
            tasks.append(PeriodicTask("escalation", self.escalation.scan, _interval(self.cfg, "escalation", "interval"), self._clock))
        if self._enabled("cleanup"):
            tasks.append(PeriodicTask("cleanup", self.cleanup, _interval(self.cfg, "cleanup", "interval_hours", scale=3600), self._clock))
        return tasks

    # Ingestion

    def record_metric(self, name: str, value: Any, tags: Optional[Dict[str, Any]] = None) -> bool:
        try:
            if not self.store.record(name, value, tags): return False
            if self._enabled("alerting"): self.evaluator.process_metric(name, value, tags)
            if self.benchmarks.tracks(name): self.benchmarks.observe(name, value)
            return True
        except Exception as e:
            log.error(f"Failed to record metric {name}: {e}", exc_info=True)
            return False

    def record_timing(self, operation: str, duration_ms: float, tags: Optional[Dict[str, Any]] = None) -> bool:
        return self.record_metric(metric_for(operation), duration_ms, tags)

    def collect(self, collector: BaseCollector) -> int:
        recorded = 0
        for name, value, tags in collector.collect():
            recorded += self.record_metric(name, value, tags)
        return recorded

    def handle_event(self, event: str, data: Optional[Dict[str, Any]] = None) -> bool:
        data = data or {}
        if event == "club.cache.hit":  self.cache.hit();  return True
        if event == "club.cache.miss": self.cache.miss(); return True
        mapping = EVENT_METRICS.get(event)
        if mapping is None:
            log.debug(f"Ignoring unknown event: {event}"); return False
        metric, value_key, tag_keys = mapping
        value = 1 if value_key is None else (data.get(value_key) or 0)
        tags  = {tag: str(data[key]) if data.get(key) is not None else "unknown" for tag, key in tag_keys}
        ok = self.record_metric(metric, value, tags)
        op = data.get("operation")
        if event == "club.query.completed" and op and self.benchmarks.tracks(metric_for(op)):
            self.record_timing(op, value)
        return ok

    def _on_event(self, event: str, payload: Dict[str, Any]) -> None:
        self.handle_event(event, payload)

    def _on_trigger(self, alert: Alert, rule: AlertRule) -> None:
        self.dispatcher.dispatch(alert, rule.channels)
        if self._enabled("escalation"): self.escalation.on_trigger(alert, skip=rule.channels)

    # Periodic bodies

    def check_rules(self) -> int:
        checked = 0
        for rule in self.evaluator.rules():
            if not rule.enabled: continue
            point = self.store.latest_point(rule.metric)
            if point is None: continue
            self.evaluator.recheck(rule.id, point.value, point.tag_map, point.timestamp); checked += 1
        self.last_check = self._clock()
        log.debug(f"Re-checked {checked} alert rules")
        return checked

    def cleanup(self) -> Dict[str, int]:
        c = self.cfg.get("cleanup", {})
        result = {
            "metric_points": self.store.purge_older_than(timedelta(hours=float(c.get("metric_retention_hours", 24)))),
            "alerts":        self.evaluator.cleanup(timedelta(days=float(c.get("retention_days", 30)))),
            "notifications": self.dispatcher.trim_history(float(c.get("notification_retention_hours", 24)) * 3600),
        }
        result["escalations"] = self.escalation.retain(a.id for a in self.evaluator.alerts() if a.is_open)
        log.info(f"Monitoring data cleanup completed: {result}")
        return result

    # Status

    def _component(self, section: str, *tasks: str) -> str:
        if not self._running or not self._enabled(section): return "stopped"
        failing = [t for t in self._tasks if t.task in tasks and t.last_error]
        return "error" if failing else "running"

    def get_system_status(self) -> Dict[str, Any]:
        now    = self._clock()
        uptime = (now - self.started_at).total_seconds()
        active = self.evaluator.active_alerts()
        status = "critical" if any(a.is_critical for a in active) else "degraded" if active else "healthy"
        summary = self.evaluator.summary()
        total   = self.store.total_points
        return {
            "status": status, "uptime": int(uptime), "version": __version__,
            "last_check": (self.last_check or now).isoformat(),
            "components": {
                "metrics_collection": self._component("metrics", "basic", "performance", "operational", "system"),
                "alerting":           self._component("alerting", "alerts"),
                "escalation":         self._component("escalation", "escalation"),
                "notifications":      "running" if self.dispatcher.enabled_channels() else "stopped",
            },
            "statistics": {
                "total_metrics":      total,
                "active_alerts":      len(active),
                "metrics_per_second": round(total / uptime, 2) if uptime > 0 else 0.0,
                "alerts_today":       summary["resolved"]["today"] + sum(summary["active"].values()),
            },
            "benchmarks": self.benchmarks.summary(),
        }

    def get_health_check(self) -> Dict[str, Any]:
        st = self.get_system_status()
        checks = {name: state == "running" for name, state in st["components"].items()}
        checks["source"] = self._ping_source()
        return {"status": st["status"], "timestamp": self._clock().isoformat(), "uptime": st["uptime"],
                "version": st["version"], "checks": checks}

    def _ping_source(self) -> bool:
        ping = getattr(self.source, "ping", None)
        if not callable(ping): return self.source is not None
        try: return bool(ping())
        except Exception as e:
            log.warning(f"Source health check failed: {e}"); return False

    # Configuration

    def get_configuration(self) -> Dict[str, Any]:
        return copy.deepcopy(self.cfg)

    def update_configuration(self, overrides: Dict[str, Any]) -> None:
        previous = self.cfg
        self.cfg = deep_merge(self.cfg, overrides)
        try:
            tasks = self._build_tasks()
        except ValidationError:
            self.cfg = previous; raise
        for cid, ccfg in (cfg_get(overrides, "notifications", "channels", default={}) or {}).items():
            if isinstance(ccfg, dict) and "enabled" in ccfg: self.dispatcher.toggle_channel(cid, bool(ccfg["enabled"]))
        log.info("Updated monitoring configuration")
        if self._running:
            self.stop(); self.start(tasks)

    # Diagnostics

    def export_monitoring_data(self) -> Dict[str, Any]:
        summary = self.evaluator.summary()
        for entry in summary["top_alerts"]: entry["last_occurrence"] = entry["last_occurrence"].isoformat()
        return {
            "timestamp":     self._clock().isoformat(),
            "system":        "clubwatch",
            "version":       __version__,
            "system_status": self.get_system_status(),
            "metrics":       self.store.export_all(),
            "alerts":        summary,
            "active_alerts": [a.to_dict() for a in self.evaluator.active_alerts()],
            "benchmarks":    {op: bm.to_dict() for op, bm in self.benchmarks.all().items()},
            "notifications": self.dispatcher.stats(),
            "configuration": _redact(self.get_configuration()),
        }

    def test_alert(self, severity: str = Severity.INFO) -> Optional[Alert]:
        if severity not in Severity.ALL: raise ValidationError(f"unknown severity {severity!r}")
        value = TEST_VALUES[severity]
        self.store.register("test_metric", MetricKind.GAUGE, "", "Synthetic metric for alert tests")
        self.evaluator.add_rule(AlertRule("test-alert", "Test Alert", "test_metric", "gt", value - 1, severity,
                                          f"Test alert with {severity} severity", cooldown=0, channels=["log", "console"]))
        try:
            alert = self.evaluator.evaluate("test-alert", value)
        finally:
            self.evaluator.remove_rule("test-alert")
        log.info(f"Test alert triggered with severity: {severity}")
        return alert

    def metric_trend(self, name: str, hours: float = 24) -> Dict[str, Any]:
        values = [p.value for p in self.store.window(name, timedelta(hours=hours))]
        result = trend(values)
        result.update({"metric": name, "points": len(values),
                       "average": sum(values) / len(values) if values else None})
        return result

_SECRET_KEYS = ("password", "Authorization", "url")

def _redact(d: Any) -> Any:
    if isinstance(d, dict):
        return {k: ("***" if k in _SECRET_KEYS and v else _redact(v)) for k, v in d.items()}
    if isinstance(d, list): return [_redact(v) for v in d]
    return d

from __future__ import annotations
import logging
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from clubwatch.events import ALERT_ACKNOWLEDGED, ALERT_RESOLVED, ALERT_TRIGGERED, EventHub
from clubwatch.models import (Alert, AlertRule, AlertStatus, Severity, ValidationError, compare,
                              new_alert_id, signature, utcnow)

log = logging.getLogger(__name__)

Signature = Tuple[str, Tuple[Tuple[str, str], ...]]

def _rule(rid, name, metric, op, value, sev, desc, cooldown_min, channels, consecutive=None, window_min=None) -> AlertRule:
    return AlertRule(rid, name, metric, op, value, sev, desc, True, cooldown_min * 60.0, consecutive,
                     window_min * 60.0 if window_min else None, channels)

DEFAULT_RULES = [
    _rule("club-validation-errors-warning", "Club Validation Errors Warning", "club_validation_errors", "gt", 10,
          Severity.WARNING, "High number of club validation errors detected", 15, ["log", "console"], 2, 5),
    _rule("club-validation-errors-critical", "Club Validation Errors Critical", "club_validation_errors", "gt", 50,
          Severity.CRITICAL, "Critical number of club validation errors detected", 5, ["log", "console", "webhook"], 1),
    _rule("club-cache-hit-rate-warning", "Low Club Cache Hit Rate", "club_cache_hit_rate", "lt", 60,
          Severity.WARNING, "Club cache hit rate is below optimal threshold", 30, ["log"], 3, 10),
    _rule("club-cache-hit-rate-critical", "Critical Club Cache Hit Rate", "club_cache_hit_rate", "lt", 40,
          Severity.CRITICAL, "Club cache hit rate is critically low", 10, ["log", "console", "webhook"]),
    _rule("club-query-response-time-warning", "Slow Club Query Response", "club_query_response_time", "gt", 1000,
          Severity.WARNING, "Club queries are responding slowly", 20, ["log"], 3, 5),
    _rule("club-query-response-time-critical", "Critical Club Query Response Time", "club_query_response_time", "gt", 5000,
          Severity.CRITICAL, "Club queries are critically slow", 5, ["log", "console", "webhook"]),
    _rule("club-table-calculation-slow", "Slow Club Table Calculation", "club_table_calculation_duration", "gt", 10000,
          Severity.WARNING, "Club table calculations are taking too long", 30, ["log"]),
    _rule("club-table-calculation-critical", "Critical Club Table Calculation Duration", "club_table_calculation_duration", "gt", 30000,
          Severity.CRITICAL, "Club table calculations are critically slow", 10, ["log", "console", "webhook"]),
    _rule("no-active-clubs", "No Active Clubs", "active_clubs_count", "lt", 1,
          Severity.CRITICAL, "No active clubs found in the system", 5, ["log", "console", "webhook"]),
    _rule("low-club-count", "Low Club Count", "active_clubs_count", "lt", 10,
          Severity.WARNING, "Low number of active clubs in the system", 60, ["log"]),
]

LOCK_STRIPES = 64

class _Track:
    __slots__ = ("failures", "last_failure", "last_trigger", "last_point")

    def __init__(self):
        self.failures = 0
        self.last_failure: Optional[datetime] = None
        self.last_trigger: Optional[datetime] = None
        self.last_point: Optional[datetime]   = None

    def idle(self, rule: Optional[AlertRule], now: datetime, cutoff: datetime) -> bool:
        if rule is None: return True
        if self.last_trigger and now < self.last_trigger + timedelta(seconds=rule.cooldown): return False
        if not self.failures or self.last_failure is None: return True
        if rule.time_window: cutoff = max(cutoff, now - timedelta(seconds=rule.time_window))
        return self.last_failure < cutoff

class RuleEvaluator:
    def __init__(self, rules: Optional[Iterable[AlertRule]] = None, on_trigger: Optional[Callable[[Alert, AlertRule], None]] = None,
                 events: Optional[EventHub] = None, units: Optional[Callable[[str], str]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.on_trigger = on_trigger
        self.events     = events
        self._units     = units or (lambda name: "")
        self._clock     = clock
        self._rules: Dict[str, AlertRule]    = {}
        self._alerts: Dict[str, Alert]       = {}
        self._tracks: Dict[Signature, _Track] = {}
        self._sig_locks  = [Lock() for _ in range(LOCK_STRIPES)]   # one signature always maps to one stripe
        self._lock       = Lock()   # rules, alerts, tracks
        for rule in (rules if rules is not None else [AlertRule(**r.to_dict()) for r in DEFAULT_RULES]):
            self.add_rule(rule)

    # Rules

    def add_rule(self, rule: AlertRule) -> AlertRule:
        rule.validate()
        with self._lock: self._rules[rule.id] = rule
        log.info(f"Added alert rule: {rule.name}")
        return rule

    def update_rule(self, rule_id: str, **updates: Any) -> bool:
        with self._lock:
            rule = self._rules.get(rule_id)
            if rule is None: return False
            unknown = set(updates) - set(rule.to_dict()) | ({"id"} & set(updates))
            if unknown: raise ValidationError(f"rule {rule_id}: cannot update {sorted(unknown)}")
            candidate = AlertRule(**{**rule.to_dict(), **updates}).validate()
            self._rules[rule_id] = candidate
            if not candidate.enabled or candidate.metric != rule.metric: self._reset_tracks(rule_id)
        log.info(f"Updated alert rule: {rule_id}")
        return True

    def remove_rule(self, rule_id: str) -> bool:
        with self._lock:
            removed = self._rules.pop(rule_id, None) is not None
            if removed: self._reset_tracks(rule_id)
        if removed: log.info(f"Removed alert rule: {rule_id}")
        return removed

    def _reset_tracks(self, rule_id: str) -> None:
        for sig in [s for s in self._tracks if s[0] == rule_id]: del self._tracks[sig]

    def rules(self) -> List[AlertRule]:
        with self._lock: return list(self._rules.values())

    def get_rule(self, rule_id: str) -> Optional[AlertRule]:
        return self._rules.get(rule_id)

    def rules_for(self, metric: str) -> List[AlertRule]:
        with self._lock: return [r for r in self._rules.values() if r.enabled and r.metric == metric]

    # Evaluation

    def process_metric(self, metric: str, value: float, tags: Optional[Dict[str, Any]] = None) -> List[Alert]:
        triggered = []
        for rule in self.rules_for(metric):
            alert = self._evaluate(rule, value, tags)
            if alert: triggered.append(alert)
        return triggered

    def evaluate(self, rule_id: str, value: float, tags: Optional[Dict[str, Any]] = None) -> Optional[Alert]:
        rule = self._rules.get(rule_id)
        if rule is None:
            log.warning(f"Evaluation skipped, unknown rule: {rule_id}"); return None
        return self._evaluate(rule, value, tags)

    def recheck(self, rule_id: str, value: float, tags: Optional[Dict[str, Any]] = None,
                at: Optional[datetime] = None) -> Optional[Alert]:
        """Re-evaluate a stored point recorded at `at`.

        Cooldown and auto-resolve apply as usual, but a point already counted
        toward consecutive failures is not counted again.
        """
        rule = self._rules.get(rule_id)
        if rule is None or not rule.enabled: return None
        return self._evaluate(rule, value, tags, at=at, recheck=True)

    def _lock_for(self, sig: Signature) -> Lock:
        return self._sig_locks[hash(sig) % len(self._sig_locks)]

    def _evaluate(self, rule: AlertRule, value: float, tags: Optional[Dict[str, Any]],
                  at: Optional[datetime] = None, recheck: bool = False) -> Optional[Alert]:
        try:
            sig = signature(rule.id, tags); value = float(value)
        except (AttributeError, TypeError, ValueError):
            log.warning(f"Malformed input for rule {rule.id}: value={value!r} tags={tags!r}"); return None
        with self._lock_for(sig):
            now = self._clock()
            if compare(value, rule.operator, rule.threshold):
                alert, closed = self._on_failure(rule, sig, value, now, at or now, recheck), "superseded"
                resolved = self._close_open(sig, now, closed, keep=alert) if alert else []
            else:
                alert, closed = None, "system"
                self._reset_failures(sig)
                resolved = self._close_open(sig, now, closed)
        for old in resolved:
            log.info(f"{'Auto-resolved' if closed == 'system' else 'Superseded'} alert: {old.title} ({old.id})")
            self._emit(ALERT_RESOLVED, {"alert": old, "resolved_by": closed, "tags": dict(sig[1])})
        if alert is not None: self._announce(alert, rule)
        return alert

    def _on_failure(self, rule: AlertRule, sig: Signature, value: float, now: datetime,
                    at: datetime, recheck: bool) -> Optional[Alert]:
        with self._lock: track = self._tracks.setdefault(sig, _Track())
        counted = recheck and track.last_point is not None and at <= track.last_point
        if not counted: track.last_point = at
        if rule.consecutive_failures:
            if not counted:
                if rule.time_window and track.last_failure and (now - track.last_failure).total_seconds() > rule.time_window:
                    track.failures = 0
                track.failures += 1; track.last_failure = now
            if track.failures < rule.consecutive_failures:
                log.debug(f"Rule {rule.id}: {track.failures}/{rule.consecutive_failures} consecutive failures")
                return None
        if track.last_trigger and now < track.last_trigger + timedelta(seconds=rule.cooldown):
            log.debug(f"Suppressed (cooldown): {rule.id} {dict(sig[1])}")
            return None
        alert = Alert(id=new_alert_id(rule.id, now), rule_id=rule.id, metric=rule.metric, severity=rule.severity,
                      title=rule.name, description=rule.description, current_value=value, threshold=rule.threshold,
                      operator=rule.operator, unit=self._units(rule.metric), created_at=now, tags=dict(sig[1]))
        with self._lock: self._alerts[alert.id] = alert
        track.last_trigger = now
        return alert

    def _reset_failures(self, sig: Signature) -> None:
        with self._lock:
            track = self._tracks.get(sig)
            if track: track.failures = 0; track.last_failure = None

    def _close_open(self, sig: Signature, now: datetime, by: str, keep: Optional[Alert] = None) -> List[Alert]:
        # a fresh trigger closes the previous active alert only; a passing value closes acknowledged ones too
        with self._lock:
            closing = [a for a in self._alerts.values() if a is not keep and a.signature == sig
                       and (a.status == AlertStatus.ACTIVE if keep else a.is_open)]
            for a in closing:
                a.status = AlertStatus.RESOLVED; a.resolved_at = now; a.resolved_by = by
        return closing

    def _announce(self, alert: Alert, rule: AlertRule) -> None:
        level = logging.ERROR if alert.is_critical else logging.WARNING
        log.log(level, f"Alert [{alert.severity.upper()}]: {alert.title} - {alert.metric}={alert.current_value} "
                       f"(threshold {alert.operator} {alert.threshold}) tags={alert.tags}")
        if self.on_trigger:
            try: self.on_trigger(alert, rule)
            except Exception as e: log.error(f"Trigger hook failed for {alert.id}: {e}", exc_info=True)
        self._emit(ALERT_TRIGGERED, {"alert": alert, "rule": rule, "tags": dict(alert.tags)})

    def _emit(self, event: str, payload: Dict[str, Any]) -> None:
        if self.events: self.events.publish(event, payload)

    # Lifecycle

    def acknowledge(self, alert_id: str, actor: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status != AlertStatus.ACTIVE: return False
            alert.status = AlertStatus.ACKNOWLEDGED; alert.acknowledged_by = actor; alert.acknowledged_at = self._clock()
        log.info(f"Alert acknowledged: {alert.title} by {actor}")
        self._emit(ALERT_ACKNOWLEDGED, {"alert": alert, "acknowledged_by": actor})
        return True

    def resolve(self, alert_id: str, actor: str) -> bool:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None or alert.status == AlertStatus.RESOLVED: return False
            alert.status = AlertStatus.RESOLVED; alert.resolved_by = actor; alert.resolved_at = self._clock()
        log.info(f"Alert resolved: {alert.title} by {actor}")
        self._emit(ALERT_RESOLVED, {"alert": alert, "resolved_by": actor})
        return True

    # Queries

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._alerts.get(alert_id)

    def alerts(self, status: Optional[str] = None) -> List[Alert]:
        with self._lock: found = [a for a in self._alerts.values() if status is None or a.status == status]
        return sorted(found, key=lambda a: a.created_at, reverse=True)

    def active_alerts(self) -> List[Alert]:
        return self.alerts(AlertStatus.ACTIVE)

    def unacknowledged_alerts(self) -> List[Alert]:
        return [a for a in self.active_alerts() if a.acknowledged_at is None]

    def failure_count(self, rule_id: str, tags: Optional[Dict[str, Any]] = None) -> int:
        track = self._tracks.get(signature(rule_id, tags))
        return track.failures if track else 0

    def summary(self, top_n: int = 5) -> Dict[str, Any]:
        now = self._clock()
        with self._lock: everything = list(self._alerts.values())
        active   = {sev: 0 for sev in Severity.ALL}
        for a in everything:
            if a.status == AlertStatus.ACTIVE: active[a.severity] = active.get(a.severity, 0) + 1
        resolved = [a.resolved_at for a in everything if a.status == AlertStatus.RESOLVED and a.resolved_at]
        buckets  = {"today": 1, "this_week": 7, "this_month": 30}
        counts: Dict[str, List] = {}
        for a in everything:
            entry = counts.setdefault(a.title, [0, a.created_at])
            entry[0] += 1; entry[1] = max(entry[1], a.created_at)
        top = sorted(counts.items(), key=lambda kv: (kv[1][0], kv[1][1]), reverse=True)[:top_n]
        return {"active": active,
                "resolved": {k: sum(1 for r in resolved if r >= now - timedelta(days=d)) for k, d in buckets.items()},
                "top_alerts": [{"name": name, "count": c, "last_occurrence": last} for name, (c, last) in top]}

    def cleanup(self, older_than: timedelta) -> int:
        now = self._clock(); cutoff = now - older_than
        with self._lock:
            stale = [aid for aid, a in self._alerts.items() if a.status == AlertStatus.RESOLVED and a.created_at < cutoff]
            for aid in stale: del self._alerts[aid]
        if stale: log.info(f"Cleaned up {len(stale)} old alerts")
        self.prune_tracks(now, cutoff)
        return len(stale)

    def prune_tracks(self, now: datetime, cutoff: datetime) -> int:
        """Forget hysteresis state for signatures with no open alert, no cooldown and no live failure streak."""
        with self._lock:
            busy = {a.signature for a in self._alerts.values() if a.is_open}
            candidates = [sig for sig in self._tracks if sig not in busy]
        pruned = 0
        for sig in candidates:
            with self._lock_for(sig), self._lock:
                track = self._tracks.get(sig)
                if track is not None and track.idle(self._rules.get(sig[0]), now, cutoff):
                    del self._tracks[sig]; pruned += 1
        if pruned: log.debug(f"Pruned {pruned} idle rule tracks")
        return pruned

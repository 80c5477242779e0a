from __future__ import annotations
import logging
from datetime import datetime
from threading import Lock
from typing import Callable, Iterable, List, Optional, Set, Tuple
from clubwatch.dispatcher import NotificationDispatcher
from clubwatch.models import Alert, EscalationRule, Severity, utcnow

log = logging.getLogger(__name__)

DEFAULT_ESCALATIONS = [
    EscalationRule("Critical Alert Immediate", frozenset({Severity.CRITICAL}), 0,
                   ["console", "slack", "discord", "webhook"], "🚨 CRITICAL: Immediate attention required"),
    EscalationRule("Critical Alert Escalation", frozenset({Severity.CRITICAL}), 300,
                   ["email"], "🚨 ESCALATION: Critical alert unacknowledged for 5 minutes"),
    EscalationRule("Warning Alert Escalation", frozenset({Severity.WARNING}), 900,
                   ["webhook"], "⚠️ ESCALATION: Warning alert unacknowledged for 15 minutes"),
]

class EscalationMonitor:
    def __init__(self, dispatcher: NotificationDispatcher, alerts: Callable[[], List[Alert]],
                 rules: Optional[Iterable[EscalationRule]] = None, clock: Callable[[], datetime] = utcnow):
        self.dispatcher = dispatcher
        self._alerts    = alerts
        self._clock     = clock
        self._rules: List[EscalationRule] = []
        self._fired: Set[Tuple[str, str]] = set()
        self._lock = Lock()
        for rule in (rules if rules is not None else DEFAULT_ESCALATIONS): self.add_rule(rule)

    def add_rule(self, rule: EscalationRule) -> EscalationRule:
        rule.validate()
        with self._lock:
            self._rules = [r for r in self._rules if r.name != rule.name] + [rule]
        log.info(f"Escalation rule: {rule.name} ({'immediate' if rule.immediate else f'{rule.duration:.0f}s'} -> {rule.channels})")
        return rule

    def remove_rule(self, name: str) -> bool:
        with self._lock:
            before = len(self._rules)
            self._rules = [r for r in self._rules if r.name != name]
            return len(self._rules) < before

    def rules(self) -> List[EscalationRule]:
        with self._lock: return list(self._rules)

    def on_trigger(self, alert: Alert, skip: Iterable[str] = ()) -> int:
        skip = set(skip); fired = 0
        for rule in self.rules():
            if not rule.enabled or not rule.immediate or alert.severity not in rule.severities: continue
            targets = [c for c in rule.channels if c not in skip]
            if targets and self._claim(alert, rule):
                self.dispatcher.dispatch(alert, targets, rule.message); fired += 1
        return fired

    def scan(self, now: Optional[datetime] = None) -> int:
        now = now or self._clock(); fired = 0
        rules = [r for r in self.rules() if r.enabled and not r.immediate]
        for alert in self._alerts():
            if alert.acknowledged_at is not None: continue
            age = (now - alert.created_at).total_seconds()
            for rule in rules:
                if alert.severity not in rule.severities or age < rule.duration: continue
                notified = set(alert.notified_channels())
                targets  = [c for c in rule.channels if c not in notified
                            and not self.dispatcher.has_notified(alert.id, c, include_pending=True)]
                if not self._claim(alert, rule): continue
                if not targets:
                    log.debug(f"Escalation {rule.name} for {alert.id}: all channels already notified"); continue
                log.warning(f"Escalating alert {alert.id} ({alert.title}, age {age:.0f}s) via rule: {rule.name}")
                self.dispatcher.dispatch(alert, targets, rule.message); fired += 1
        return fired

    def _claim(self, alert: Alert, rule: EscalationRule) -> bool:
        key = (alert.id, rule.name)
        with self._lock:
            if key in self._fired: return False
            self._fired.add(key)
        return True

    def escalated(self, alert_id: str) -> List[str]:
        with self._lock: return sorted(name for aid, name in self._fired if aid == alert_id)

    def retain(self, alert_ids: Iterable[str]) -> int:
        live = set(alert_ids)
        with self._lock:
            before = len(self._fired)
            self._fired = {k for k in self._fired if k[0] in live}
            return before - len(self._fired)

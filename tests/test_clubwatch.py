"""ClubWatch test suite. Run: pytest tests/ -v"""
import json, smtplib, socket, threading, urllib.error, urllib.request
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock
import pytest
from clubwatch.alerters import ChatWebhookAlerter, DeliveryError, EmailAlerter, WebhookAlerter
from clubwatch.benchmarks import BenchmarkTracker, operation_for, trend
from clubwatch.collectors import BasicCollector, CacheCounter, OperationalCollector, PerformanceCollector, SystemCollector
from clubwatch.config import DEFAULTS, apply_env, build_benchmarks, build_channels, build_rules, deep_merge, load_config
from clubwatch.dispatcher import NotificationDispatcher, NotificationStatus
from clubwatch.escalation import EscalationMonitor
from clubwatch.evaluator import LOCK_STRIPES, RuleEvaluator
from clubwatch.events import ALERT_RESOLVED, ALERT_TRIGGERED, EventHub
from clubwatch.metric_store import MetricStore
from clubwatch.models import (Alert, AlertRule, AlertStatus, ChatWebhookConfig, EmailConfig, EscalationRule,
                              NotificationChannel, Severity, ValidationError, WebhookConfig, compare, signature)
from clubwatch.orchestrator import MonitoringOrchestrator, PeriodicTask

T0 = datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc)

class FakeClock:
    def __init__(self, start=T0): self.now = start
    def __call__(self): return self.now
    def advance(self, **kw): self.now += timedelta(**kw)

def rule(rid="r", metric="m", op="gt", threshold=100, severity=Severity.WARNING, cooldown=300.0,
         consecutive=None, window=None, channels=None):
    return AlertRule(rid, rid.title(), metric, op, threshold, severity, cooldown=cooldown,
                     consecutive_failures=consecutive, time_window=window, channels=channels or ["log"])

def make_alert(severity=Severity.CRITICAL, at=T0, aid="a1"):
    return Alert(id=aid, rule_id="r", metric="m", severity=severity, title="T", description="d",
                 current_value=120, threshold=100, operator="gt", unit="ms", created_at=at)

def webhook(cid):
    return NotificationChannel(cid, "webhook", WebhookConfig(f"http://hooks.local/{cid}"))

def make_dispatcher(ids, clock=None, **kw):
    alerters = {cid: MagicMock() for cid in ids}
    kw.setdefault("scheduler", MagicMock())
    d = NotificationDispatcher([webhook(cid) for cid in ids], max_workers=0,
                               alerter_factory=lambda ch: alerters[ch.id], clock=clock or FakeClock(), **kw)
    return d, alerters

def make_orch(clock, **cfg):
    alerters = {}
    def factory(ch):
        alerters[ch.id] = MagicMock(); return alerters[ch.id]
    orch = MonitoringOrchestrator(deep_merge({"notifications": {"max_workers": 0}}, cfg), clock=clock, alerter_factory=factory)
    return orch, alerters

# Models
def test_compare_operators():
    assert compare(120, "gt", 100) and compare(100, "gte", 100) and compare(5, "lt", 10)
    assert compare(10, "eq", 10) and compare(10, "lte", 10)
    assert compare(120, "above", 100) is False

def test_signature_is_order_independent():
    assert signature("r", {"b": "2", "a": "1"}) == signature("r", {"a": "1", "b": 2})
    assert signature("r", {"a": "1"}) != signature("r", {"a": "2"})
    assert signature("r", None) == signature("r", {})

def test_rule_from_dict_converts_minutes():
    r = AlertRule.from_dict({"id": "x", "metric": "m", "operator": "lt", "value": 60, "severity": "warning",
                             "cooldown_minutes": 30})
    assert r.threshold == 60 and r.cooldown == 1800 and r.name == "x"

def test_rule_validation():
    with pytest.raises(ValidationError): rule(op="above").validate()
    with pytest.raises(ValidationError): rule(severity="fatal").validate()
    with pytest.raises(ValidationError): rule(consecutive=0).validate()
    with pytest.raises(ValidationError): AlertRule.from_dict({"id": "x", "metric": "m"})

def test_channel_from_dict():
    ch = NotificationChannel.from_dict("mail", {"type": "email", "smtp_host": "smtp.local", "to": "a@x.org, b@x.org"})
    assert isinstance(ch.config, EmailConfig) and ch.config.to == ["a@x.org", "b@x.org"] and ch.name == "mail"
    assert NotificationChannel.from_dict("log", {}).type == "log"
    with pytest.raises(ValidationError): NotificationChannel.from_dict("hook", {"type": "webhook", "url": "ftp://x"})
    with pytest.raises(ValidationError): NotificationChannel.from_dict("x", {"type": "pager"})
    with pytest.raises(ValidationError): NotificationChannel.from_dict("chat", {"type": "chat-webhook", "url": "https://x", "flavor": "irc"})

def test_channel_config_must_match_type():
    with pytest.raises(ValidationError):
        NotificationChannel("hook", "webhook", EmailConfig("smtp.local", ["a@x.org"])).validate()

def test_alert_mark_notified_once():
    a = make_alert()
    a.mark_notified("log"); a.mark_notified("log"); a.mark_notified("console")
    assert a.notified_channels() == ["log", "console"]
    assert a.to_dict()["notifications_sent"] == ["log", "console"]

def test_escalation_rule_validation():
    with pytest.raises(ValidationError): EscalationRule("x", frozenset({"fatal"}), 60, ["email"]).validate()
    with pytest.raises(ValidationError): EscalationRule.from_dict({"severities": ["critical"]})
    assert EscalationRule.from_dict({"name": "now", "severities": ["critical"], "channels": ["log"]}).immediate

# Metric store
def test_store_evicts_oldest_beyond_capacity():
    store = MetricStore(capacity=3, clock=FakeClock())
    for v in range(1, 6): store.record("club_cache_hit_rate", v)
    assert store.recent_values("club_cache_hit_rate", 10) == [3.0, 4.0, 5.0]
    assert len(store.series("club_cache_hit_rate")) == 3
    assert store.latest("club_cache_hit_rate") == 5.0

def test_store_rejects_unknown_and_non_numeric():
    store = MetricStore(clock=FakeClock())
    assert store.record("nope", 1) is False
    assert store.record("club_cache_hit_rate", "high") is False
    assert store.record("club_cache_hit_rate", float("nan")) is False
    assert store.latest("club_cache_hit_rate") is None and store.latest("nope") is None

def test_store_malformed_tags_recorded_untagged():
    store = MetricStore(clock=FakeClock())
    assert store.record("club_cache_hit_rate", 80, tags=["bad"]) is True
    assert store.latest_point("club_cache_hit_rate").tags == ()

def test_store_stats_window():
    clock = FakeClock(); store = MetricStore(clock=clock)
    store.record("club_query_response_time", 10)
    clock.advance(hours=2)
    store.record("club_query_response_time", 20)
    s = store.stats("club_query_response_time")
    assert s["count"] == 1 and s["latest"] == 20
    s = store.stats("club_query_response_time", timedelta(hours=3))
    assert s == {"min": 10, "max": 20, "avg": 15, "count": 2, "latest": 20}
    assert store.stats("club_update_rate") is None

def test_store_purge_and_export():
    clock = FakeClock(); store = MetricStore(clock=clock)
    store.record("club_update_rate", 1, {"club_id": "7"})
    clock.advance(hours=2)
    store.record("club_update_rate", 2)
    assert store.purge_older_than(timedelta(hours=1)) == 1
    snap = store.export_all()["metrics"]["club_update_rate"]
    assert snap["type"] == "counter" and snap["point_count"] == 1 and snap["latest"]["value"] == 2

# Benchmarks
def test_operation_for():
    assert operation_for("club_find_clubs_by_liga_duration") == "find_clubs_by_liga"
    assert operation_for("get_club_statistics") == "get_club_statistics"

def test_benchmark_defaults():
    bm = BenchmarkTracker().get("find_clubs_by_liga")
    assert (bm.baseline, bm.threshold, bm.current, bm.status, bm.trend) == (50, 100, 50, "good", "stable")

def test_benchmark_status_and_trend():
    t = BenchmarkTracker([("op", 50, 100)])
    bm = t.observe("club_op_duration", 40)
    assert bm.status == "good" and bm.trend == "improving"
    bm = t.observe("club_op_duration", 120)
    assert bm.current == 80 and bm.status == "warning" and bm.trend == "degrading"
    bm = t.observe("club_op_duration", 380)
    assert bm.status == "critical"
    assert t.observe("club_other_duration", 1) is None

def test_benchmark_moving_window():
    t = BenchmarkTracker([("op", 50, 100)])
    t.observe("op", 1000)
    for _ in range(10): bm = t.observe("op", 10)
    assert bm.current == 10 and bm.status == "good"

def test_trend_halves():
    assert trend([10, 10, 20, 20]) == {"trend": "degrading", "change": 100.0}
    assert trend([20, 20, 10, 10])["trend"] == "improving"
    assert trend([5])["trend"] == "stable"

# Events
def test_event_hub_isolates_failing_handler():
    hub, seen = EventHub(), []
    hub.subscribe("x", MagicMock(side_effect=RuntimeError("boom")))
    hub.subscribe("x", seen.append)
    assert hub.publish("x", {"n": 1}) == 1 and seen == [{"n": 1}]
    assert hub.unsubscribe("x", seen.append) and hub.publish("x", {}) == 0

# Rule evaluator
def test_first_qualifying_value_triggers_once():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    alerts = ev.process_metric("m", 120)
    assert len(alerts) == 1 and alerts[0].status == AlertStatus.ACTIVE
    assert ev.process_metric("m", 50) == [] and ev.process_metric("other", 500) == []

def test_cooldown_then_new_alert():
    clock = FakeClock(); ev = RuleEvaluator([rule("qrt", "query_response_time")], clock=clock)
    first = ev.process_metric("query_response_time", 120)[0]
    clock.advance(minutes=1)
    assert ev.process_metric("query_response_time", 120) == []
    clock.advance(minutes=6)
    second = ev.process_metric("query_response_time", 130)
    assert len(second) == 1 and second[0].current_value == 130
    assert [a.id for a in ev.active_alerts()] == [second[0].id]
    assert first.status == AlertStatus.RESOLVED and first.resolved_by == "superseded"

def test_consecutive_failures_then_resolve():
    ev = RuleEvaluator([rule("chr", "cache_hit_rate", "lt", 60, cooldown=1800, consecutive=3)], clock=FakeClock())
    assert ev.process_metric("cache_hit_rate", 55) == []
    assert ev.process_metric("cache_hit_rate", 58) == []
    alert = ev.process_metric("cache_hit_rate", 50)[0]
    assert len(ev.active_alerts()) == 1
    ev.process_metric("cache_hit_rate", 70)
    assert alert.status == AlertStatus.RESOLVED and alert.resolved_by == "system"
    assert ev.active_alerts() == []

def test_passing_value_resets_counter():
    ev = RuleEvaluator([rule("chr", "cache_hit_rate", "lt", 60, consecutive=3)], clock=FakeClock())
    for v in (55, 70, 55, 58):
        assert ev.process_metric("cache_hit_rate", v) == []
    assert ev.failure_count("chr") == 2

def test_time_window_restarts_counter():
    clock = FakeClock(); ev = RuleEvaluator([rule(consecutive=2, window=60)], clock=clock)
    ev.process_metric("m", 150)
    clock.advance(seconds=120)
    assert ev.process_metric("m", 150) == [] and ev.failure_count("r") == 1
    clock.advance(seconds=30)
    assert len(ev.process_metric("m", 150)) == 1

def test_tag_signatures_are_independent():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    assert len(ev.process_metric("m", 120, {"liga": "1"})) == 1
    assert len(ev.process_metric("m", 120, {"liga": "2"})) == 1
    assert ev.process_metric("m", 120, {"liga": "1"}) == []
    ev.process_metric("m", 10, {"liga": "2"})
    assert [a.tags for a in ev.active_alerts()] == [{"liga": "1"}]

def test_tag_order_does_not_split_cooldown():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    ev.process_metric("m", 120, {"a": "1", "b": "2"})
    assert ev.process_metric("m", 120, {"b": "2", "a": "1"}) == []

def test_acknowledge_resolve_transitions():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    alert = ev.process_metric("m", 120)[0]
    assert ev.acknowledge(alert.id, "ops") is True
    assert alert.status == AlertStatus.ACKNOWLEDGED and alert.acknowledged_by == "ops"
    assert ev.acknowledge(alert.id, "ops") is False
    assert ev.resolve(alert.id, "ops") is True and alert.resolved_by == "ops"
    assert ev.resolve(alert.id, "ops") is False and ev.acknowledge(alert.id, "ops") is False
    assert ev.resolve("missing", "ops") is False and ev.acknowledge("missing", "ops") is False

def test_passing_value_resolves_acknowledged_idempotently():
    hub = EventHub(); resolved = []
    hub.subscribe(ALERT_RESOLVED, resolved.append)
    ev = RuleEvaluator([rule()], events=hub, clock=FakeClock())
    alert = ev.process_metric("m", 120)[0]
    ev.acknowledge(alert.id, "ops")
    ev.process_metric("m", 50); ev.process_metric("m", 50)
    assert alert.status == AlertStatus.RESOLVED and len(resolved) == 1
    assert ev.unacknowledged_alerts() == []

def test_trigger_events_and_hook():
    hub = EventHub(); seen = []
    hub.subscribe(ALERT_TRIGGERED, lambda p: seen.append(p["alert"].id))
    hook = MagicMock(side_effect=RuntimeError("hook down"))
    ev = RuleEvaluator([rule()], on_trigger=hook, events=hub, units=lambda m: "ms", clock=FakeClock())
    alert = ev.process_metric("m", 120)[0]
    assert seen == [alert.id] and hook.call_args[0][0] is alert and alert.unit == "ms"

def test_non_numeric_value_is_ignored():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    alert = ev.process_metric("m", 120)[0]
    assert ev.process_metric("m", "slow") == []
    assert alert.status == AlertStatus.ACTIVE

def test_evaluate_unknown_rule_fails_closed():
    ev = RuleEvaluator([rule()], clock=FakeClock())
    assert ev.evaluate("missing", 1000) is None
    assert ev.evaluate("r", 1000) is not None

def test_recheck_counts_each_point_once():
    clock = FakeClock(); ev = RuleEvaluator([rule(consecutive=2, cooldown=60)], clock=clock)
    ev.process_metric("m", 150); first = clock()
    clock.advance(seconds=120)
    assert ev.recheck("r", 150, at=first) is None and ev.failure_count("r") == 1
    assert len(ev.process_metric("m", 150)) == 1; second = clock()
    clock.advance(seconds=120)
    again = ev.recheck("r", 150, at=second)
    assert again is not None and ev.failure_count("r") == 2
    assert ev.recheck("r", 50, at=second) is None and again.status == AlertStatus.RESOLVED
    assert ev.recheck("missing", 150) is None

def test_concurrent_points_for_one_signature_trigger_once():
    for consecutive in (None, 3):
        hook = MagicMock()
        ev = RuleEvaluator([rule(consecutive=consecutive)], on_trigger=hook, clock=FakeClock())
        barrier = threading.Barrier(8)
        def push():
            barrier.wait(); ev.process_metric("m", 120, {"liga": "1"})
        threads = [threading.Thread(target=push) for _ in range(8)]
        for t in threads: t.start()
        for t in threads: t.join(timeout=5)
        assert len(ev.alerts()) == 1 and hook.call_count == 1

def test_cleanup_prunes_idle_tracks():
    clock = FakeClock(); ev = RuleEvaluator([rule(consecutive=3, window=600), rule("hot", "n")], clock=clock)
    for i in range(500): ev.process_metric("m", 120, {"game_id": str(i)})
    ev.process_metric("n", 120, {"game_id": "1"})
    ev.cleanup(timedelta(days=1))
    assert len(ev._tracks) == 501
    clock.advance(minutes=11)
    ev.cleanup(timedelta(days=1))
    assert list(ev._tracks) == [signature("hot", {"game_id": "1"})]
    ev.process_metric("n", 50, {"game_id": "1"})
    ev.cleanup(timedelta(days=1))
    assert ev._tracks == {} and len(ev._sig_locks) == LOCK_STRIPES

def test_rule_crud():
    ev = RuleEvaluator([rule(consecutive=3)], clock=FakeClock())
    with pytest.raises(ValidationError): ev.add_rule(rule("bad", op="above"))
    assert ev.update_rule("missing", threshold=5) is False
    with pytest.raises(ValidationError): ev.update_rule("r", operator="above")
    with pytest.raises(ValidationError): ev.update_rule("r", id="other")
    with pytest.raises(ValidationError): ev.update_rule("r", colour="red")
    ev.process_metric("m", 120); ev.process_metric("m", 120)
    assert ev.failure_count("r") == 2
    assert ev.update_rule("r", enabled=False) is True and ev.failure_count("r") == 0
    assert ev.process_metric("m", 120) == []
    assert ev.remove_rule("r") is True and ev.remove_rule("r") is False and ev.rules() == []

def test_summary_and_cleanup():
    clock = FakeClock()
    ev = RuleEvaluator([rule("a", severity=Severity.CRITICAL, cooldown=0), rule("b", cooldown=0)], clock=clock)
    ev.process_metric("m", 120)
    clock.advance(seconds=1)
    ev.process_metric("m", 130)
    s = ev.summary()
    assert s["active"] == {"info": 0, "warning": 1, "critical": 1}
    assert s["resolved"] == {"today": 2, "this_week": 2, "this_month": 2}
    assert [(t["name"], t["count"]) for t in s["top_alerts"]] == [("A", 2), ("B", 2)]
    clock.advance(days=2)
    assert ev.summary()["resolved"]["today"] == 0
    assert ev.cleanup(timedelta(days=1)) == 2 and len(ev.alerts()) == 2

def test_default_rules():
    ev = RuleEvaluator(clock=FakeClock())
    assert len(ev.rules()) == 10
    fired = {a.rule_id for a in ev.process_metric("active_clubs_count", 0)}
    assert fired == {"no-active-clubs", "low-club-count"}

# Dispatcher
def test_dispatch_marks_notified():
    d, alerters = make_dispatcher(["a"])
    alert = make_alert()
    [rec] = d.dispatch(alert, ["a"], "hello")
    alerters["a"].send.assert_called_once_with(alert, "hello")
    assert rec.status == NotificationStatus.SENT and rec.attempts == 1
    assert alert.notified_channels() == ["a"] and d.has_notified(alert.id, "a")

def test_failing_channel_does_not_block_others():
    d, alerters = make_dispatcher(["a", "b"])
    alerters["a"].send.side_effect = DeliveryError("HTTP 500")
    alert = make_alert()
    ra, rb = d.dispatch(alert, ["a", "b"])
    assert ra.status == NotificationStatus.FAILED and ra.error == "HTTP 500"
    assert rb.status == NotificationStatus.SENT and alert.notified_channels() == ["b"]
    assert d.in_retry(alert.id, "a")

def test_retry_backoff_then_give_up():
    pending = []
    d, alerters = make_dispatcher(["a"], scheduler=lambda delay, fn: pending.append((delay, fn)))
    alerters["a"].send.side_effect = DeliveryError("timeout")
    [rec] = d.dispatch(make_alert(), ["a"])
    delay, fn = pending.pop(); assert delay == 30; fn()
    delay, fn = pending.pop(); assert delay == 60; fn()
    assert pending == [] and rec.attempts == 3 and rec.status == NotificationStatus.FAILED
    assert alerters["a"].send.call_count == 3 and not d.in_retry(rec.alert_id, "a")

def test_retry_succeeds():
    pending = []
    d, alerters = make_dispatcher(["a"], scheduler=lambda delay, fn: pending.append(fn))
    alerters["a"].send.side_effect = [DeliveryError("refused"), None]
    alert = make_alert()
    [rec] = d.dispatch(alert, ["a"])
    pending.pop()()
    assert rec.status == NotificationStatus.SENT and rec.error is None and alert.notified_channels() == ["a"]

def test_unknown_and_disabled_channels_skipped():
    d, alerters = make_dispatcher(["a"])
    d.toggle_channel("a", False)
    assert d.dispatch(make_alert(), ["a", "ghost"]) == []
    alerters["a"].send.assert_not_called()
    assert d.toggle_channel("ghost", True) is False
    assert d.remove_channel("a") is True and d.remove_channel("a") is False and d.channels() == []

def test_dispatch_after_shutdown_fails_fast():
    pending = []
    d, alerters = make_dispatcher(["a"], scheduler=lambda delay, fn: pending.append(fn))
    alerters["a"].send.side_effect = DeliveryError("HTTP 503")
    alert = make_alert()
    [retrying] = d.dispatch(alert, ["a"])
    d.shutdown(); pending.pop()()
    assert retrying.status == NotificationStatus.FAILED and retrying.error == "dispatcher closed" and retrying.attempts == 1
    [late] = d.dispatch(make_alert(aid="a2"), ["a"])
    assert late.status == NotificationStatus.FAILED and late.error == "dispatcher closed"
    assert alerters["a"].send.call_count == 1
    assert not d.has_notified("a2", "a", include_pending=True) and not d.in_retry(alert.id, "a")

def test_add_invalid_channel_rejected():
    d, _ = make_dispatcher([])
    with pytest.raises(ValidationError): d.add_channel(NotificationChannel("x", "webhook", WebhookConfig("not-a-url")))

def test_dispatcher_stats_and_trim():
    clock = FakeClock()
    d, alerters = make_dispatcher(["a", "b"], clock=clock)
    alerters["b"].send.side_effect = RuntimeError("bug")
    d.dispatch(make_alert(), ["a", "b"])
    s = d.stats()
    assert s["total"] == 2 and s["by_status"] == {"sent": 1, "failed": 1} and s["by_severity"] == {"critical": 2}
    clock.advance(hours=25)
    assert d.trim_history(24 * 3600) == 2 and d.history() == []

def test_test_channel():
    d, alerters = make_dispatcher(["a", "b"])
    alerters["b"].send.side_effect = DeliveryError("down")
    assert d.test_channel("a") is True and d.test_channel("b") is False and d.test_channel("zzz") is False
    sample = alerters["a"].send.call_args[0][0]
    assert sample.severity == Severity.INFO and sample.title == "Test Alert"

def test_dispatch_on_thread_pool():
    alerter = MagicMock()
    d = NotificationDispatcher([webhook("a")], max_workers=2, alerter_factory=lambda ch: alerter)
    alert = make_alert()
    d.dispatch(alert, ["a"])
    assert d.flush(timeout=5)
    assert alert.notified_channels() == ["a"]
    d.shutdown()

# Escalation
def test_escalation_fires_once_per_rule():
    clock = FakeClock(); alert = make_alert()
    d, alerters = make_dispatcher(["email"], clock=clock)
    mon = EscalationMonitor(d, lambda: [alert], [EscalationRule("late", frozenset({"critical"}), 300, ["email"])], clock)
    clock.advance(seconds=100)
    assert mon.scan() == 0
    clock.advance(seconds=201)
    assert mon.scan() == 1 and mon.scan() == 0
    clock.advance(hours=1)
    assert mon.scan() == 0
    assert alerters["email"].send.call_count == 1 and mon.escalated(alert.id) == ["late"]

def test_escalation_skips_acknowledged_and_other_severities():
    clock = FakeClock(); acked = make_alert(aid="x"); warn = make_alert(Severity.WARNING, aid="y")
    acked.acknowledged_at = T0
    d, alerters = make_dispatcher(["email"], clock=clock)
    mon = EscalationMonitor(d, lambda: [acked, warn], [EscalationRule("late", frozenset({"critical"}), 60, ["email"])], clock)
    clock.advance(minutes=10)
    assert mon.scan() == 0 and alerters["email"].send.call_count == 0

def test_escalation_skips_already_notified_channels():
    clock = FakeClock(); alert = make_alert()
    d, alerters = make_dispatcher(["a", "b"], clock=clock)
    d.dispatch(alert, ["a"])
    mon = EscalationMonitor(d, lambda: [alert], [EscalationRule("late", frozenset({"critical"}), 60, ["a", "b"])], clock)
    clock.advance(minutes=2)
    assert mon.scan() == 1
    assert alerters["a"].send.call_count == 1 and alerters["b"].send.call_count == 1

def test_immediate_escalation_on_trigger():
    d, alerters = make_dispatcher(["console", "hook"])
    mon = EscalationMonitor(d, lambda: [], [EscalationRule("now", frozenset({"critical"}), 0, ["console", "hook"])])
    alert = make_alert()
    assert mon.on_trigger(alert, skip=["console"]) == 1 and mon.on_trigger(alert) == 0
    assert alerters["console"].send.call_count == 0 and alerters["hook"].send.call_count == 1
    assert mon.on_trigger(make_alert(Severity.WARNING, aid="w")) == 0

def test_escalation_retain():
    d, _ = make_dispatcher(["hook"])
    mon = EscalationMonitor(d, lambda: [], [EscalationRule("now", frozenset({"critical"}), 0, ["hook"])])
    mon.on_trigger(make_alert(aid="old")); mon.on_trigger(make_alert(aid="new"))
    assert mon.retain(["new"]) == 1 and mon.escalated("old") == []

# Alerters
def _urlopen(monkeypatch):
    resp = MagicMock(); resp.__enter__.return_value.read.return_value = b"ok"
    urlopen = MagicMock(return_value=resp)
    monkeypatch.setattr(urllib.request, "urlopen", urlopen)
    return urlopen

def test_webhook_alerter_posts_json(monkeypatch):
    urlopen = _urlopen(monkeypatch)
    ch = NotificationChannel("hook", "webhook", WebhookConfig("https://ops.local/h", headers={"Authorization": "Bearer t"}))
    WebhookAlerter(ch).send(make_alert(), "escalated")
    req, kwargs = urlopen.call_args[0][0], urlopen.call_args[1]
    body = json.loads(req.data)
    assert body["system"] == "clubwatch" and body["alert"]["id"] == "a1" and body["alert"]["message"] == "escalated"
    assert body["alert"]["timestamp"] == T0.isoformat() and req.get_header("Authorization") == "Bearer t"
    assert kwargs["timeout"] == 5.0

def test_webhook_alerter_wraps_network_errors(monkeypatch):
    monkeypatch.setattr(urllib.request, "urlopen", MagicMock(side_effect=urllib.error.URLError("refused")))
    with pytest.raises(DeliveryError):
        WebhookAlerter(NotificationChannel("hook", "webhook", WebhookConfig("https://ops.local/h"))).send(make_alert())

def test_webhook_timeout_is_retried(monkeypatch):
    monkeypatch.setattr(urllib.request, "urlopen", MagicMock(side_effect=socket.timeout("timed out")))
    with pytest.raises(DeliveryError):
        WebhookAlerter(webhook("hook")).send(make_alert())
    delays = []
    d = NotificationDispatcher([webhook("hook")], max_workers=0, scheduler=lambda delay, fn: delays.append(delay),
                               clock=FakeClock())
    [rec] = d.dispatch(make_alert(), ["hook"])
    assert rec.status == NotificationStatus.FAILED and "timed out" in rec.error and delays == [30]
    assert d.in_retry(rec.alert_id, "hook")

def test_chat_alerter_flavors(monkeypatch):
    urlopen = _urlopen(monkeypatch)
    ChatWebhookAlerter(NotificationChannel("slack", "chat-webhook", ChatWebhookConfig("https://slack.local", channel="#ops"))).send(make_alert())
    slack = json.loads(urlopen.call_args[0][0].data)
    assert slack["channel"] == "#ops" and slack["attachments"][0]["color"] == "#e01e5a"
    ChatWebhookAlerter(NotificationChannel("discord", "chat-webhook", ChatWebhookConfig("https://discord.local", flavor="discord"))).send(make_alert())
    discord = json.loads(urlopen.call_args[0][0].data)
    assert discord["embeds"][0]["color"] == 0xFF0000 and discord["embeds"][0]["description"] == "d"

def test_email_alerter(monkeypatch):
    smtp = MagicMock()
    monkeypatch.setattr(smtplib, "SMTP", smtp)
    ch = NotificationChannel("email", "email", EmailConfig("smtp.local", ["ops@x.org"], username="u", password="p"))
    EmailAlerter(ch).send(make_alert())
    server = smtp.return_value.__enter__.return_value
    server.starttls.assert_called_once(); server.login.assert_called_once_with("u", "p")
    msg = server.send_message.call_args[0][0]
    assert msg["To"] == "ops@x.org" and "CRITICAL: T" in msg["Subject"]
    smtp.side_effect = OSError("no route")
    with pytest.raises(DeliveryError): EmailAlerter(ch).send(make_alert())

# Collectors
class FakeSource:
    def entity_counts(self):       return {"active_clubs_count": 42, "viktoria_clubs_count": 3, "unrelated": 9}
    def cache_metrics(self):       return {"hit_rate": 0.5, "miss_rate": 0.5}
    def performance_metrics(self): return {"average_response_time": 120, "table_calculation_time": None}
    def migration_progress(self):  return 75
    def recent_activity(self, since):
        self.since = since; return {"created": 2, "updated": 5}

def test_basic_collector():
    samples = BasicCollector({"tags": {"env": "test"}}, FakeSource()).collect()
    assert samples == [("active_clubs_count", 42.0, {"env": "test"}), ("viktoria_clubs_count", 3.0, {"env": "test"})]
    assert BasicCollector({}, object()).collect() == []

def test_performance_collector_prefers_counter():
    cache = CacheCounter(); cache.hit(); cache.hit(); cache.hit(); cache.miss()
    names = {n: v for n, v, _ in PerformanceCollector({}, FakeSource(), cache).collect()}
    assert names == {"club_cache_hit_rate": 75.0, "club_cache_miss_rate": 25.0, "club_query_response_time": 120.0}
    names = {n: v for n, v, _ in PerformanceCollector({}, FakeSource(), cache).collect()}
    assert names["club_cache_hit_rate"] == 50.0 and cache.drain() is None

def test_operational_collector():
    src = FakeSource(); clock = FakeClock()
    samples = OperationalCollector({}, src, clock).collect()
    assert [s[0] for s in samples] == ["club_creation_rate", "club_update_rate", "club_migration_progress"]
    assert src.since == T0 - timedelta(minutes=60)

def test_system_collector():
    samples = SystemCollector({"host_tag": "test-host"}).collect()
    assert [s[0] for s in samples] == ["system_cpu_percent", "system_memory_percent"]
    assert all(s[2] == {"host": "test-host"} for s in samples)

# Config
def test_deep_merge():
    r = deep_merge({"a": 1, "b": {"c": 2, "d": 3}}, {"b": {"c": 99}})
    assert r["a"] == 1 and r["b"]["c"] == 99 and r["b"]["d"] == 3

def test_env_overrides():
    cfg = apply_env(DEFAULTS, {"SLACK_WEBHOOK_URL": "https://hooks.slack.local/x", "ALERT_EMAIL_TO": "a@x.org, b@x.org",
                               "SMTP_PORT": "2525", "ALERT_WEBHOOK_AUTH": "Bearer t", "SMTP_SECURE": "false"})
    ch = cfg["notifications"]["channels"]
    assert ch["slack"]["enabled"] is True and ch["slack"]["url"] == "https://hooks.slack.local/x"
    assert ch["email"]["to"] == ["a@x.org", "b@x.org"] and ch["email"]["smtp_port"] == 2525
    assert ch["email"]["use_tls"] is False and ch["webhook"]["headers"] == {"Authorization": "Bearer t"}
    assert DEFAULTS["notifications"]["channels"]["slack"]["enabled"] is False
    assert apply_env(DEFAULTS, {"SMTP_PORT": "many"})["notifications"]["channels"]["email"]["smtp_port"] == 587

def test_load_config_file(tmp_path):
    path = tmp_path / "clubwatch.yaml"
    path.write_text("alerting:\n  rules:\n    - {id: slow, metric: club_game_processing_time, operator: gt, "
                    "threshold: 2000, severity: warning}\nmetrics:\n  capacity: 50\n")
    cfg = load_config(str(path), environ={})
    assert cfg["metrics"]["capacity"] == 50 and cfg["metrics"]["basic_interval"] == 30
    ids = [r.id for r in build_rules(cfg)]
    assert "slow" in ids and len(ids) == 11
    with pytest.raises(SystemExit): load_config(str(tmp_path / "missing.yaml"))

def test_build_channels():
    assert sorted(c.id for c in build_channels(DEFAULTS)) == ["console", "log"]
    with pytest.raises(ValidationError):
        build_channels(deep_merge(DEFAULTS, {"notifications": {"channels": {"webhook": {"enabled": True}}}}))
    with pytest.raises(ValidationError):
        build_rules(deep_merge(DEFAULTS, {"alerting": {"rules": [{"id": "x", "metric": "m", "operator": "~",
                                                                  "threshold": 1, "severity": "info"}]}}))

def test_build_benchmarks_override():
    ops = dict((op, (b, t)) for op, b, t in build_benchmarks({"benchmarks": {"operations": {"find_clubs_by_liga": {"baseline": 10, "threshold": 20}}}}))
    assert ops["find_clubs_by_liga"] == (10.0, 20.0) and len(ops) == 6

# Orchestrator
def test_status_healthy_then_degraded_then_critical():
    orch, _ = make_orch(FakeClock())
    assert orch.get_system_status()["status"] == "healthy"
    assert orch.record_metric("active_clubs_count", 5) is True
    assert orch.get_system_status()["status"] == "degraded"
    orch.record_metric("club_query_response_time", 6000)
    st = orch.get_system_status()
    assert st["status"] == "critical" and st["statistics"]["active_alerts"] == 2
    assert st["statistics"]["total_metrics"] == 2

def test_record_metric_never_throws():
    orch, _ = make_orch(FakeClock())
    assert orch.record_metric("nope", 1) is False
    assert orch.record_metric("club_update_rate", object()) is False
    orch.evaluator.process_metric = MagicMock(side_effect=RuntimeError("boom"))
    assert orch.record_metric("club_update_rate", 1) is False

def test_trigger_dispatches_to_rule_channels():
    orch, alerters = make_orch(FakeClock())
    orch.record_metric("club_query_response_time", 6000)
    [alert] = orch.evaluator.active_alerts()
    assert alerters["log"].send.call_count == 1 and alerters["console"].send.call_count == 1
    assert alert.notified_channels() == ["log", "console"]

def test_domain_events_record_metrics():
    orch, _ = make_orch(FakeClock())
    assert orch.handle_event("club.created", {"club_type": "viktoria"})
    assert orch.store.latest_point("club_creation_rate").tag_map == {"club_type": "viktoria"}
    orch.handle_event("club.deleted", {})
    assert orch.store.latest_point("club_deletion_rate").tag_map == {"club_id": "unknown"}
    assert orch.events.publish("club.table.calculated", {"duration": 35000, "liga_id": 3}) == 1
    assert {a.rule_id for a in orch.evaluator.active_alerts()} == {"club-table-calculation-slow", "club-table-calculation-critical"}
    assert orch.handle_event("club.renamed") is False

def test_cache_events_feed_counter():
    orch, _ = make_orch(FakeClock())
    for event in ("club.cache.hit", "club.cache.hit", "club.cache.hit", "club.cache.miss"): orch.events.publish(event, {})
    assert orch.cache.drain() == (75.0, 25.0)

def test_query_event_updates_benchmark():
    orch, _ = make_orch(FakeClock())
    orch.handle_event("club.query.completed", {"operation": "find_clubs_by_liga", "duration": 500})
    assert orch.store.latest("club_query_response_time") == 500
    assert orch.benchmarks.get("find_clubs_by_liga").status == "critical"
    assert orch.store.latest("club_find_clubs_by_liga_duration") == 500

def test_check_rules_respects_cooldown():
    clock = FakeClock(); orch, _ = make_orch(clock)
    orch.record_metric("club_query_response_time", 6000)
    [alert] = orch.evaluator.active_alerts()
    orch.evaluator.resolve(alert.id, "ops")
    assert orch.check_rules() == 2 and orch.evaluator.active_alerts() == []
    clock.advance(minutes=6)
    orch.check_rules()
    assert len(orch.evaluator.active_alerts()) == 1

def test_check_rules_does_not_recount_latest_point():
    clock = FakeClock()
    orch, _ = make_orch(clock, alerting={"default_rules": False, "rules": [
        {"id": "chr", "metric": "club_cache_hit_rate", "operator": "lt", "threshold": 60, "severity": "warning",
         "consecutive_failures": 3}]})
    orch.record_metric("club_cache_hit_rate", 55)
    for _ in range(2):
        clock.advance(seconds=120); assert orch.check_rules() == 1
    assert orch.evaluator.active_alerts() == [] and orch.evaluator.failure_count("chr") == 1
    orch.record_metric("club_cache_hit_rate", 50); orch.record_metric("club_cache_hit_rate", 45)
    assert len(orch.evaluator.active_alerts()) == 1

def test_periodic_task_stamps_injected_clock():
    clock = FakeClock(); orch, _ = make_orch(clock)
    task = next(t for t in orch._build_tasks() if t.task == "alerts")
    clock.advance(minutes=5); task.tick()
    assert task.ticks == 1 and task.last_run == clock() and task.last_error is None
    failing = PeriodicTask("failing", MagicMock(side_effect=RuntimeError("down")), 1, clock)
    failing.tick()
    assert failing.last_error == "down" and failing.last_run == clock()

def test_health_check():
    orch, _ = make_orch(FakeClock())
    hc = orch.get_health_check()
    assert hc["status"] == "healthy" and hc["checks"]["notifications"] is True
    assert hc["checks"]["metrics_collection"] is False and hc["checks"]["source"] is False
    orch.source = MagicMock(); orch.source.ping.return_value = True
    assert orch.get_health_check()["checks"]["source"] is True

def test_test_alert():
    orch, alerters = make_orch(FakeClock())
    alert = orch.test_alert(Severity.CRITICAL)
    assert alert.severity == Severity.CRITICAL and alert.current_value == 100
    assert orch.evaluator.get_rule("test-alert") is None
    assert alerters["log"].send.call_count == 1
    with pytest.raises(ValidationError): orch.test_alert("fatal")

def test_update_configuration():
    orch, _ = make_orch(FakeClock())
    with pytest.raises(ValidationError): orch.update_configuration({"alerting": {"check_interval": "soon"}})
    assert orch.get_configuration()["alerting"]["check_interval"] == 120
    orch.update_configuration({"notifications": {"channels": {"console": {"enabled": False}}}})
    assert orch.dispatcher.get_channel("console").enabled is False

def test_start_stop_and_restart():
    orch, _ = make_orch(FakeClock(), cleanup={"interval_hours": 1})
    orch.start()
    try:
        assert orch.running and orch.get_system_status()["components"]["alerting"] in ("running", "error")
        orch.record_metric("active_clubs_count", 20)
        orch.update_configuration({"escalation": {"interval": 30}})
        assert orch.running
    finally:
        orch.shutdown()
    assert not orch.running and orch.get_system_status()["components"]["alerting"] == "stopped"

def test_cleanup_and_trend():
    clock = FakeClock(); orch, _ = make_orch(clock)
    for v in (10, 10, 20, 20): orch.record_metric("club_migration_progress", v)
    t = orch.metric_trend("club_migration_progress", hours=1)
    assert t["trend"] == "degrading" and t["points"] == 4 and t["average"] == 15
    clock.advance(days=2)
    result = orch.cleanup()
    assert result["metric_points"] == 4 and set(result) == {"metric_points", "alerts", "notifications", "escalations"}

def test_export_is_json_serialisable():
    orch, _ = make_orch(FakeClock(), notifications={"channels": {"email": {"password": "hunter2"}}})
    orch.record_metric("club_query_response_time", 6000)
    data = json.loads(json.dumps(orch.export_monitoring_data()))
    assert data["system"] == "clubwatch" and len(data["active_alerts"]) == 1
    assert data["alerts"]["top_alerts"][0]["name"] == "Critical Club Query Response Time"
    assert data["configuration"]["notifications"]["channels"]["email"]["password"] == "***"

# CLI
def test_cli_init_and_validate(tmp_path, capsys):
    from clubwatch.__main__ import main
    target = tmp_path / "clubwatch.yaml"
    assert main(["--init", "--config", str(target)]) == 0 and target.exists()
    assert main(["--validate", "--config", str(target)]) == 0
    assert "Config OK" in capsys.readouterr().out
    assert main(["--version"]) == 0

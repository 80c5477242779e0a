from __future__ import annotations
import logging, secrets, threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set
from clubwatch.alerters import BaseAlerter, DeliveryError, make_alerter
from clubwatch.models import Alert, NotificationChannel, Severity, utcnow

log = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], Any]

class NotificationStatus:
    PENDING = "pending"; SENT = "sent"; FAILED = "failed"

@dataclass
class NotificationRecord:
    id:           str
    alert_id:     str
    channel_id:   str
    severity:     str
    message:      Optional[str]      = None
    status:       str                = NotificationStatus.PENDING
    attempts:     int                = 0
    last_attempt: Optional[datetime] = None
    sent_at:      Optional[datetime] = None
    error:        Optional[str]      = None
    created_at:   datetime           = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        iso = lambda d: d.isoformat() if d else None
        return {"id": self.id, "alert_id": self.alert_id, "channel": self.channel_id, "severity": self.severity,
                "status": self.status, "attempts": self.attempts, "last_attempt": iso(self.last_attempt),
                "sent_at": iso(self.sent_at), "error": self.error}

class NotificationDispatcher:
    def __init__(self, channels: Optional[Iterable[NotificationChannel]] = None, max_workers: int = 4,
                 retries: int = 2, retry_backoff: float = 30.0, history_size: int = 1000,
                 scheduler: Optional[Scheduler] = None,
                 alerter_factory: Callable[[NotificationChannel], BaseAlerter] = make_alerter,
                 clock: Callable[[], datetime] = utcnow):
        self.retries       = retries
        self.retry_backoff = retry_backoff
        self._factory      = alerter_factory
        self._clock        = clock
        self._scheduler    = scheduler or self._timer
        self._channels: Dict[str, NotificationChannel] = {}
        self._alerters: Dict[str, BaseAlerter]         = {}
        self._history: Deque[NotificationRecord]       = deque(maxlen=history_size)
        self._inflight: Set[Future]                    = set()
        self._timers: Set[threading.Timer]             = set()
        self._lock     = Lock()
        self._closed   = False
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="clubwatch-notify") if max_workers > 0 else None
        for ch in channels or []: self.add_channel(ch)

    # Channel registry

    def add_channel(self, channel: NotificationChannel) -> NotificationChannel:
        channel.validate()
        alerter = self._factory(channel)
        with self._lock:
            self._channels[channel.id] = channel; self._alerters[channel.id] = alerter
        log.info(f"Alert channel: {channel.id} ({channel.type}, {'enabled' if channel.enabled else 'disabled'})")
        return channel

    def remove_channel(self, channel_id: str) -> bool:
        with self._lock:
            removed = self._channels.pop(channel_id, None) is not None
            self._alerters.pop(channel_id, None)
        if removed: log.info(f"Removed alert channel: {channel_id}")
        return removed

    def toggle_channel(self, channel_id: str, enabled: bool) -> bool:
        with self._lock:
            channel = self._channels.get(channel_id)
            if channel is None: return False
            channel.enabled = enabled
        log.info(f"Alert channel {channel_id}: {'enabled' if enabled else 'disabled'}")
        return True

    def channels(self) -> List[NotificationChannel]:
        with self._lock: return list(self._channels.values())

    def get_channel(self, channel_id: str) -> Optional[NotificationChannel]:
        return self._channels.get(channel_id)

    def enabled_channels(self) -> List[str]:
        return [c.id for c in self.channels() if c.enabled]

    # Delivery

    def dispatch(self, alert: Alert, channel_ids: Iterable[str], message: Optional[str] = None) -> List[NotificationRecord]:
        records = []
        for cid in dict.fromkeys(channel_ids):
            channel = self._channels.get(cid)
            if channel is None or not channel.enabled:
                log.debug(f"Skipping channel {cid} for {alert.id} ({'unknown' if channel is None else 'disabled'})")
                continue
            record = NotificationRecord(f"notif_{secrets.token_hex(6)}", alert.id, cid, alert.severity, message,
                                        created_at=self._clock())
            with self._lock: self._history.append(record)
            records.append(record)
            self._submit(record, alert)
        return records

    def _submit(self, record: NotificationRecord, alert: Alert) -> None:
        with self._lock:
            closed = self._closed
            if closed:
                record.status = NotificationStatus.FAILED; record.error = "dispatcher closed"
            elif self._executor is not None:
                fut = self._executor.submit(self._attempt, record, alert)
                self._inflight.add(fut)
        if closed:
            log.warning(f"Dropping notification {record.id} via {record.channel_id}: dispatcher closed"); return
        if self._executor is None:
            self._attempt(record, alert); return
        fut.add_done_callback(self._done)

    def _done(self, fut: Future) -> None:
        with self._lock: self._inflight.discard(fut)

    def _attempt(self, record: NotificationRecord, alert: Alert) -> bool:
        with self._lock:
            channel = self._channels.get(record.channel_id); alerter = self._alerters.get(record.channel_id)
            record.attempts += 1; record.last_attempt = self._clock()
        if channel is None or alerter is None or not channel.enabled:
            with self._lock: record.status = NotificationStatus.FAILED; record.error = "channel removed or disabled"
            log.warning(f"Dropping notification {record.id}: channel {record.channel_id} no longer available")
            return False
        try:
            alerter.send(alert, record.message)
        except Exception as e:
            with self._lock: record.status = NotificationStatus.FAILED; record.error = str(e)
            self._retry_or_give_up(record, alert, e)
            return False
        with self._lock: record.status = NotificationStatus.SENT; record.sent_at = self._clock(); record.error = None
        alert.mark_notified(record.channel_id)
        log.info(f"Notification sent via {record.channel_id} for {alert.id}")
        return True

    def _retry_or_give_up(self, record: NotificationRecord, alert: Alert, err: Exception) -> None:
        kind = "delivery" if isinstance(err, DeliveryError) else "unexpected"
        if record.attempts <= self.retries and not self._closed:
            delay = self.retry_backoff * (2 ** (record.attempts - 1))
            log.warning(f"Notification via {record.channel_id} failed ({kind}: {err}); "
                        f"retry {record.attempts}/{self.retries} in {delay:.0f}s")
            self._scheduler(delay, lambda: self._submit(record, alert))
        else:
            log.error(f"Notification via {record.channel_id} for {alert.id} failed permanently "
                      f"after {record.attempts} attempt(s): {err}")

    def _timer(self, delay: float, fn: Callable[[], None]) -> threading.Timer:
        def run():
            with self._lock: self._timers.discard(t)
            fn()
        t = threading.Timer(delay, run); t.daemon = True
        with self._lock: self._timers.add(t)
        t.start()
        return t

    # History

    def has_notified(self, alert_id: str, channel_id: str, include_pending: bool = False) -> bool:
        ok = {NotificationStatus.SENT, NotificationStatus.PENDING} if include_pending else {NotificationStatus.SENT}
        with self._lock:
            return any(r.alert_id == alert_id and r.channel_id == channel_id and r.status in ok for r in self._history)

    def in_retry(self, alert_id: str, channel_id: str) -> bool:
        with self._lock:
            if self._closed: return False
            return any(r.alert_id == alert_id and r.channel_id == channel_id and r.status == NotificationStatus.FAILED
                       and r.attempts <= self.retries for r in self._history)

    def history(self, limit: int = 50, alert_id: Optional[str] = None) -> List[NotificationRecord]:
        with self._lock: records = [r for r in self._history if alert_id is None or r.alert_id == alert_id]
        return sorted(records, key=lambda r: r.created_at, reverse=True)[:limit]

    def trim_history(self, older_than_seconds: float) -> int:
        now = self._clock()
        with self._lock:
            kept = [r for r in self._history if (now - r.created_at).total_seconds() < older_than_seconds]
            removed = len(self._history) - len(kept)
            self._history.clear(); self._history.extend(kept)
        if removed: log.info(f"Cleaned up {removed} old notifications")
        return removed

    def stats(self) -> Dict[str, Any]:
        with self._lock: records = list(self._history)
        by_status: Dict[str, int] = {}; by_channel: Dict[str, int] = {}; by_severity: Dict[str, int] = {}
        durations = []
        for r in records:
            by_status[r.status]     = by_status.get(r.status, 0) + 1
            by_channel[r.channel_id] = by_channel.get(r.channel_id, 0) + 1
            by_severity[r.severity] = by_severity.get(r.severity, 0) + 1
            if r.sent_at and r.last_attempt: durations.append((r.sent_at - r.last_attempt).total_seconds() * 1000)
        return {"total": len(records), "by_status": by_status, "by_channel": by_channel, "by_severity": by_severity,
                "average_response_ms": sum(durations) / len(durations) if durations else 0.0}

    def test_channel(self, channel_id: str) -> bool:
        channel = self._channels.get(channel_id); alerter = self._alerters.get(channel_id)
        if channel is None or alerter is None:
            log.error(f"Channel {channel_id} not found"); return False
        sample = Alert(id="test_alert", rule_id="test", metric="test_metric", severity=Severity.INFO, title="Test Alert",
                       description="This is a test alert from ClubWatch", current_value=150, threshold=100,
                       operator="gt", unit="", created_at=self._clock())
        try:
            alerter.send(sample, "TEST: Alert system is working correctly")
        except Exception as e:
            log.error(f"Test notification failed for {channel_id}: {e}"); return False
        log.info(f"Test notification sent successfully via {channel_id}")
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        with self._lock: pending = list(self._inflight)
        if not pending: return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, timeout: float = 5.0) -> None:
        with self._lock:
            self._closed = True
            timers = list(self._timers); self._timers.clear()
        for t in timers: t.cancel()
        self.flush(timeout)
        if self._executor: self._executor.shutdown(wait=False)

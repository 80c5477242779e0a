from __future__ import annotations
import math, secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

class ValidationError(ValueError):
    pass

class Severity:
    INFO     = "info"
    WARNING  = "warning"
    CRITICAL = "critical"
    ALL      = (INFO, WARNING, CRITICAL)

class MetricKind:
    COUNTER   = "counter"
    GAUGE     = "gauge"
    HISTOGRAM = "histogram"
    TIMER     = "timer"
    ALL       = (COUNTER, GAUGE, HISTOGRAM, TIMER)

class AlertStatus:
    ACTIVE       = "active"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"

class ChannelType:
    LOG     = "log"
    CONSOLE = "console"
    WEBHOOK = "webhook"
    CHAT    = "chat-webhook"
    EMAIL   = "email"
    ALL     = (LOG, CONSOLE, WEBHOOK, CHAT, EMAIL)

OPERATORS = {
    "gt":  lambda v, t: v > t,
    "lt":  lambda v, t: v < t,
    "eq":  lambda v, t: v == t,
    "gte": lambda v, t: v >= t,
    "lte": lambda v, t: v <= t,
}
OPERATOR_SYMBOLS = {"gt": ">", "lt": "<", "eq": "==", "gte": ">=", "lte": "<="}

def compare(value: float, operator: str, threshold: float) -> bool:
    fn = OPERATORS.get(operator)
    if fn is None: return False
    try: return bool(fn(value, threshold))
    except TypeError: return False

def canonical_tags(tags: Optional[Dict[str, Any]]) -> Tuple[Tuple[str, str], ...]:
    if not tags: return ()
    return tuple(sorted((str(k), str(v)) for k, v in tags.items()))

def signature(rule_id: str, tags: Optional[Dict[str, Any]]) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
    return (rule_id, canonical_tags(tags))

@dataclass(frozen=True)
class MetricPoint:
    timestamp: datetime
    value:     float
    tags:      Tuple[Tuple[str, str], ...] = ()

    @property
    def tag_map(self) -> Dict[str, str]:
        return dict(self.tags)

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "value": self.value, "tags": self.tag_map}

@dataclass
class AlertRule:
    id:                   str
    name:                 str
    metric:               str
    operator:             str
    threshold:            float
    severity:             str
    description:          str            = ""
    enabled:              bool           = True
    cooldown:             float          = 300.0
    consecutive_failures: Optional[int]  = None
    time_window:          Optional[float] = None
    channels:             List[str]      = field(default_factory=list)

    def validate(self) -> "AlertRule":
        if not self.id or not isinstance(self.id, str): raise ValidationError("rule id must be a non-empty string")
        if not self.metric: raise ValidationError(f"rule {self.id}: metric is required")
        if self.operator not in OPERATORS:
            raise ValidationError(f"rule {self.id}: unknown operator {self.operator!r} (expected one of {sorted(OPERATORS)})")
        if self.severity not in Severity.ALL: raise ValidationError(f"rule {self.id}: unknown severity {self.severity!r}")
        if isinstance(self.threshold, bool) or not isinstance(self.threshold, (int, float)) or math.isnan(self.threshold):
            raise ValidationError(f"rule {self.id}: threshold must be a number")
        if self.cooldown is None or self.cooldown < 0: raise ValidationError(f"rule {self.id}: cooldown must be >= 0")
        if self.consecutive_failures is not None and (not isinstance(self.consecutive_failures, int) or self.consecutive_failures < 1):
            raise ValidationError(f"rule {self.id}: consecutive_failures must be a positive integer")
        if self.time_window is not None and self.time_window <= 0:
            raise ValidationError(f"rule {self.id}: time_window must be > 0")
        if not isinstance(self.channels, list) or not all(isinstance(c, str) for c in self.channels):
            raise ValidationError(f"rule {self.id}: channels must be a list of channel ids")
        if not self.name: self.name = self.id
        return self

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AlertRule":
        known = {k: v for k, v in d.items() if k in cls.__dataclass_fields__}
        if "value" in d and "threshold" not in known: known["threshold"] = d["value"]
        if "cooldown_minutes" in d and "cooldown" not in known: known["cooldown"] = float(d["cooldown_minutes"]) * 60
        missing = [k for k in ("id", "metric", "operator", "threshold", "severity") if k not in known]
        if missing: raise ValidationError(f"rule {d.get('id', '?')}: missing fields {missing}")
        known.setdefault("name", known["id"])
        return cls(**known).validate()

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "metric": self.metric, "operator": self.operator,
                "threshold": self.threshold, "severity": self.severity, "description": self.description,
                "enabled": self.enabled, "cooldown": self.cooldown, "consecutive_failures": self.consecutive_failures,
                "time_window": self.time_window, "channels": list(self.channels)}

def new_alert_id(rule_id: str, at: datetime) -> str:
    return f"{rule_id}_{int(at.timestamp() * 1000)}_{secrets.token_hex(5)[:9]}"

@dataclass(eq=False)
class Alert:
    id:              str
    rule_id:         str
    metric:          str
    severity:        str
    title:           str
    description:     str
    current_value:   float
    threshold:       float
    operator:        str
    unit:            str
    created_at:      datetime                     = field(default_factory=utcnow)
    status:          str                          = AlertStatus.ACTIVE
    tags:            Dict[str, str]               = field(default_factory=dict)
    acknowledged_by: Optional[str]                = None
    acknowledged_at: Optional[datetime]           = None
    resolved_by:     Optional[str]                = None
    resolved_at:     Optional[datetime]           = None
    notified:        List[str]                    = field(default_factory=list)
    _lock:           Lock                         = field(default_factory=Lock, repr=False)

    @property
    def signature(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        return signature(self.rule_id, self.tags)

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    @property
    def is_open(self) -> bool:
        return self.status != AlertStatus.RESOLVED

    @property
    def message(self) -> str:
        op = OPERATOR_SYMBOLS.get(self.operator, self.operator)
        return (f"{self.title}: {self.description}. Current value: {self.current_value}{self.unit}, "
                f"Threshold: {op} {self.threshold}{self.unit}. Time: {self.created_at.isoformat()}")

    def mark_notified(self, channel_id: str) -> None:
        with self._lock:
            if channel_id not in self.notified: self.notified.append(channel_id)

    def notified_channels(self) -> List[str]:
        with self._lock: return list(self.notified)

    def to_dict(self) -> Dict[str, Any]:
        iso = lambda d: d.isoformat() if d else None
        return {"id": self.id, "rule_id": self.rule_id, "metric": self.metric, "severity": self.severity,
                "title": self.title, "description": self.description, "current_value": self.current_value,
                "threshold": self.threshold, "operator": self.operator, "unit": self.unit,
                "timestamp": iso(self.created_at), "status": self.status, "tags": dict(self.tags),
                "acknowledged_by": self.acknowledged_by, "acknowledged_at": iso(self.acknowledged_at),
                "resolved_by": self.resolved_by, "resolved_at": iso(self.resolved_at),
                "notifications_sent": self.notified_channels()}

    def __str__(self) -> str:
        return f"[{self.status.upper() if self.status != AlertStatus.ACTIVE else self.severity.upper()}] {self.title}: {self.description}"

# Channel configuration, one variant per channel type

@dataclass
class LogConfig:
    logger: str = "clubwatch.alerts"

@dataclass
class ConsoleConfig:
    colour: bool = True
    stream: str  = "stderr"

@dataclass
class WebhookConfig:
    url:     str
    timeout: float          = 5.0
    method:  str            = "POST"
    headers: Dict[str, str] = field(default_factory=dict)

@dataclass
class ChatWebhookConfig:
    url:      str
    flavor:   str   = "slack"
    channel:  str   = ""
    username: str   = "ClubWatch"
    timeout:  float = 10.0

@dataclass
class EmailConfig:
    smtp_host:      str
    to:             List[str]
    smtp_port:      int   = 587
    use_tls:        bool  = True
    username:       str   = ""
    password:       str   = ""
    sender:         str   = "alerts@localhost"
    subject_prefix: str   = "Club System Alert"
    timeout:        float = 10.0

ChannelConfig = Union[LogConfig, ConsoleConfig, WebhookConfig, ChatWebhookConfig, EmailConfig]
_CONFIG_TYPES = {ChannelType.LOG: LogConfig, ChannelType.CONSOLE: ConsoleConfig, ChannelType.WEBHOOK: WebhookConfig,
                 ChannelType.CHAT: ChatWebhookConfig, ChannelType.EMAIL: EmailConfig}

@dataclass
class NotificationChannel:
    id:      str
    type:    str
    config:  ChannelConfig
    enabled: bool = True
    name:    str  = ""

    def validate(self) -> "NotificationChannel":
        if not self.id: raise ValidationError("channel id must be a non-empty string")
        expected = _CONFIG_TYPES.get(self.type)
        if expected is None: raise ValidationError(f"channel {self.id}: unknown type {self.type!r}")
        if not isinstance(self.config, expected):
            raise ValidationError(f"channel {self.id}: {self.type} channel needs {expected.__name__}, got {type(self.config).__name__}")
        if isinstance(self.config, (WebhookConfig, ChatWebhookConfig)):
            if not self.config.url.startswith(("http://", "https://")): raise ValidationError(f"channel {self.id}: invalid url {self.config.url!r}")
            if self.config.timeout <= 0: raise ValidationError(f"channel {self.id}: timeout must be > 0")
        if isinstance(self.config, ChatWebhookConfig) and self.config.flavor not in ("slack", "discord"):
            raise ValidationError(f"channel {self.id}: unknown chat flavor {self.config.flavor!r}")
        if isinstance(self.config, EmailConfig) and (not self.config.smtp_host or not self.config.to):
            raise ValidationError(f"channel {self.id}: email needs smtp_host and at least one recipient")
        if not self.name: self.name = self.id
        return self

    @classmethod
    def from_dict(cls, channel_id: str, d: Dict[str, Any]) -> "NotificationChannel":
        ctype = d.get("type", channel_id)
        cfg_cls = _CONFIG_TYPES.get(ctype)
        if cfg_cls is None: raise ValidationError(f"channel {channel_id}: unknown type {ctype!r}")
        fields = {k: v for k, v in d.items() if k in cfg_cls.__dataclass_fields__}
        if isinstance(fields.get("to"), str): fields["to"] = [a.strip() for a in fields["to"].split(",") if a.strip()]
        try: cfg = cfg_cls(**fields)
        except TypeError as e: raise ValidationError(f"channel {channel_id}: {e}") from None
        return cls(channel_id, ctype, cfg, enabled=bool(d.get("enabled", True)), name=d.get("name", "")).validate()

@dataclass
class EscalationRule:
    name:       str
    severities: FrozenSet[str]
    duration:   float
    channels:   List[str]
    message:    Optional[str] = None
    enabled:    bool          = True

    @property
    def immediate(self) -> bool:
        return self.duration <= 0

    def validate(self) -> "EscalationRule":
        if not self.name: raise ValidationError("escalation rule needs a name")
        bad = set(self.severities) - set(Severity.ALL)
        if bad: raise ValidationError(f"escalation {self.name}: unknown severities {sorted(bad)}")
        if self.duration < 0: raise ValidationError(f"escalation {self.name}: duration must be >= 0")
        if not self.channels: raise ValidationError(f"escalation {self.name}: at least one channel is required")
        return self

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "EscalationRule":
        try:
            return cls(name=d["name"], severities=frozenset(d.get("severities", [])), duration=float(d.get("duration", 0)),
                       channels=list(d.get("channels", [])), message=d.get("message"),
                       enabled=bool(d.get("enabled", True))).validate()
        except KeyError as e: raise ValidationError(f"escalation rule missing {e}") from None

class BenchmarkStatus:
    GOOD = "good"; WARNING = "warning"; CRITICAL = "critical"

class Trend:
    IMPROVING = "improving"; STABLE = "stable"; DEGRADING = "degrading"

@dataclass
class PerformanceBenchmark:
    operation: str
    baseline:  float
    threshold: float
    current:   float = 0.0
    status:    str   = BenchmarkStatus.GOOD
    trend:     str   = Trend.STABLE

    def to_dict(self) -> Dict[str, Any]:
        return {"operation": self.operation, "baseline": self.baseline, "current": self.current,
                "threshold": self.threshold, "status": self.status, "trend": self.trend}

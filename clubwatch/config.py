from __future__ import annotations
import copy, logging, os, sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
import yaml
from clubwatch.models import AlertRule, EscalationRule, NotificationChannel, ValidationError

log = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "monitor":   {"log_level": "INFO", "log_file": "", "host_tag": ""},
    "metrics":   {"enabled": True, "capacity": 1000, "basic_interval": 30, "performance_interval": 60,
                  "operational_interval": 300, "system": True},
    "alerting":  {"enabled": True, "check_interval": 120, "default_rules": True, "rules": []},
    "notifications": {
        "max_workers": 4, "retries": 2, "retry_backoff": 30, "history_size": 1000,
        "channels": {
            "log":     {"type": "log", "enabled": True, "name": "System Log"},
            "console": {"type": "console", "enabled": True, "name": "Console Output"},
            "webhook": {"type": "webhook", "enabled": False, "name": "Webhook Notifications", "url": "", "timeout": 5},
            "slack":   {"type": "chat-webhook", "flavor": "slack", "enabled": False, "url": "",
                        "channel": "#alerts", "username": "ClubWatch"},
            "discord": {"type": "chat-webhook", "flavor": "discord", "enabled": False, "url": "", "username": "ClubWatch"},
            "email":   {"type": "email", "enabled": False, "name": "Email Notifications", "smtp_host": "", "smtp_port": 587,
                        "use_tls": True, "username": "", "password": "", "sender": "alerts@localhost", "to": [],
                        "subject_prefix": "Club System Alert"},
        },
    },
    "escalation": {"enabled": True, "interval": 60, "default_rules": True, "rules": []},
    "cleanup":    {"enabled": True, "interval_hours": 24, "retention_days": 30, "metric_retention_hours": 24,
                   "notification_retention_hours": 24},
    "benchmarks": {"default": True, "operations": {}},
}

# env var -> (path, caster); a url/host set from the environment also enables its channel
ENV_OVERRIDES = {
    "ALERT_WEBHOOK_URL":   (("notifications", "channels", "webhook", "url"), str),
    "ALERT_WEBHOOK_AUTH":  (("notifications", "channels", "webhook", "headers", "Authorization"), str),
    "SLACK_WEBHOOK_URL":   (("notifications", "channels", "slack", "url"), str),
    "SLACK_CHANNEL":       (("notifications", "channels", "slack", "channel"), str),
    "DISCORD_WEBHOOK_URL": (("notifications", "channels", "discord", "url"), str),
    "SMTP_HOST":           (("notifications", "channels", "email", "smtp_host"), str),
    "SMTP_PORT":           (("notifications", "channels", "email", "smtp_port"), int),
    "SMTP_USER":           (("notifications", "channels", "email", "username"), str),
    "SMTP_PASS":           (("notifications", "channels", "email", "password"), str),
    "SMTP_SECURE":         (("notifications", "channels", "email", "use_tls"), lambda v: v.lower() in ("1", "true", "yes")),
    "ALERT_EMAIL_FROM":    (("notifications", "channels", "email", "sender"), str),
    "ALERT_EMAIL_TO":      (("notifications", "channels", "email", "to"), lambda v: [a.strip() for a in v.split(",") if a.strip()]),
    "CLUBWATCH_LOG_LEVEL": (("monitor", "log_level"), str),
}
ENABLING = {"ALERT_WEBHOOK_URL": "webhook", "SLACK_WEBHOOK_URL": "slack", "DISCORD_WEBHOOK_URL": "discord", "SMTP_HOST": "email"}

def default_config_paths() -> List[Path]:
    paths = []
    env = os.environ.get("CLUBWATCH_CONFIG")
    if env: paths.append(Path(env))
    paths.append(Path("clubwatch.yaml"))
    paths.append(Path.home() / ".config" / "clubwatch" / "clubwatch.yaml")
    paths.append(Path("/etc/clubwatch/clubwatch.yaml"))
    return paths

def find_config() -> Optional[Path]:
    for p in default_config_paths():
        if p.exists():
            return p
    return None

def deep_merge(base: Dict, override: Dict) -> Dict:
    result = copy.deepcopy(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = deep_merge(result[k], v)
        else:
            result[k] = copy.deepcopy(v)
    return result

def apply_env(cfg: Dict, environ: Optional[Mapping[str, str]] = None) -> Dict:
    environ = os.environ if environ is None else environ
    cfg = copy.deepcopy(cfg)
    for var, (path, cast) in ENV_OVERRIDES.items():
        raw = environ.get(var)
        if not raw: continue
        try: value = cast(raw)
        except ValueError: log.warning(f"Ignoring invalid {var}={raw!r}"); continue
        node = cfg
        for key in path[:-1]: node = node.setdefault(key, {})
        node[path[-1]] = value
        if var in ENABLING: cfg["notifications"]["channels"][ENABLING[var]]["enabled"] = True
    return cfg

def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict:
    if path:
        config_path = Path(path)
        if not config_path.exists():
            log.error(f"Config not found: {path}"); sys.exit(1)
    else:
        config_path = find_config()
        if not config_path:
            log.warning("No config found. Using defaults. Run: clubwatch --init")
            return apply_env(deep_merge(DEFAULTS, {}), environ)
    try:
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        log.error(f"Failed to parse {config_path}: {e}"); sys.exit(1)
    if not isinstance(raw, dict):
        log.error(f"Config {config_path} must be a mapping"); sys.exit(1)
    return apply_env(deep_merge(DEFAULTS, raw), environ)

def cfg_get(d: Dict, *keys: str, default: Any = None) -> Any:
    for k in keys:
        if not isinstance(d, dict): return default
        d = d.get(k)
        if d is None: return default
    return d

def build_channels(cfg: Dict) -> List[NotificationChannel]:
    channels = []
    for cid, ccfg in (cfg_get(cfg, "notifications", "channels", default={}) or {}).items():
        if not isinstance(ccfg, dict): raise ValidationError(f"channel {cid}: expected a mapping")
        if not ccfg.get("enabled", True) and not (ccfg.get("url") or ccfg.get("smtp_host") or ccfg.get("type") in ("log", "console")):
            log.debug(f"Channel {cid} disabled and unconfigured, skipping"); continue
        channels.append(NotificationChannel.from_dict(cid, ccfg))
    return channels

def build_rules(cfg: Dict) -> List[AlertRule]:
    from clubwatch.evaluator import DEFAULT_RULES
    rules = {r.id: AlertRule(**r.to_dict()) for r in DEFAULT_RULES} if cfg_get(cfg, "alerting", "default_rules", default=True) else {}
    for rdef in cfg_get(cfg, "alerting", "rules", default=[]) or []:
        rule = AlertRule.from_dict(rdef); rules[rule.id] = rule
    return list(rules.values())

def build_escalations(cfg: Dict) -> List[EscalationRule]:
    from clubwatch.escalation import DEFAULT_ESCALATIONS
    rules = {r.name: r for r in DEFAULT_ESCALATIONS} if cfg_get(cfg, "escalation", "default_rules", default=True) else {}
    for rdef in cfg_get(cfg, "escalation", "rules", default=[]) or []:
        rule = EscalationRule.from_dict(rdef); rules[rule.name] = rule
    return list(rules.values())

def build_benchmarks(cfg: Dict) -> List[tuple]:
    from clubwatch.benchmarks import DEFAULT_BENCHMARKS
    ops = {op: (b, t) for op, b, t in DEFAULT_BENCHMARKS} if cfg_get(cfg, "benchmarks", "default", default=True) else {}
    for op, bdef in (cfg_get(cfg, "benchmarks", "operations", default={}) or {}).items():
        try: ops[op] = (float(bdef["baseline"]), float(bdef["threshold"]))
        except (KeyError, TypeError, ValueError): raise ValidationError(f"benchmark {op}: needs numeric baseline and threshold") from None
    return [(op, b, t) for op, (b, t) in ops.items()]

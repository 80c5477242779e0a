from __future__ import annotations
import json, logging, socket, urllib.error, urllib.request
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional
from clubwatch.models import Alert, NotificationChannel

log = logging.getLogger(__name__)

USER_AGENT = "ClubWatch-Alerting/1.0"
SYSTEM     = "clubwatch"

class DeliveryError(Exception):
    pass

def alert_payload(alert: Alert, message: Optional[str] = None) -> Dict[str, Any]:
    return {"id": alert.id, "severity": alert.severity, "title": alert.title, "description": alert.description,
            "message": message or alert.message, "metric": alert.metric, "current_value": alert.current_value,
            "threshold_value": alert.threshold, "operator": alert.operator, "unit": alert.unit,
            "timestamp": alert.created_at.isoformat(), "tags": dict(alert.tags)}

class BaseAlerter(ABC):
    def __init__(self, channel: NotificationChannel):
        self.channel = channel
        self.config  = channel.config

    @abstractmethod
    def send(self, alert: Alert, message: Optional[str] = None) -> None: ...

    def _post_json(self, url: str, payload: Dict[str, Any], headers: Optional[Dict[str, str]] = None,
                   timeout: float = 5, method: str = "POST") -> bytes:
        data = json.dumps(payload, default=str).encode()
        hdrs = {"Content-Type": "application/json", "User-Agent": USER_AGENT, **(headers or {})}
        req  = urllib.request.Request(url, data=data, headers=hdrs, method=method)
        try:
            with urllib.request.urlopen(req, timeout=timeout) as resp: return resp.read()
        except urllib.error.HTTPError as e:
            raise DeliveryError(f"HTTP {e.code}: {e.read().decode(errors='replace')[:200]}") from e
        except (urllib.error.URLError, socket.timeout, TimeoutError, OSError) as e:
            raise DeliveryError(f"{self.__class__.__name__} request to {url} failed: {e}") from e

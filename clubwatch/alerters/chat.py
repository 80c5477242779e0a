from __future__ import annotations
import logging
from typing import Any, Dict, Optional
from clubwatch.alerters.base import BaseAlerter
from clubwatch.models import Alert, Severity

log = logging.getLogger(__name__)

class ChatWebhookAlerter(BaseAlerter):
    SLACK_COLOURS   = {Severity.INFO: "#36a64f", Severity.WARNING: "#ff9f00", Severity.CRITICAL: "#e01e5a"}
    DISCORD_COLOURS = {Severity.INFO: 0x3498DB, Severity.WARNING: 0xFFA500, Severity.CRITICAL: 0xFF0000}

    def send(self, alert: Alert, message: Optional[str] = None) -> None:
        build   = self._discord if self.config.flavor == "discord" else self._slack
        self._post_json(self.config.url, build(alert, message or alert.description), timeout=self.config.timeout)

    def _icon(self, alert: Alert) -> str:
        return "🚨" if alert.is_critical else ("⚠️" if alert.severity == Severity.WARNING else "ℹ️")

    def _slack(self, alert: Alert, text: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "username": self.config.username,
            "text": f"{self._icon(alert)} *{alert.severity.upper()}* {alert.title}",
            "attachments": [{"color": self.SLACK_COLOURS.get(alert.severity, "#808080"), "title": alert.title, "text": text,
                "footer": f"ClubWatch • {alert.id}", "ts": int(alert.created_at.timestamp()),
                "fields": [{"title": "Metric", "value": alert.metric, "short": True},
                           {"title": "Value", "value": f"{alert.current_value}{alert.unit}", "short": True},
                           {"title": "Threshold", "value": f"{alert.operator} {alert.threshold}{alert.unit}", "short": True},
                           {"title": "Severity", "value": alert.severity.upper(), "short": True}]}],
        }
        if self.config.channel: payload["channel"] = self.config.channel
        return payload

    def _discord(self, alert: Alert, text: str) -> Dict[str, Any]:
        return {"username": self.config.username,
                "embeds": [{"title": f"{self._icon(alert)} {alert.title}", "description": text,
                            "color": self.DISCORD_COLOURS.get(alert.severity, 0x95A5A6),
                            "timestamp": alert.created_at.isoformat(),
                            "footer": {"text": f"ClubWatch • {alert.id}"},
                            "fields": [{"name": "Metric", "value": alert.metric, "inline": True},
                                       {"name": "Value", "value": f"{alert.current_value}{alert.unit}", "inline": True},
                                       {"name": "Threshold", "value": f"{alert.operator} {alert.threshold}{alert.unit}", "inline": True},
                                       {"name": "Severity", "value": alert.severity.upper(), "inline": True}]}]}

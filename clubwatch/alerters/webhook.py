from __future__ import annotations
import logging
from typing import Optional
from clubwatch.alerters.base import SYSTEM, BaseAlerter, alert_payload
from clubwatch.models import Alert

log = logging.getLogger(__name__)

class WebhookAlerter(BaseAlerter):
    def send(self, alert: Alert, message: Optional[str] = None) -> None:
        self._post_json(self.config.url, {"alert": alert_payload(alert, message), "system": SYSTEM},
                        headers=self.config.headers, timeout=self.config.timeout, method=self.config.method.upper())
        log.debug(f"Webhook delivered {alert.id} to {self.config.url}")

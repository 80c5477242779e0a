from __future__ import annotations
import logging
from typing import Optional
from clubwatch.alerters.base import BaseAlerter
from clubwatch.models import Alert

class LogAlerter(BaseAlerter):
    def send(self, alert: Alert, message: Optional[str] = None) -> None:
        logger = logging.getLogger(self.config.logger)
        logger.log(logging.ERROR if alert.is_critical else logging.WARNING, message or alert.message,
                   extra={"alert_id": alert.id, "severity": alert.severity, "metric": alert.metric})

from __future__ import annotations
import sys
from typing import Optional
from clubwatch.alerters.base import BaseAlerter
from clubwatch.models import Alert, Severity

RESET="\033[0m"; BOLD="\033[1m"; RED="\033[91m"; YELLOW="\033[93m"; CYAN="\033[96m"

class ConsoleAlerter(BaseAlerter):
    _C = {Severity.INFO: CYAN, Severity.WARNING: YELLOW, Severity.CRITICAL: RED + BOLD}

    def send(self, alert: Alert, message: Optional[str] = None) -> None:
        stream = sys.stdout if self.config.stream == "stdout" else sys.stderr
        icon   = "🚨" if alert.is_critical else ("⚠️" if alert.severity == Severity.WARNING else "ℹ️")
        head   = f"{icon} [CLUB ALERT] [{alert.severity.upper()}] {alert.created_at.strftime('%Y-%m-%d %H:%M:%S')}"
        if self.config.colour: head = f"{self._C.get(alert.severity, '')}{head}{RESET}"
        print(head, file=stream)
        print(f"   {message or alert.description}", file=stream)
        print(f"   Metric: {alert.metric} = {alert.current_value}{alert.unit}", file=stream)
        print(f"   Threshold: {alert.operator} {alert.threshold}{alert.unit}", file=stream)
        stream.flush()

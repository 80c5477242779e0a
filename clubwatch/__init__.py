"""ClubWatch - metric-driven alerting and escalation for the club CMS backend"""
__version__ = "1.0.0"
__author__  = "ClubWatch Contributors"
__license__ = "MIT"

from clubwatch.models import Alert, AlertRule, EscalationRule, NotificationChannel, Severity, ValidationError
from clubwatch.orchestrator import MonitoringOrchestrator

__all__ = ["MonitoringOrchestrator", "Alert", "AlertRule", "EscalationRule", "NotificationChannel",
           "Severity", "ValidationError", "__version__"]

from __future__ import annotations
import html, logging, smtplib, socket
from email.message import EmailMessage
from typing import Optional
from clubwatch.alerters.base import BaseAlerter, DeliveryError
from clubwatch.models import Alert

log = logging.getLogger(__name__)

SEVERITY_COLOURS = {"critical": "#dc2626", "warning": "#d97706", "info": "#2563eb"}

class EmailAlerter(BaseAlerter):
    def compose(self, alert: Alert, message: Optional[str] = None) -> EmailMessage:
        cfg = self.config
        msg = EmailMessage()
        msg["From"]    = cfg.sender
        msg["To"]      = ", ".join(cfg.to)
        msg["Subject"] = f"{cfg.subject_prefix} - {alert.severity.upper()}: {alert.title}"
        text = message or alert.message
        msg.set_content(f"{text}\n\nAlert ID: {alert.id}\nMetric: {alert.metric}\n"
                        f"Current value: {alert.current_value}{alert.unit}\n"
                        f"Threshold: {alert.operator} {alert.threshold}{alert.unit}\n"
                        f"Time: {alert.created_at.isoformat()}\n")
        colour = SEVERITY_COLOURS.get(alert.severity, "#666")
        e = html.escape
        msg.add_alternative(
            f'<div style="font-family: Arial, sans-serif; max-width: 600px;">'
            f'<h2 style="color: {colour};">{e(alert.title)}</h2>'
            f'<p><strong>Severity:</strong> <span style="color: {colour};">{alert.severity.upper()}</span></p>'
            f'<p><strong>Description:</strong> {e(text)}</p>'
            f'<p><strong>Metric:</strong> {e(alert.metric)}</p>'
            f'<p><strong>Current Value:</strong> {alert.current_value}{e(alert.unit)}</p>'
            f'<p><strong>Threshold:</strong> {e(alert.operator)} {alert.threshold}{e(alert.unit)}</p>'
            f'<p><strong>Time:</strong> {alert.created_at.isoformat()}</p></div>', subtype="html")
        return msg

    def send(self, alert: Alert, message: Optional[str] = None) -> None:
        cfg = self.config; msg = self.compose(alert, message)
        try:
            with smtplib.SMTP(cfg.smtp_host, cfg.smtp_port, timeout=cfg.timeout) as server:
                if cfg.use_tls: server.starttls()
                if cfg.username: server.login(cfg.username, cfg.password)
                server.send_message(msg)
        except (smtplib.SMTPException, socket.timeout, OSError) as e:
            raise DeliveryError(f"SMTP delivery via {cfg.smtp_host}:{cfg.smtp_port} failed: {e}") from e
        log.info(f"Email notification sent for alert {alert.id} to {len(cfg.to)} recipient(s)")

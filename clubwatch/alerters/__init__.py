from clubwatch.alerters.base import BaseAlerter, DeliveryError
from clubwatch.alerters.log import LogAlerter
from clubwatch.alerters.console import ConsoleAlerter
from clubwatch.alerters.webhook import WebhookAlerter
from clubwatch.alerters.chat import ChatWebhookAlerter
from clubwatch.alerters.smtp import EmailAlerter
from clubwatch.models import ChannelType, NotificationChannel

ALERTERS = {ChannelType.LOG: LogAlerter, ChannelType.CONSOLE: ConsoleAlerter, ChannelType.WEBHOOK: WebhookAlerter,
            ChannelType.CHAT: ChatWebhookAlerter, ChannelType.EMAIL: EmailAlerter}

def make_alerter(channel: NotificationChannel) -> BaseAlerter:
    return ALERTERS[channel.type](channel)

__all__ = ["BaseAlerter", "DeliveryError", "LogAlerter", "ConsoleAlerter", "WebhookAlerter",
           "ChatWebhookAlerter", "EmailAlerter", "ALERTERS", "make_alerter"]

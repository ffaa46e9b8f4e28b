import time

from outbox_pipeline.domain.models.notifications import Channel, NotificationContent
from outbox_pipeline.utils.logging import configure_logging


class LoggingSink:
    """Simulated delivery: log the message, wait a little, report success."""

    def __init__(self, delay_seconds: float = 0.1):
        self.delay_seconds = delay_seconds
        self.log = configure_logging("logging_sink")

    def deliver(self, channel: Channel, recipient: str, content: NotificationContent) -> bool:
        self.log.info(
            "Sending notification",
            extra={"channel": Channel(channel).value, "recipient": recipient, "subject": content.subject},
        )
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        return True

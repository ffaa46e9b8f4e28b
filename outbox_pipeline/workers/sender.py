from typing import Optional

from outbox_pipeline.domain.errors import DeliveryError
from outbox_pipeline.domain.models.notifications import Notification, NotificationStatus
from outbox_pipeline.domain.ports import DeliverySink, Store
from outbox_pipeline.utils.logging import configure_logging


class NotificationSender:
    """Hand queued notifications to the delivery sink and record the outcome."""

    def __init__(self, store: Store, sink: DeliverySink, max_attempts: int = 1):
        self.store = store
        self.sink = sink
        self.max_attempts = max_attempts
        self.log = configure_logging("notification_sender")

    def send(self, notification: Notification) -> bool:
        """Deliver one notification; raises DeliveryError after recording a failed attempt.

        Returns False when the notification is no longer queued and was left alone.
        """
        current = self.store.notifications.get(notification.id)
        if current is None or current.status != NotificationStatus.QUEUED:
            self.log.debug("Notification not queued; skipping", extra={"notification_id": notification.id})
            return False

        reason: Optional[str] = None
        try:
            if not self.sink.deliver(current.type, current.user_id, current.content):
                reason = "sink rejected notification"
        except Exception as exc:  # noqa: BLE001
            reason = str(exc) or exc.__class__.__name__

        if reason is None:
            if not self.store.notifications.update_if(current.id, NotificationStatus.QUEUED, NotificationStatus.SENT):
                return False
            self.log.info("Notification sent", extra={"notification_id": current.id, "user_id": current.user_id})
            return True

        attempts = self.store.notifications.record_attempt(current.id, reason)
        if attempts >= self.max_attempts:
            self.store.notifications.update_if(
                current.id, NotificationStatus.QUEUED, NotificationStatus.FAILED, error_message=reason
            )
            self.log.warning(
                "Notification delivery failed",
                extra={"notification_id": current.id, "attempts": attempts, "error": reason},
            )
        else:
            self.log.warning(
                "Notification delivery failed; left queued for retry",
                extra={"notification_id": current.id, "attempts": attempts, "error": reason},
            )
        raise DeliveryError(current.id, reason)

    def drain_queued(self, limit: int, older_than_seconds: float = 0.0) -> int:
        """Retry queued notifications; returns how many were sent."""
        sent = 0
        for notification in self.store.notifications.fetch_queued(limit, older_than_seconds):
            try:
                if self.send(notification):
                    sent += 1
            except DeliveryError:
                continue
        return sent

    def confirm_delivered(self, notification_id: str) -> bool:
        """Delivery-confirmation hook: sent -> delivered."""
        changed = self.store.notifications.update_if(
            notification_id, NotificationStatus.SENT, NotificationStatus.DELIVERED
        )
        if changed:
            self.log.info("Notification delivered", extra={"notification_id": notification_id})
        return bool(changed)

from typing import Callable, Dict, Optional

from outbox_pipeline.config.settings import Settings
from outbox_pipeline.domain.errors import HandlerError
from outbox_pipeline.domain.models.events import OutboxEvent
from outbox_pipeline.domain.models.notifications import Channel, Notification, NotificationContent
from outbox_pipeline.domain.ports import Store
from outbox_pipeline.services.user_service import USER_CREATED, USER_DELETED, USER_UPDATED
from outbox_pipeline.utils.logging import configure_logging

Handler = Callable[[OutboxEvent], Optional[Notification]]


class UserPipeline:
    """Turn user lifecycle events into queued email notifications."""

    def __init__(self, settings: Settings, store: Store):
        self.settings = settings
        self.store = store
        self.log = configure_logging("user_pipeline")

    def routes(self) -> Dict[str, Handler]:
        return {
            USER_CREATED: self.handle_created,
            USER_UPDATED: self.handle_updated,
            USER_DELETED: self.handle_deleted,
        }

    def _payload(self, event: OutboxEvent) -> Dict:
        payload = event.payload or {}
        if not payload.get("user_id"):
            raise HandlerError(f"event {event.id} payload has no user_id")
        return payload

    def _queue_email(self, event: OutboxEvent, user_id: str, subject: str, body: str) -> Notification:
        notification = self.store.notifications.create(
            user_id=user_id,
            outbox_event_id=event.id,
            channel=Channel.EMAIL,
            content=NotificationContent(subject=subject, body=body),
        )
        self.log.info(
            "Queued notification",
            extra={"notification_id": notification.id, "event_id": event.id, "subject": subject},
        )
        return notification

    def handle_created(self, event: OutboxEvent) -> Optional[Notification]:
        payload = self._payload(event)
        username = payload.get("username", "")
        return self._queue_email(
            event,
            payload["user_id"],
            "Welcome to our platform!",
            f"Hi {username}, welcome to our platform! We're excited to have you on board.",
        )

    def handle_updated(self, event: OutboxEvent) -> Optional[Notification]:
        payload = self._payload(event)
        user = self.store.find_user(payload["user_id"])
        if user is None or not user.preferences.email_notifications:
            self.log.info("Skipping update notification", extra={"event_id": event.id, "user_id": payload["user_id"]})
            return None

        fields = ", ".join(payload.get("updated_fields") or [])
        return self._queue_email(
            event,
            user.id,
            "Your account was updated",
            f"Hi {user.username}, your account information was updated. "
            f"The following fields were changed: {fields}.",
        )

    def handle_deleted(self, event: OutboxEvent) -> Optional[Notification]:
        payload = self._payload(event)
        username = payload.get("username", "")
        return self._queue_email(
            event,
            payload["user_id"],
            "Account Deletion Confirmation",
            f"Hi {username}, we're confirming that your account has been deleted as requested.",
        )

import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from outbox_pipeline.domain.errors import ClaimLostError, DeliveryError, HandlerError, StoreError
from outbox_pipeline.domain.models.events import EventStatus, OutboxEvent
from outbox_pipeline.domain.models.notifications import Notification, NotificationStatus
from outbox_pipeline.domain.ports import Store
from outbox_pipeline.utils.logging import configure_logging
from outbox_pipeline.workers.retry import RetryPolicy
from outbox_pipeline.workers.sender import NotificationSender

Handler = Callable[[OutboxEvent], Optional[Notification]]


class Outcome(str, Enum):
    CLAIM_LOST = "claim_lost"
    PROCESSED = "processed"
    SKIPPED = "skipped"
    RETRY = "retry"
    FAILED = "failed"
    UNSETTLED = "unsettled"


class EventDispatcher:
    """Claim an outbox event, run its handler and settle the event's final status.

    Safe to call concurrently for the same event from the listener and the
    scanner: the pending -> processing conditional update admits one caller.
    An event whose final update cannot be written stays in processing until
    the scanner expires the stale claim.
    """

    def __init__(
        self,
        store: Store,
        sender: Optional[NotificationSender] = None,
        retry_policy: Optional[RetryPolicy] = None,
        settle_attempts: int = 3,
        settle_backoff_seconds: float = 0.05,
    ):
        self.store = store
        self.sender = sender
        self.retry_policy = retry_policy or RetryPolicy()
        self.settle_attempts = settle_attempts
        self.settle_backoff_seconds = settle_backoff_seconds
        self._routes: Dict[str, Handler] = {}
        self.log = configure_logging("event_dispatcher")

    def register(self, event_type: str, handler: Handler) -> None:
        self._routes[event_type] = handler

    def register_routes(self, routes: Dict[str, Handler]) -> None:
        for event_type, handler in routes.items():
            self.register(event_type, handler)

    def handle(self, event: OutboxEvent) -> Outcome:
        try:
            self._claim(event)
        except ClaimLostError:
            self.log.debug("Event already claimed", extra={"event_id": event.id})
            return Outcome.CLAIM_LOST

        handler = self._routes.get(event.event_type)
        if handler is None:
            self.log.warning("Unhandled event type", extra={"event_type": event.event_type, "event_id": event.id})
            if not self._finalize(event, EventStatus.PROCESSED):
                return Outcome.UNSETTLED
            return Outcome.SKIPPED

        try:
            notification = handler(event)
        except Exception as exc:  # noqa: BLE001
            self.log.exception(
                "Failed processing outbox event",
                extra={"event_id": event.id, "event_type": event.event_type, "aggregate_id": event.aggregate_id},
            )
            return self._settle_failure(event, HandlerError(f"{event.event_type} handler failed: {exc}"))

        if not self._finalize(event, EventStatus.PROCESSED):
            if notification is not None:
                self._discard(notification, "outbox event was not finalized")
            return Outcome.UNSETTLED

        if notification is not None and self.sender is not None:
            try:
                self.sender.send(notification)
            except DeliveryError as exc:
                self.log.warning("Delivery failed after processing", extra={"event_id": event.id, "error": exc.reason})
        return Outcome.PROCESSED

    def _claim(self, event: OutboxEvent) -> None:
        if not self.store.outbox.update_if(event.id, EventStatus.PENDING, EventStatus.PROCESSING):
            raise ClaimLostError(event.id)

    def _finalize(self, event: OutboxEvent, status: EventStatus, error_message: Optional[str] = None) -> bool:
        changed = self._settle(event, status, error_message=error_message)
        if changed:
            self.log.info("Event finalized", extra={"event_id": event.id, "status": status.value})
        return changed

    def _settle(
        self,
        event: OutboxEvent,
        status: EventStatus,
        error_message: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> bool:
        """Move a claimed event out of processing, retrying store failures a few times."""
        for attempt in range(1, self.settle_attempts + 1):
            try:
                changed = self.store.outbox.update_if(
                    event.id,
                    EventStatus.PROCESSING,
                    status,
                    error_message=error_message,
                    available_at=available_at,
                )
            except StoreError:
                if attempt == self.settle_attempts:
                    self.log.exception(
                        "Could not settle event; leaving it to stale claim expiry",
                        extra={"event_id": event.id, "status": status.value, "attempts": attempt},
                    )
                    return False
                self.log.warning("Settling event failed; retrying", extra={"event_id": event.id, "attempt": attempt})
                time.sleep(self.settle_backoff_seconds * attempt)
                continue
            if not changed:
                self.log.warning("Event left processing state before settling", extra={"event_id": event.id})
            return bool(changed)
        return False

    def _discard(self, notification: Notification, reason: str) -> None:
        try:
            self.store.notifications.update_if(
                notification.id, NotificationStatus.QUEUED, NotificationStatus.FAILED, error_message=reason
            )
        except StoreError:
            self.log.exception("Could not discard notification", extra={"notification_id": notification.id})
            return
        self.log.warning(
            "Notification discarded",
            extra={"notification_id": notification.id, "event_id": notification.outbox_event_id, "reason": reason},
        )

    def _settle_failure(self, event: OutboxEvent, error: HandlerError) -> Outcome:
        try:
            current = self.store.outbox.get(event.id)
        except StoreError:
            current = None
        attempts = current.attempts if current else event.attempts + 1

        if not self.retry_policy.exhausted(attempts):
            retry_at = self.retry_policy.next_attempt_at(attempts)
            if not self._settle(event, EventStatus.PENDING, error_message=str(error), available_at=retry_at):
                return Outcome.UNSETTLED
            self.log.warning(
                "Event released for retry",
                extra={"event_id": event.id, "attempts": attempts, "retry_at": retry_at.isoformat()},
            )
            return Outcome.RETRY

        if not self._finalize(event, EventStatus.FAILED, error_message=str(error)):
            return Outcome.UNSETTLED
        return Outcome.FAILED

from datetime import datetime
from typing import Any, ContextManager, Dict, List, Optional, Protocol

from outbox_pipeline.domain.models.events import EventDraft, EventStatus, OutboxEvent
from outbox_pipeline.domain.models.notifications import (
    Channel,
    Notification,
    NotificationContent,
    NotificationStatus,
)
from outbox_pipeline.domain.models.users import User


class UserRepository(Protocol):
    def create(self, username: str, email: str, preferences: Optional[Dict[str, bool]] = None) -> User:
        ...

    def update(self, user_id: str, changes: Dict[str, Any]) -> User:
        ...

    def delete(self, user_id: str) -> User:
        ...

    def find_by_id(self, user_id: str) -> Optional[User]:
        ...


class OutboxAppender(Protocol):
    def add(self, draft: EventDraft) -> OutboxEvent:
        ...


class UnitOfWork(Protocol):
    """Aggregate writes and outbox inserts that commit or roll back together."""

    users: UserRepository
    outbox: OutboxAppender


class OutboxStore(Protocol):
    def get(self, event_id: str) -> Optional[OutboxEvent]:
        ...

    def update_if(
        self,
        event_id: str,
        expected: EventStatus,
        new: EventStatus,
        *,
        error_message: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> int:
        """Conditional status update; returns the number of rows changed (0 or 1)."""
        ...

    def fetch_pending(self, limit: int, grace_seconds: float = 0.0) -> List[OutboxEvent]:
        ...

    def has_pending(self, grace_seconds: float = 0.0) -> bool:
        ...

    def expire_stale(self, older_than_seconds: float) -> List[str]:
        ...

    def recent(self, limit: int = 20) -> List[OutboxEvent]:
        ...


class NotificationStore(Protocol):
    def create(
        self, user_id: str, outbox_event_id: str, channel: Channel, content: NotificationContent
    ) -> Notification:
        ...

    def get(self, notification_id: str) -> Optional[Notification]:
        ...

    def update_if(
        self,
        notification_id: str,
        expected: NotificationStatus,
        new: NotificationStatus,
        *,
        error_message: Optional[str] = None,
    ) -> int:
        ...

    def record_attempt(self, notification_id: str, error_message: Optional[str] = None) -> int:
        """Increment the attempt counter and return its new value."""
        ...

    def fetch_queued(self, limit: int, older_than_seconds: float = 0.0) -> List[Notification]:
        """Queued notifications created at least ``older_than_seconds`` ago, oldest first."""
        ...

    def for_event(self, outbox_event_id: str) -> List[Notification]:
        ...

    def recent(self, limit: int = 20) -> List[Notification]:
        ...


class ChangeFeed(Protocol):
    def connect(self) -> None:
        ...

    def poll(self, timeout: float) -> List[OutboxEvent]:
        """Block up to ``timeout`` seconds and return newly inserted pending events."""
        ...

    def close(self) -> None:
        ...


class Store(Protocol):
    outbox: OutboxStore
    notifications: NotificationStore

    def unit_of_work(self) -> ContextManager[UnitOfWork]:
        ...

    def find_user(self, user_id: str) -> Optional[User]:
        ...

    def list_users(self) -> List[User]:
        ...

    def subscribe(self) -> ChangeFeed:
        ...

    def ping(self) -> bool:
        ...

    def close(self) -> None:
        ...


class DeliverySink(Protocol):
    def deliver(self, channel: Channel, recipient: str, content: NotificationContent) -> bool:
        ...

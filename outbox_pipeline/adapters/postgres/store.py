from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional

from outbox_pipeline.adapters.postgres.db import PostgresPool, fetch_one, translate_errors
from outbox_pipeline.adapters.postgres.feed import PgNotifyFeed
from outbox_pipeline.adapters.postgres.schema import FEED_CHANNEL
from outbox_pipeline.adapters.postgres.users import PostgresUserRepository, get_user, list_users
from outbox_pipeline.adapters.queue import notifications as notification_queue
from outbox_pipeline.adapters.queue import outbox as outbox_queue
from outbox_pipeline.domain.models.events import EventDraft, EventStatus, OutboxEvent
from outbox_pipeline.domain.models.notifications import (
    Channel,
    Notification,
    NotificationContent,
    NotificationStatus,
)
from outbox_pipeline.domain.models.users import User


class PostgresOutboxAppender:
    def __init__(self, conn):
        self.conn = conn

    def add(self, draft: EventDraft) -> OutboxEvent:
        return outbox_queue.insert_event(self.conn, draft)


class PostgresUnitOfWork:
    def __init__(self, conn):
        self.users = PostgresUserRepository(conn)
        self.outbox = PostgresOutboxAppender(conn)


class PostgresOutboxStore:
    def __init__(self, pool: PostgresPool):
        self.pool = pool

    def get(self, event_id: str) -> Optional[OutboxEvent]:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.get_event(conn, event_id)

    def update_if(
        self,
        event_id: str,
        expected: EventStatus,
        new: EventStatus,
        *,
        error_message: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> int:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.update_status(conn, event_id, expected, new, error_message, available_at)

    def fetch_pending(self, limit: int, grace_seconds: float = 0.0) -> List[OutboxEvent]:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.fetch_pending_events(conn, limit, grace_seconds)

    def has_pending(self, grace_seconds: float = 0.0) -> bool:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.has_pending_events(conn, grace_seconds)

    def expire_stale(self, older_than_seconds: float) -> List[str]:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.expire_stale_claims(conn, older_than_seconds)

    def recent(self, limit: int = 20) -> List[OutboxEvent]:
        with self.pool.connection() as conn, translate_errors():
            return outbox_queue.recent_events(conn, limit)


class PostgresNotificationStore:
    def __init__(self, pool: PostgresPool):
        self.pool = pool

    def create(
        self, user_id: str, outbox_event_id: str, channel: Channel, content: NotificationContent
    ) -> Notification:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.insert_notification(conn, user_id, outbox_event_id, channel, content)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.get_notification(conn, notification_id)

    def update_if(
        self,
        notification_id: str,
        expected: NotificationStatus,
        new: NotificationStatus,
        *,
        error_message: Optional[str] = None,
    ) -> int:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.update_status(conn, notification_id, expected, new, error_message)

    def record_attempt(self, notification_id: str, error_message: Optional[str] = None) -> int:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.record_attempt(conn, notification_id, error_message)

    def fetch_queued(self, limit: int, older_than_seconds: float = 0.0) -> List[Notification]:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.fetch_queued(conn, limit, older_than_seconds)

    def for_event(self, outbox_event_id: str) -> List[Notification]:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.for_event(conn, outbox_event_id)

    def recent(self, limit: int = 20) -> List[Notification]:
        with self.pool.connection() as conn, translate_errors():
            return notification_queue.recent_notifications(conn, limit)


class PostgresStore:
    """Durable store backed by Postgres: transactions, conditional updates and LISTEN/NOTIFY."""

    def __init__(self, pool: PostgresPool, channel: str = FEED_CHANNEL):
        self.pool = pool
        self.channel = channel
        self.outbox = PostgresOutboxStore(pool)
        self.notifications = PostgresNotificationStore(pool)

    @contextmanager
    def unit_of_work(self) -> Iterator[PostgresUnitOfWork]:
        with self.pool.transaction() as conn:
            yield PostgresUnitOfWork(conn)

    def find_user(self, user_id: str) -> Optional[User]:
        with self.pool.connection() as conn, translate_errors():
            return get_user(conn, user_id)

    def list_users(self) -> List[User]:
        with self.pool.connection() as conn, translate_errors():
            return list_users(conn)

    def subscribe(self) -> PgNotifyFeed:
        return PgNotifyFeed(self.pool.dsn, self.channel, self.outbox)

    def ping(self) -> bool:
        with self.pool.connection() as conn, translate_errors():
            return fetch_one(conn, "SELECT 1 AS ok;")["ok"] == 1

    def close(self) -> None:
        self.pool.close()

import queue
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from outbox_pipeline.domain.errors import ConflictError, FeedError
from outbox_pipeline.domain.models.events import (
    TERMINAL_EVENT_STATUSES,
    EventDraft,
    EventStatus,
    OutboxEvent,
    check_event_transition,
    utcnow,
)
from outbox_pipeline.domain.models.notifications import (
    Channel,
    Notification,
    NotificationContent,
    NotificationStatus,
    check_notification_transition,
)
from outbox_pipeline.domain.models.users import User, UserPreferences, flatten_changes


class InMemoryFeed:
    """Queue-backed change feed; ``disconnect`` simulates a dropped subscription."""

    def __init__(self, store: "InMemoryStore"):
        self._store = store
        self._queue: "queue.Queue[OutboxEvent]" = queue.Queue()
        self._connected = False
        self._dropped = False

    def connect(self) -> None:
        if self._store.feed_available is False:
            raise FeedError("change feed unavailable")
        self._store._attach(self)
        self._connected = True

    def push(self, event: OutboxEvent) -> None:
        self._queue.put(event)

    def poll(self, timeout: float) -> List[OutboxEvent]:
        if self._dropped:
            raise FeedError("change feed disconnected")
        if not self._connected:
            raise FeedError("feed is not connected")
        try:
            events = [self._queue.get(timeout=timeout)]
        except queue.Empty:
            return []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return [event for event in events if event.status == EventStatus.PENDING]

    def disconnect(self) -> None:
        self._store._detach(self)
        self._dropped = True

    def close(self) -> None:
        self._store._detach(self)
        self._connected = False


class _MemoryUsers:
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    def create(self, username: str, email: str, preferences: Optional[Dict[str, bool]] = None) -> User:
        self._check_unique(username=username, email=email)
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            preferences=UserPreferences(**(preferences or {})),
            created_at=self._store._now(),
        )
        self._store._users[user.id] = user
        return user

    def update(self, user_id: str, changes: Dict[str, Any]) -> User:
        columns = flatten_changes(changes)
        user = self._store._users.get(user_id)
        if user is None:
            raise ConflictError(f"user {user_id} not found")
        self._check_unique(exclude=user_id, username=columns.get("username"), email=columns.get("email"))

        prefs = {k: columns.pop(k) for k in list(columns) if k in ("email_notifications", "push_notifications")}
        updated = replace(user, preferences=replace(user.preferences, **prefs), **columns)
        self._store._users[user_id] = updated
        return updated

    def delete(self, user_id: str) -> User:
        user = self._store._users.pop(user_id, None)
        if user is None:
            raise ConflictError(f"user {user_id} not found")
        return user

    def find_by_id(self, user_id: str) -> Optional[User]:
        return self._store._users.get(user_id)

    def _check_unique(self, exclude: Optional[str] = None, **values: Optional[str]) -> None:
        for other in self._store._users.values():
            if other.id == exclude:
                continue
            for name, value in values.items():
                if value is not None and getattr(other, name) == value:
                    raise ConflictError(f"duplicate {name}: {value}")


class _MemoryOutboxAppender:
    def __init__(self, store: "InMemoryStore"):
        self._store = store
        self.added: List[OutboxEvent] = []

    def add(self, draft: EventDraft) -> OutboxEvent:
        now = self._store._now()
        event = OutboxEvent(
            id=str(uuid.uuid4()),
            event_type=draft.event_type,
            aggregate_type=draft.aggregate_type,
            aggregate_id=str(draft.aggregate_id),
            payload=dict(draft.payload),
            status=EventStatus.PENDING,
            created_at=now,
            available_at=now,
        )
        self._store._events[event.id] = event
        self.added.append(event)
        return replace(event)


class _MemoryUnitOfWork:
    def __init__(self, store: "InMemoryStore"):
        self.users = _MemoryUsers(store)
        self.outbox = _MemoryOutboxAppender(store)


class InMemoryOutboxStore:
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    def get(self, event_id: str) -> Optional[OutboxEvent]:
        with self._store.lock:
            event = self._store._events.get(event_id)
            return replace(event) if event else None

    def update_if(
        self,
        event_id: str,
        expected: EventStatus,
        new: EventStatus,
        *,
        error_message: Optional[str] = None,
        available_at: Optional[datetime] = None,
    ) -> int:
        check_event_transition(expected, new)
        with self._store.lock:
            event = self._store._events.get(event_id)
            if event is None or event.status != expected:
                return 0
            now = self._store._now()
            changes: Dict[str, Any] = {"status": EventStatus(new)}
            if new == EventStatus.PROCESSING:
                changes.update(claimed_at=now, attempts=event.attempts + 1)
            if new in TERMINAL_EVENT_STATUSES:
                changes["processed_at"] = now
            if error_message is not None:
                changes["error_message"] = error_message[:1000]
            if available_at is not None:
                changes["available_at"] = available_at
            self._store._events[event_id] = replace(event, **changes)
            return 1

    def fetch_pending(self, limit: int, grace_seconds: float = 0.0) -> List[OutboxEvent]:
        with self._store.lock:
            ready = self._ready(grace_seconds)
            return [replace(event) for event in ready[:limit]]

    def has_pending(self, grace_seconds: float = 0.0) -> bool:
        with self._store.lock:
            return bool(self._ready(grace_seconds))

    def expire_stale(self, older_than_seconds: float) -> List[str]:
        with self._store.lock:
            now = self._store._now()
            cutoff = now - timedelta(seconds=older_than_seconds)
            expired = []
            for event in list(self._store._events.values()):
                if event.status == EventStatus.PROCESSING and event.claimed_at and event.claimed_at < cutoff:
                    self._store._events[event.id] = replace(
                        event, status=EventStatus.FAILED, processed_at=now, error_message="claim expired"
                    )
                    expired.append(event.id)
            return expired

    def recent(self, limit: int = 20) -> List[OutboxEvent]:
        with self._store.lock:
            events = sorted(self._store._events.values(), key=lambda e: e.created_at, reverse=True)
            return [replace(event) for event in events[:limit]]

    def _ready(self, grace_seconds: float) -> List[OutboxEvent]:
        now = self._store._now()
        cutoff = now - timedelta(seconds=grace_seconds)
        ready = [
            event
            for event in self._store._events.values()
            if event.status == EventStatus.PENDING
            and (event.available_at is None or event.available_at <= now)
            and event.created_at <= cutoff
        ]
        return sorted(ready, key=lambda e: e.created_at)


class InMemoryNotificationStore:
    def __init__(self, store: "InMemoryStore"):
        self._store = store

    def create(
        self, user_id: str, outbox_event_id: str, channel: Channel, content: NotificationContent
    ) -> Notification:
        with self._store.lock:
            if any(n.outbox_event_id == outbox_event_id for n in self._store._notifications.values()):
                raise ConflictError(f"event {outbox_event_id} already has a notification")
            notification = Notification(
                id=str(uuid.uuid4()),
                user_id=str(user_id),
                outbox_event_id=outbox_event_id,
                type=Channel(channel),
                content=content,
                status=NotificationStatus.QUEUED,
                created_at=self._store._now(),
            )
            self._store._notifications[notification.id] = notification
            return replace(notification)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self._store.lock:
            notification = self._store._notifications.get(notification_id)
            return replace(notification) if notification else None

    def update_if(
        self,
        notification_id: str,
        expected: NotificationStatus,
        new: NotificationStatus,
        *,
        error_message: Optional[str] = None,
    ) -> int:
        check_notification_transition(expected, new)
        with self._store.lock:
            notification = self._store._notifications.get(notification_id)
            if notification is None or notification.status != expected:
                return 0
            changes: Dict[str, Any] = {"status": NotificationStatus(new)}
            if new == NotificationStatus.SENT:
                changes["sent_at"] = self._store._now()
            if new == NotificationStatus.DELIVERED:
                changes["delivered_at"] = self._store._now()
            if error_message is not None:
                changes["error_message"] = error_message[:1000]
            self._store._notifications[notification_id] = replace(notification, **changes)
            return 1

    def record_attempt(self, notification_id: str, error_message: Optional[str] = None) -> int:
        with self._store.lock:
            notification = self._store._notifications.get(notification_id)
            if notification is None:
                return 0
            attempts = notification.attempts + 1
            self._store._notifications[notification_id] = replace(
                notification, attempts=attempts, error_message=error_message[:1000] if error_message else None
            )
            return attempts

    def fetch_queued(self, limit: int, older_than_seconds: float = 0.0) -> List[Notification]:
        with self._store.lock:
            cutoff = self._store._now() - timedelta(seconds=older_than_seconds)
            queued = [
                n
                for n in self._store._notifications.values()
                if n.status == NotificationStatus.QUEUED and n.created_at <= cutoff
            ]
            queued.sort(key=lambda n: n.created_at)
            return [replace(n) for n in queued[:limit]]

    def for_event(self, outbox_event_id: str) -> List[Notification]:
        with self._store.lock:
            return [replace(n) for n in self._store._notifications.values() if n.outbox_event_id == outbox_event_id]

    def recent(self, limit: int = 20) -> List[Notification]:
        with self._store.lock:
            items = sorted(self._store._notifications.values(), key=lambda n: n.created_at, reverse=True)
            return [replace(n) for n in items[:limit]]


class InMemoryStore:
    """Local backend for development and tests; one lock serializes every mutation."""

    def __init__(self, clock=utcnow):
        self.lock = threading.RLock()
        self.feed_available = True
        self._clock = clock
        self._users: Dict[str, User] = {}
        self._events: Dict[str, OutboxEvent] = {}
        self._notifications: Dict[str, Notification] = {}
        self._feeds: List[InMemoryFeed] = []
        self._last_ts: Optional[datetime] = None
        self.outbox = InMemoryOutboxStore(self)
        self.notifications = InMemoryNotificationStore(self)

    @contextmanager
    def unit_of_work(self) -> Iterator[_MemoryUnitOfWork]:
        with self.lock:
            users, events = dict(self._users), dict(self._events)
            uow = _MemoryUnitOfWork(self)
            try:
                yield uow
            except BaseException:
                self._users, self._events = users, events
                raise
            for feed in list(self._feeds):
                for event in uow.outbox.added:
                    feed.push(replace(event))

    def find_user(self, user_id: str) -> Optional[User]:
        with self.lock:
            return self._users.get(user_id)

    def list_users(self) -> List[User]:
        with self.lock:
            return sorted(self._users.values(), key=lambda u: u.created_at)

    def subscribe(self) -> InMemoryFeed:
        return InMemoryFeed(self)

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self.lock:
            for feed in list(self._feeds):
                feed.close()

    def _attach(self, feed: InMemoryFeed) -> None:
        with self.lock:
            if feed not in self._feeds:
                self._feeds.append(feed)

    def _detach(self, feed: InMemoryFeed) -> None:
        with self.lock:
            if feed in self._feeds:
                self._feeds.remove(feed)

    def _now(self) -> datetime:
        # Strictly increasing so created_at ordering matches insertion order.
        now = self._clock()
        if self._last_ts is not None and now <= self._last_ts:
            now = self._last_ts + timedelta(microseconds=1)
        self._last_ts = now
        return now

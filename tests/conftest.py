import threading
import time
from typing import Callable, List, Optional, Tuple

import pytest

from outbox_pipeline.adapters.memory.store import InMemoryStore
from outbox_pipeline.config.settings import Settings
from outbox_pipeline.domain.models.notifications import Channel, NotificationContent
from outbox_pipeline.pipelines.user_pipeline import UserPipeline
from outbox_pipeline.services.user_service import UserService
from outbox_pipeline.workers.dispatcher import EventDispatcher
from outbox_pipeline.workers.retry import RetryPolicy
from outbox_pipeline.workers.sender import NotificationSender


class RecordingSink:
    """Delivery sink that records calls and can be told to fail."""

    def __init__(self, fail_with: Optional[Exception] = None, accept: bool = True):
        self.fail_with = fail_with
        self.accept = accept
        self.calls: List[Tuple[Channel, str, NotificationContent]] = []
        self._lock = threading.Lock()

    def deliver(self, channel, recipient, content) -> bool:
        with self._lock:
            self.calls.append((channel, recipient, content))
        if self.fail_with is not None:
            raise self.fail_with
        return self.accept


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def settings():
    return Settings(
        store_backend="memory",
        scan_interval_seconds=0.05,
        feed_poll_timeout_seconds=0.05,
        feed_reconnect_initial_seconds=0.05,
        feed_reconnect_max_seconds=0.2,
        delivery_delay_seconds=0,
        shutdown_timeout_seconds=5,
    )


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def users(store):
    return UserService(store)


@pytest.fixture
def sender(store, sink):
    return NotificationSender(store, sink)


@pytest.fixture
def dispatcher(settings, store, sender):
    dispatcher = EventDispatcher(store, sender=sender, retry_policy=RetryPolicy(max_attempts=1))
    dispatcher.register_routes(UserPipeline(settings, store).routes())
    return dispatcher

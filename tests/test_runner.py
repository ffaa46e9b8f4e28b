import pytest

from outbox_pipeline.adapters.delivery.sink import LoggingSink
from outbox_pipeline.adapters.memory.store import InMemoryStore
from outbox_pipeline.domain.errors import StoreError
from outbox_pipeline.domain.models.events import EventStatus
from outbox_pipeline.domain.models.notifications import Channel, NotificationContent, NotificationStatus
from outbox_pipeline.workers.runner import Pipeline, build_store

from conftest import wait_for


def _notification_status(store, event_id):
    notifications = store.notifications.for_event(event_id)
    return notifications[0].status if notifications else None


def test_welcome_flow_end_to_end(settings, store, sink):
    pipeline = Pipeline(settings, store, sink)
    pipeline.start()
    try:
        assert wait_for(lambda: pipeline.status()["listener"])
        _, event = pipeline.users.create_user({"username": "alice", "email": "a@x.com"})

        assert wait_for(lambda: _notification_status(store, event.id) == NotificationStatus.SENT)
        assert store.outbox.get(event.id).status == EventStatus.PROCESSED
        assert pipeline.status() == {"store": True, "listener": True, "scanner": True}
    finally:
        pipeline.stop()

    assert pipeline.status() == {"store": True, "listener": False, "scanner": False}
    [notification] = store.notifications.recent()
    assert notification.content.subject == "Welcome to our platform!"


def test_scanner_alone_processes_everything_with_feed_disabled(settings, store, sink):
    settings = settings.model_copy(update={"feed_enabled": False})
    pipeline = Pipeline(settings, store, sink)
    assert pipeline.listener is None

    pipeline.start()
    try:
        user, created = pipeline.users.create_user({"username": "alice", "email": "a@x.com"})
        assert wait_for(lambda: store.outbox.get(created.id).status == EventStatus.PROCESSED)
        _, updated = pipeline.users.update_user(user.id, {"email": "alice@x.com"})
        assert wait_for(lambda: store.outbox.get(updated.id).status == EventStatus.PROCESSED)
        _, deleted = pipeline.users.delete_user(user.id)
        assert wait_for(lambda: store.outbox.get(deleted.id).status == EventStatus.PROCESSED)
    finally:
        pipeline.stop()

    subjects = sorted(n.content.subject for n in store.notifications.recent())
    assert subjects == ["Account Deletion Confirmation", "Welcome to our platform!", "Your account was updated"]
    assert pipeline.status()["listener"] is False


def test_events_written_while_offline_are_picked_up_on_start(settings, store, sink):
    pipeline = Pipeline(settings, store, sink)
    _, event = pipeline.users.create_user({"username": "alice", "email": "a@x.com"})

    pipeline.start()
    try:
        assert wait_for(lambda: store.outbox.get(event.id).status == EventStatus.PROCESSED)
    finally:
        pipeline.stop()

    assert len(store.notifications.for_event(event.id)) == 1


def test_build_store_selects_backend(settings):
    assert isinstance(build_store(settings), InMemoryStore)

    with pytest.raises(StoreError):
        build_store(settings.model_copy(update={"store_backend": "postgres", "database_url": None}))


def test_logging_sink_reports_success_without_delay():
    sink = LoggingSink(delay_seconds=0)
    content = NotificationContent(subject="Welcome!", body="hi", data={})
    assert sink.deliver(Channel.EMAIL, "a@x.com", content) is True

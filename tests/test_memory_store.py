import threading

import pytest

from outbox_pipeline.domain.errors import ConflictError
from outbox_pipeline.domain.models.events import EventDraft, EventStatus, check_event_transition
from outbox_pipeline.domain.models.notifications import (
    Channel,
    NotificationContent,
    NotificationStatus,
    check_notification_transition,
)
from outbox_pipeline.domain.models.users import flatten_changes


def _add(store, aggregate_id="u-1"):
    with store.unit_of_work() as uow:
        return uow.outbox.add(EventDraft("user.created", "user", aggregate_id, {"user_id": aggregate_id}))


def test_claim_succeeds_exactly_once_under_contention(store):
    event = _add(store)
    barrier = threading.Barrier(10)
    results = []
    lock = threading.Lock()

    def claim():
        barrier.wait()
        changed = store.outbox.update_if(event.id, EventStatus.PENDING, EventStatus.PROCESSING)
        with lock:
            results.append(changed)

    threads = [threading.Thread(target=claim) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [0] * 9 + [1]
    assert store.outbox.get(event.id).attempts == 1


def test_terminal_events_never_transition(store):
    event = _add(store)
    store.outbox.update_if(event.id, EventStatus.PENDING, EventStatus.PROCESSING)
    store.outbox.update_if(event.id, EventStatus.PROCESSING, EventStatus.PROCESSED)

    for target in EventStatus:
        with pytest.raises(ValueError):
            store.outbox.update_if(event.id, EventStatus.PROCESSED, target)
    with pytest.raises(ValueError):
        store.outbox.update_if(event.id, EventStatus.PENDING, EventStatus.PROCESSED)
    assert store.outbox.get(event.id).status == EventStatus.PROCESSED


def test_pending_queries_are_oldest_first_with_limit(store):
    events = [_add(store, f"u-{i}") for i in range(5)]

    assert [e.id for e in store.outbox.fetch_pending(3)] == [e.id for e in events[:3]]
    assert [e.id for e in store.outbox.recent(2)] == [events[4].id, events[3].id]


def test_rolled_back_unit_of_work_is_invisible_to_the_feed(store):
    feed = store.subscribe()
    feed.connect()

    with pytest.raises(RuntimeError):
        with store.unit_of_work() as uow:
            uow.users.create("alice", "a@x.com")
            uow.outbox.add(EventDraft("user.created", "user", "x", {}))
            raise RuntimeError("abort")
    committed = _add(store)

    assert [e.id for e in feed.poll(0.1)] == [committed.id]
    assert store.list_users() == []
    feed.close()


def test_one_notification_per_event(store):
    event = _add(store)
    content = NotificationContent("Subject", "Body")
    store.notifications.create("u-1", event.id, Channel.EMAIL, content)

    with pytest.raises(ConflictError):
        store.notifications.create("u-1", event.id, Channel.EMAIL, content)


def test_duplicate_email_on_update_is_a_conflict(store):
    with store.unit_of_work() as uow:
        uow.users.create("alice", "a@x.com")
        bob = uow.users.create("bob", "b@x.com")

    with pytest.raises(ConflictError):
        with store.unit_of_work() as uow:
            uow.users.update(bob.id, {"email": "a@x.com"})
    assert store.find_user(bob.id).email == "b@x.com"


def test_transition_tables_reject_backwards_moves(store):
    event = _add(store)
    with pytest.raises(ValueError):
        store.outbox.update_if(event.id, EventStatus.PROCESSED, EventStatus.PENDING)
    with pytest.raises(ValueError):
        check_notification_transition(NotificationStatus.SENT, NotificationStatus.QUEUED)
    check_event_transition(EventStatus.PROCESSING, EventStatus.PENDING)


def test_flatten_changes_accepts_nested_preferences():
    flat = flatten_changes({"email": "b@x.com", "preferences": {"email_notifications": 0}})
    assert flat == {"email": "b@x.com", "email_notifications": False}

    with pytest.raises(ValueError):
        flatten_changes({"password": "secret"})
    with pytest.raises(ValueError):
        flatten_changes({"preferences": {"sms": True}})

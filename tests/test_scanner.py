import threading
from datetime import datetime, timedelta, timezone

from outbox_pipeline.adapters.memory.store import InMemoryStore
from outbox_pipeline.domain.errors import StoreError
from outbox_pipeline.domain.models.events import EventDraft, EventStatus
from outbox_pipeline.domain.models.notifications import Channel, NotificationContent, NotificationStatus
from outbox_pipeline.workers.scanner import ReconciliationScanner

from conftest import wait_for


class RecordingDispatcher:
    def __init__(self, on_handle=None):
        self.handled = []
        self.on_handle = on_handle

    def handle(self, event):
        self.handled.append(event.id)
        if self.on_handle is not None:
            self.on_handle(event)


def _append(store, n=1):
    events = []
    for i in range(n):
        with store.unit_of_work() as uow:
            events.append(uow.outbox.add(EventDraft("user.created", "user", f"u-{i}", {"user_id": f"u-{i}"})))
    return events


def test_scan_processes_events_the_listener_never_saw(users, store, dispatcher):
    created = [users.create_user({"username": f"user{i}", "email": f"{i}@x.com"})[1] for i in range(3)]
    scanner = ReconciliationScanner(store, dispatcher)

    result = scanner.run_once()

    assert result.fetched == 3
    assert result.errors == 0
    assert all(store.outbox.get(e.id).status == EventStatus.PROCESSED for e in created)
    assert store.outbox.has_pending() is False


def test_scan_dispatches_oldest_first(store):
    events = _append(store, 3)
    recorder = RecordingDispatcher()

    result = ReconciliationScanner(store, recorder).run_once()

    assert recorder.handled == [e.id for e in events]
    assert result.more_pending is True


def test_batch_limit_and_catch_up(users, store, dispatcher):
    for i in range(3):
        users.create_user({"username": f"user{i}", "email": f"{i}@x.com"})
    scanner = ReconciliationScanner(store, dispatcher, batch_size=2)

    first = scanner.run_once()
    second = scanner.run_once()
    third = scanner.run_once()

    assert (first.fetched, first.more_pending) == (2, True)
    assert (second.fetched, second.more_pending) == (1, True)
    assert (third.fetched, third.more_pending) == (0, False)


def test_overlapping_scan_is_a_no_op(store):
    _append(store, 1)
    nested = []
    scanner = None

    def scan_from_other_thread(_event):
        thread = threading.Thread(target=lambda: nested.append(scanner.run_once()))
        thread.start()
        thread.join()

    recorder = RecordingDispatcher(on_handle=scan_from_other_thread)
    scanner = ReconciliationScanner(store, recorder)

    assert scanner.run_once() is not None
    assert nested == [None]
    assert len(recorder.handled) == 1


def test_grace_period_leaves_fresh_events_alone(store):
    _append(store, 2)
    recorder = RecordingDispatcher()

    result = ReconciliationScanner(store, recorder, grace_seconds=60).run_once()

    assert result.fetched == 0
    assert result.more_pending is False
    assert recorder.handled == []


def test_dispatch_errors_are_counted_and_scan_continues(store):
    events = _append(store, 2)

    def explode(event):
        if event.id == events[0].id:
            raise StoreError("connection reset")

    recorder = RecordingDispatcher(on_handle=explode)

    result = ReconciliationScanner(store, recorder).run_once()

    assert result.errors == 1
    assert recorder.handled == [e.id for e in events]


def test_stale_claims_are_expired_to_failed():
    now = [datetime(2024, 1, 1, tzinfo=timezone.utc)]
    store = InMemoryStore(clock=lambda: now[0])
    [event] = _append(store, 1)
    assert store.outbox.update_if(event.id, EventStatus.PENDING, EventStatus.PROCESSING) == 1

    now[0] += timedelta(seconds=120)
    result = ReconciliationScanner(store, RecordingDispatcher(), stale_processing_seconds=60).run_once()

    stale = store.outbox.get(event.id)
    assert result.expired == 1
    assert stale.status == EventStatus.FAILED
    assert stale.error_message == "claim expired"
    assert stale.processed_at is not None


def test_scan_retries_queued_notifications(store, sender, sink):
    [event] = _append(store, 1)
    notification = store.notifications.create("u-0", event.id, Channel.EMAIL, NotificationContent("Hi", "Body"))
    scanner = ReconciliationScanner(store, RecordingDispatcher(), sender=sender, interval_seconds=0)

    result = scanner.run_once()

    assert result.notifications_sent == 1
    assert store.notifications.get(notification.id).status == NotificationStatus.SENT
    assert len(sink.calls) == 1


def test_background_loop_processes_until_stopped(users, store, dispatcher):
    scanner = ReconciliationScanner(store, dispatcher, interval_seconds=0.05)
    scanner.start()
    try:
        assert scanner.is_running
        _, event = users.create_user({"username": "alice", "email": "a@x.com"})
        assert wait_for(lambda: store.outbox.get(event.id).status == EventStatus.PROCESSED)
    finally:
        scanner.stop(timeout=5)

    assert not scanner.is_running


def test_real_dispatcher_and_scanner_share_claims(users, store, dispatcher):
    _, event = users.create_user({"username": "alice", "email": "a@x.com"})
    dispatcher.handle(event)

    result = ReconciliationScanner(store, dispatcher).run_once()

    assert result.fetched == 0
    assert len(store.notifications.for_event(event.id)) == 1

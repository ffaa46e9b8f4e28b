import pytest

from outbox_pipeline.domain.errors import ConflictError
from outbox_pipeline.domain.models.events import EventDraft, EventStatus
from outbox_pipeline.services.writer import TransactionalWriter


def test_create_user_writes_user_and_one_pending_event(users, store):
    user, event = users.create_user({"username": "alice", "email": "a@x.com"})

    assert store.find_user(user.id) == user
    events = store.outbox.recent()
    assert [e.id for e in events] == [event.id]
    assert event.event_type == "user.created"
    assert event.aggregate_type == "user"
    assert event.aggregate_id == user.id
    assert event.status == EventStatus.PENDING
    assert event.payload == {"user_id": user.id, "username": "alice", "email": "a@x.com"}
    assert event.processed_at is None


def test_duplicate_username_rolls_back_everything(users, store):
    users.create_user({"username": "alice", "email": "a@x.com"})

    with pytest.raises(ConflictError):
        users.create_user({"username": "alice", "email": "other@x.com"})

    assert len(store.list_users()) == 1
    assert len(store.outbox.recent()) == 1


def test_update_and_delete_of_missing_user_raise_conflict(users, store):
    with pytest.raises(ConflictError):
        users.update_user("missing", {"email": "b@x.com"})
    with pytest.raises(ConflictError):
        users.delete_user("missing")

    assert store.outbox.recent() == []


def test_update_records_changed_fields(users, store):
    user, _ = users.create_user({"username": "alice", "email": "a@x.com"})

    updated, event = users.update_user(user.id, {"email": "new@x.com", "preferences": {"push_notifications": True}})

    assert updated.email == "new@x.com"
    assert updated.preferences.push_notifications is True
    assert updated.preferences.email_notifications is True
    assert event.event_type == "user.updated"
    assert event.payload["updated_fields"] == ["email", "preferences"]


def test_delete_emits_event_with_last_known_identity(users, store):
    user, _ = users.create_user({"username": "alice", "email": "a@x.com"})

    deleted, event = users.delete_user(user.id)

    assert deleted.id == user.id
    assert store.find_user(user.id) is None
    assert event.event_type == "user.deleted"
    assert event.payload["username"] == "alice"


def test_failing_event_builder_undoes_the_mutation(store):
    writer = TransactionalWriter(store)

    def broken_builder(user):
        raise RuntimeError("cannot build event")

    with pytest.raises(RuntimeError):
        writer.write(lambda repo: repo.create("bob", "b@x.com"), broken_builder)

    assert store.list_users() == []
    assert store.outbox.recent() == []


def test_writer_returns_aggregate_and_event(store):
    writer = TransactionalWriter(store)

    user, event = writer.write(
        lambda repo: repo.create("carol", "c@x.com", {"email_notifications": False}),
        lambda u: EventDraft("user.created", "user", u.id, {"user_id": u.id}),
    )

    assert user.preferences.email_notifications is False
    assert store.outbox.get(event.id).status == EventStatus.PENDING


def test_unknown_update_field_is_rejected(users):
    user, _ = users.create_user({"username": "alice", "email": "a@x.com"})

    with pytest.raises(ValueError):
        users.update_user(user.id, {"password": "x"})

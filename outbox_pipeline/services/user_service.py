from typing import Any, Dict, List, Optional, Tuple

from outbox_pipeline.domain.models.events import EventDraft, OutboxEvent
from outbox_pipeline.domain.models.users import User
from outbox_pipeline.domain.ports import Store
from outbox_pipeline.services.writer import TransactionalWriter

AGGREGATE_TYPE = "user"
USER_CREATED = "user.created"
USER_UPDATED = "user.updated"
USER_DELETED = "user.deleted"


class UserService:
    """User mutations published through the transactional outbox."""

    def __init__(self, store: Store, writer: Optional[TransactionalWriter] = None):
        self.store = store
        self.writer = writer or TransactionalWriter(store)

    def create_user(self, data: Dict[str, Any]) -> Tuple[User, OutboxEvent]:
        def mutation(users):
            return users.create(data["username"], data["email"], data.get("preferences"))

        def event(user: User) -> EventDraft:
            return EventDraft(
                event_type=USER_CREATED,
                aggregate_type=AGGREGATE_TYPE,
                aggregate_id=user.id,
                payload={"user_id": user.id, "username": user.username, "email": user.email},
            )

        return self.writer.write(mutation, event)

    def update_user(self, user_id: str, changes: Dict[str, Any]) -> Tuple[User, OutboxEvent]:
        def event(user: User) -> EventDraft:
            return EventDraft(
                event_type=USER_UPDATED,
                aggregate_type=AGGREGATE_TYPE,
                aggregate_id=user.id,
                payload={"user_id": user.id, "username": user.username, "updated_fields": sorted(changes)},
            )

        return self.writer.write(lambda users: users.update(user_id, changes), event)

    def delete_user(self, user_id: str) -> Tuple[User, OutboxEvent]:
        def event(user: User) -> EventDraft:
            return EventDraft(
                event_type=USER_DELETED,
                aggregate_type=AGGREGATE_TYPE,
                aggregate_id=user.id,
                payload={"user_id": user.id, "username": user.username, "email": user.email},
            )

        return self.writer.write(lambda users: users.delete(user_id), event)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.store.find_user(user_id)

    def list_users(self) -> List[User]:
        return self.store.list_users()

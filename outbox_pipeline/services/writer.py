from typing import Callable, Tuple, TypeVar

from outbox_pipeline.domain.models.events import EventDraft, OutboxEvent
from outbox_pipeline.domain.ports import Store, UserRepository
from outbox_pipeline.utils.logging import configure_logging

A = TypeVar("A")


class TransactionalWriter:
    """Apply an aggregate mutation and append its outbox event in one transaction."""

    def __init__(self, store: Store):
        self.store = store
        self.log = configure_logging("transactional_writer")

    def write(
        self,
        mutation: Callable[[UserRepository], A],
        event_builder: Callable[[A], EventDraft],
    ) -> Tuple[A, OutboxEvent]:
        """Run ``mutation`` then persist ``event_builder(aggregate)``; both commit or neither does.

        ConflictError and StoreError propagate to the caller after the rollback.
        """
        with self.store.unit_of_work() as uow:
            aggregate = mutation(uow.users)
            event = uow.outbox.add(event_builder(aggregate))

        self.log.info(
            "Wrote aggregate with outbox event",
            extra={"event_id": event.id, "event_type": event.event_type, "aggregate_id": event.aggregate_id},
        )
        return aggregate, event

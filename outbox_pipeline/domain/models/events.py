from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class EventStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


TERMINAL_EVENT_STATUSES: FrozenSet[EventStatus] = frozenset({EventStatus.PROCESSED, EventStatus.FAILED})

# processing -> pending is only taken when a retry policy releases a claim.
EVENT_TRANSITIONS = {
    EventStatus.PENDING: frozenset({EventStatus.PROCESSING}),
    EventStatus.PROCESSING: frozenset({EventStatus.PROCESSED, EventStatus.FAILED, EventStatus.PENDING}),
    EventStatus.PROCESSED: frozenset(),
    EventStatus.FAILED: frozenset(),
}


def check_event_transition(current: EventStatus, new: EventStatus) -> None:
    if new not in EVENT_TRANSITIONS[EventStatus(current)]:
        raise ValueError(f"illegal outbox transition {EventStatus(current).value} -> {EventStatus(new).value}")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EventDraft:
    """What a writer asks the outbox to persist; the store assigns id and timestamps."""

    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class OutboxEvent:
    id: str
    event_type: str
    aggregate_type: str
    aggregate_id: str
    payload: Optional[Any]
    status: EventStatus
    created_at: datetime
    processed_at: Optional[datetime] = None
    attempts: int = 0
    available_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    error_message: Optional[str] = None

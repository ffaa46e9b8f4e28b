from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class NotificationStatus(str, Enum):
    QUEUED = "queued"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"


class Channel(str, Enum):
    EMAIL = "email"
    PUSH = "push"
    SMS = "sms"
    IN_APP = "in-app"


NOTIFICATION_TRANSITIONS = {
    NotificationStatus.QUEUED: frozenset({NotificationStatus.SENT, NotificationStatus.FAILED}),
    NotificationStatus.SENT: frozenset({NotificationStatus.DELIVERED}),
    NotificationStatus.DELIVERED: frozenset(),
    NotificationStatus.FAILED: frozenset(),
}


def check_notification_transition(current: NotificationStatus, new: NotificationStatus) -> None:
    if new not in NOTIFICATION_TRANSITIONS[NotificationStatus(current)]:
        raise ValueError(
            f"illegal notification transition {NotificationStatus(current).value} -> {NotificationStatus(new).value}"
        )


@dataclass(frozen=True)
class NotificationContent:
    subject: str
    body: str
    data: Optional[Dict[str, Any]] = None


@dataclass
class Notification:
    """A message generated by an outbox event, tracked until the sink has it."""

    id: str
    user_id: str
    outbox_event_id: str
    type: Channel
    content: NotificationContent
    status: NotificationStatus
    created_at: datetime
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    attempts: int = 0
    error_message: Optional[str] = None

from typing import Dict, List, Optional

from psycopg2.extras import Json

from outbox_pipeline.adapters.postgres.db import execute, fetch_all, fetch_one
from outbox_pipeline.domain.models.notifications import (
    Channel,
    Notification,
    NotificationContent,
    NotificationStatus,
    check_notification_transition,
)

NOTIFICATION_COLUMNS = """
    id::text AS id, user_id, outbox_event_id::text AS outbox_event_id, channel,
    subject, body, data, status, created_at, sent_at, delivered_at, attempts, error_message
"""

STAMP_COLUMNS = {
    NotificationStatus.SENT: "sent_at",
    NotificationStatus.DELIVERED: "delivered_at",
}


def row_to_notification(row: Dict) -> Notification:
    data = dict(row)
    content = NotificationContent(subject=data.pop("subject"), body=data.pop("body"), data=data.pop("data"))
    return Notification(
        type=Channel(data.pop("channel")),
        status=NotificationStatus(data.pop("status")),
        content=content,
        **data,
    )


def insert_notification(
    conn, user_id: str, outbox_event_id: str, channel: Channel, content: NotificationContent
) -> Notification:
    sql = f"""
    INSERT INTO notifications (user_id, outbox_event_id, channel, subject, body, data)
    VALUES (%s, %s, %s, %s, %s, %s)
    RETURNING {NOTIFICATION_COLUMNS};
    """
    data = Json(content.data) if content.data is not None else None
    row = fetch_one(
        conn, sql, (str(user_id), outbox_event_id, Channel(channel).value, content.subject, content.body, data)
    )
    conn.commit()
    return row_to_notification(row)


def get_notification(conn, notification_id: str) -> Optional[Notification]:
    row = fetch_one(conn, f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE id = %s;", (notification_id,))
    return row_to_notification(row) if row else None


def update_status(
    conn,
    notification_id: str,
    expected: NotificationStatus,
    new: NotificationStatus,
    error_message: Optional[str] = None,
) -> int:
    check_notification_transition(expected, new)
    assignments = ["status = %s"]
    params: List = [NotificationStatus(new).value]
    stamp = STAMP_COLUMNS.get(NotificationStatus(new))
    if stamp:
        assignments.append(f"{stamp} = NOW()")
    if error_message is not None:
        assignments.append("error_message = %s")
        params.append(error_message[:1000])

    sql = f"""
    UPDATE notifications
    SET {", ".join(assignments)}
    WHERE id = %s AND status = %s;
    """
    params += [notification_id, NotificationStatus(expected).value]
    return execute(conn, sql, tuple(params))


def record_attempt(conn, notification_id: str, error_message: Optional[str] = None) -> int:
    sql = """
    UPDATE notifications
    SET attempts = attempts + 1,
        error_message = %s
    WHERE id = %s
    RETURNING attempts;
    """
    row = fetch_one(conn, sql, (error_message[:1000] if error_message else None, notification_id))
    conn.commit()
    return row["attempts"] if row else 0


def fetch_queued(conn, limit: int, older_than_seconds: float = 0.0) -> List[Notification]:
    sql = f"""
    SELECT {NOTIFICATION_COLUMNS}
    FROM notifications
    WHERE status = 'queued'
      AND created_at <= NOW() - (%s * INTERVAL '1 second')
    ORDER BY created_at
    LIMIT %s;
    """
    return [row_to_notification(row) for row in fetch_all(conn, sql, (older_than_seconds, limit))]


def for_event(conn, outbox_event_id: str) -> List[Notification]:
    sql = f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE outbox_event_id = %s ORDER BY created_at;"
    return [row_to_notification(row) for row in fetch_all(conn, sql, (outbox_event_id,))]


def recent_notifications(conn, limit: int = 20) -> List[Notification]:
    sql = f"SELECT {NOTIFICATION_COLUMNS} FROM notifications ORDER BY created_at DESC LIMIT %s;"
    return [row_to_notification(row) for row in fetch_all(conn, sql, (limit,))]

from datetime import datetime
from typing import Dict, List, Optional

from psycopg2.extras import Json

from outbox_pipeline.adapters.postgres.db import execute, fetch_all, fetch_one
from outbox_pipeline.domain.models.events import (
    TERMINAL_EVENT_STATUSES,
    EventDraft,
    EventStatus,
    OutboxEvent,
    check_event_transition,
)

EVENT_COLUMNS = """
    id::text AS id, event_type, aggregate_type, aggregate_id, payload, status,
    created_at, processed_at, attempts, available_at, claimed_at, error_message
"""


def row_to_event(row: Dict) -> OutboxEvent:
    data = dict(row)
    data["status"] = EventStatus(data["status"])
    return OutboxEvent(**data)


def insert_event(conn, draft: EventDraft) -> OutboxEvent:
    """Insert a pending event on ``conn`` without committing; the caller owns the transaction."""
    sql = f"""
    INSERT INTO outbox_events (event_type, aggregate_type, aggregate_id, payload)
    VALUES (%s, %s, %s, %s)
    RETURNING {EVENT_COLUMNS};
    """
    row = fetch_one(conn, sql, (draft.event_type, draft.aggregate_type, str(draft.aggregate_id), Json(draft.payload)))
    return row_to_event(row)


def get_event(conn, event_id: str) -> Optional[OutboxEvent]:
    row = fetch_one(conn, f"SELECT {EVENT_COLUMNS} FROM outbox_events WHERE id = %s;", (event_id,))
    return row_to_event(row) if row else None


def update_status(
    conn,
    event_id: str,
    expected: EventStatus,
    new: EventStatus,
    error_message: Optional[str] = None,
    available_at: Optional[datetime] = None,
) -> int:
    """Compare-and-set the status of one event; returns the affected row count."""
    check_event_transition(expected, new)
    assignments = ["status = %s"]
    params: List = [EventStatus(new).value]

    if new == EventStatus.PROCESSING:
        assignments += ["claimed_at = NOW()", "attempts = attempts + 1"]
    if new in TERMINAL_EVENT_STATUSES:
        assignments.append("processed_at = NOW()")
    if error_message is not None:
        assignments.append("error_message = %s")
        params.append(error_message[:1000])
    if available_at is not None:
        assignments.append("available_at = %s")
        params.append(available_at)

    sql = f"""
    UPDATE outbox_events
    SET {", ".join(assignments)}
    WHERE id = %s AND status = %s;
    """
    params += [event_id, EventStatus(expected).value]
    return execute(conn, sql, tuple(params))


def fetch_pending_events(conn, batch_size: int, grace_seconds: float = 0.0) -> List[OutboxEvent]:
    """Oldest ready pending events first; rows younger than the grace period are left to the listener."""
    sql = f"""
    SELECT {EVENT_COLUMNS}
    FROM outbox_events
    WHERE status = 'pending'
      AND available_at <= NOW()
      AND created_at <= NOW() - (%s * INTERVAL '1 second')
    ORDER BY created_at
    LIMIT %s;
    """
    return [row_to_event(row) for row in fetch_all(conn, sql, (grace_seconds, batch_size))]


def has_pending_events(conn, grace_seconds: float = 0.0) -> bool:
    sql = """
    SELECT EXISTS (
        SELECT 1 FROM outbox_events
        WHERE status = 'pending'
          AND available_at <= NOW()
          AND created_at <= NOW() - (%s * INTERVAL '1 second')
    ) AS pending;
    """
    return bool(fetch_one(conn, sql, (grace_seconds,))["pending"])


def expire_stale_claims(conn, older_than_seconds: float) -> List[str]:
    sql = """
    UPDATE outbox_events
    SET status = 'failed', processed_at = NOW(), error_message = 'claim expired'
    WHERE status = 'processing'
      AND claimed_at < NOW() - (%s * INTERVAL '1 second')
    RETURNING id::text AS id;
    """
    rows = fetch_all(conn, sql, (older_than_seconds,))
    conn.commit()
    return [row["id"] for row in rows]


def recent_events(conn, limit: int = 20) -> List[OutboxEvent]:
    sql = f"SELECT {EVENT_COLUMNS} FROM outbox_events ORDER BY created_at DESC LIMIT %s;"
    return [row_to_event(row) for row in fetch_all(conn, sql, (limit,))]

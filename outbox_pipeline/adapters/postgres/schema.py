from outbox_pipeline.adapters.postgres.db import PostgresPool, execute, translate_errors

FEED_CHANNEL = "outbox_events_pending"

SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS pgcrypto;

CREATE TABLE IF NOT EXISTS users (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    username text NOT NULL UNIQUE,
    email text NOT NULL UNIQUE,
    email_notifications boolean NOT NULL DEFAULT true,
    push_notifications boolean NOT NULL DEFAULT false,
    created_at timestamptz NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS outbox_events (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    event_type text NOT NULL,
    aggregate_type text NOT NULL,
    aggregate_id text NOT NULL,
    payload jsonb NOT NULL DEFAULT '{{}}'::jsonb,
    status text NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'processing', 'processed', 'failed')),
    attempts integer NOT NULL DEFAULT 0,
    error_message text,
    created_at timestamptz NOT NULL DEFAULT now(),
    available_at timestamptz NOT NULL DEFAULT now(),
    claimed_at timestamptz,
    processed_at timestamptz
);

CREATE INDEX IF NOT EXISTS outbox_events_status_created_idx
    ON outbox_events (status, created_at);

CREATE TABLE IF NOT EXISTS notifications (
    id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
    user_id text NOT NULL,
    outbox_event_id uuid NOT NULL REFERENCES outbox_events (id),
    channel text NOT NULL CHECK (channel IN ('email', 'push', 'sms', 'in-app')),
    subject text NOT NULL,
    body text NOT NULL,
    data jsonb,
    status text NOT NULL DEFAULT 'queued'
        CHECK (status IN ('queued', 'sent', 'delivered', 'failed')),
    attempts integer NOT NULL DEFAULT 0,
    error_message text,
    created_at timestamptz NOT NULL DEFAULT now(),
    sent_at timestamptz,
    delivered_at timestamptz
);

CREATE UNIQUE INDEX IF NOT EXISTS notifications_outbox_event_idx
    ON notifications (outbox_event_id);
CREATE INDEX IF NOT EXISTS notifications_status_created_idx
    ON notifications (status, created_at);

CREATE OR REPLACE FUNCTION notify_outbox_pending() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('{channel}', NEW.id::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS outbox_events_notify_pending ON outbox_events;
CREATE TRIGGER outbox_events_notify_pending
    AFTER INSERT ON outbox_events
    FOR EACH ROW
    WHEN (NEW.status = 'pending')
    EXECUTE FUNCTION notify_outbox_pending();
"""


def render_schema(channel: str = FEED_CHANNEL) -> str:
    if not channel.replace("_", "").isalnum():
        raise ValueError(f"invalid notify channel name: {channel!r}")
    return SCHEMA_SQL.format(channel=channel)


def apply_schema(pool: PostgresPool, channel: str = FEED_CHANNEL) -> None:
    """Create tables, indexes and the insert trigger that feeds LISTEN subscribers."""
    with pool.connection() as conn, translate_errors():
        execute(conn, render_schema(channel))

import contextlib
import select
from typing import List, Optional

import psycopg2
from psycopg2 import sql as pgsql
from psycopg2.extensions import ISOLATION_LEVEL_AUTOCOMMIT

from outbox_pipeline.domain.errors import FeedError, StoreError
from outbox_pipeline.domain.models.events import EventStatus, OutboxEvent
from outbox_pipeline.domain.ports import OutboxStore


class PgNotifyFeed:
    """LISTEN on the outbox insert channel and resolve notified ids to pending events."""

    def __init__(self, dsn: str, channel: str, outbox: OutboxStore):
        self.dsn = dsn
        self.channel = channel
        self.outbox = outbox
        self._conn: Optional[psycopg2.extensions.connection] = None

    def connect(self) -> None:
        try:
            conn = psycopg2.connect(self.dsn)
            conn.set_isolation_level(ISOLATION_LEVEL_AUTOCOMMIT)
            with conn.cursor() as cur:
                cur.execute(pgsql.SQL("LISTEN {};").format(pgsql.Identifier(self.channel)))
        except psycopg2.Error as exc:
            raise FeedError(f"cannot listen on {self.channel}: {exc}") from exc
        self._conn = conn

    def poll(self, timeout: float) -> List[OutboxEvent]:
        if self._conn is None or self._conn.closed:
            raise FeedError("feed is not connected")
        try:
            readable, _, _ = select.select([self._conn], [], [], timeout)
            if not readable:
                return []
            self._conn.poll()
        except (psycopg2.Error, OSError, ValueError) as exc:
            raise FeedError(f"feed connection lost: {exc}") from exc

        event_ids = []
        while self._conn.notifies:
            event_ids.append(self._conn.notifies.pop(0).payload)

        events = []
        for event_id in event_ids:
            try:
                event = self.outbox.get(event_id)
            except StoreError as exc:
                raise FeedError(f"cannot load notified event {event_id}: {exc}") from exc
            if event is not None and event.status == EventStatus.PENDING:
                events.append(event)
        return events

    def close(self) -> None:
        if self._conn is not None and not self._conn.closed:
            with contextlib.suppress(psycopg2.Error), self._conn.cursor() as cur:
                cur.execute(pgsql.SQL("UNLISTEN {};").format(pgsql.Identifier(self.channel)))
            self._conn.close()
        self._conn = None

import threading
from dataclasses import dataclass
from typing import Optional

from outbox_pipeline.domain.ports import Store
from outbox_pipeline.utils.logging import configure_logging
from outbox_pipeline.workers.dispatcher import EventDispatcher
from outbox_pipeline.workers.sender import NotificationSender


@dataclass(frozen=True)
class ScanResult:
    fetched: int
    errors: int
    expired: int
    notifications_sent: int
    more_pending: bool


class ReconciliationScanner:
    """Periodic sweep of pending outbox rows; the backstop for anything the listener missed."""

    def __init__(
        self,
        store: Store,
        dispatcher: EventDispatcher,
        sender: Optional[NotificationSender] = None,
        interval_seconds: float = 5.0,
        batch_size: int = 100,
        grace_seconds: float = 0.0,
        catch_up_delay_seconds: float = 0.0,
        stale_processing_seconds: Optional[float] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.sender = sender
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.grace_seconds = grace_seconds
        self.catch_up_delay_seconds = catch_up_delay_seconds
        self.stale_processing_seconds = stale_processing_seconds

        self._run_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.log = configure_logging("reconciliation_scanner")

    def run_once(self) -> Optional[ScanResult]:
        """One scan; returns None without doing anything if a scan is already running."""
        if not self._run_lock.acquire(blocking=False):
            self.log.debug("Scan already in progress; skipping")
            return None
        try:
            return self._scan()
        finally:
            self._run_lock.release()

    def _scan(self) -> ScanResult:
        expired = []
        if self.stale_processing_seconds:
            expired = self.store.outbox.expire_stale(self.stale_processing_seconds)
            if expired:
                self.log.warning("Expired stale claims", extra={"count": len(expired), "event_ids": ",".join(expired)})

        events = self.store.outbox.fetch_pending(self.batch_size, self.grace_seconds)
        errors = 0
        for event in events:
            if self._stop.is_set():
                break
            try:
                self.dispatcher.handle(event)
            except Exception:  # noqa: BLE001
                errors += 1
                self.log.exception("Failed dispatching pending event", extra={"event_id": event.id})

        sent = 0
        if self.sender is not None:
            sent = self.sender.drain_queued(self.batch_size, older_than_seconds=self.interval_seconds)

        more_pending = bool(events) or self.store.outbox.has_pending(self.grace_seconds)
        if events or expired or sent:
            self.log.info(
                "Reconciliation scan finished",
                extra={"fetched": len(events), "errors": errors, "expired": len(expired), "sent": sent},
            )
        return ScanResult(
            fetched=len(events),
            errors=errors,
            expired=len(expired),
            notifications_sent=sent,
            more_pending=more_pending,
        )

    def start(self) -> None:
        if self.is_running:
            self.log.warning("Reconciliation scanner already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name="reconciliation-scanner", daemon=True)
        self._thread.start()
        self.log.info(
            "Reconciliation scanner started",
            extra={"interval": self.interval_seconds, "batch_size": self.batch_size},
        )

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            delay = self.interval_seconds
            try:
                result = self.run_once()
            except Exception:  # noqa: BLE001
                self.log.exception("Reconciliation scan failed")
            else:
                if result is not None and result.more_pending and not result.errors:
                    delay = self.catch_up_delay_seconds
            self._stop.wait(delay)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        self.log.info("Reconciliation scanner stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

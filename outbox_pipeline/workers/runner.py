import signal
import threading
from typing import Dict, Optional

from outbox_pipeline.adapters.delivery.sink import LoggingSink
from outbox_pipeline.adapters.memory.store import InMemoryStore
from outbox_pipeline.adapters.postgres.db import PostgresPool
from outbox_pipeline.adapters.postgres.schema import apply_schema
from outbox_pipeline.adapters.postgres.store import PostgresStore
from outbox_pipeline.config.settings import Settings
from outbox_pipeline.domain.errors import PipelineError, StoreError
from outbox_pipeline.domain.ports import DeliverySink, Store
from outbox_pipeline.pipelines.user_pipeline import UserPipeline
from outbox_pipeline.services.user_service import UserService
from outbox_pipeline.utils.logging import configure_logging, set_level
from outbox_pipeline.workers.dispatcher import EventDispatcher
from outbox_pipeline.workers.listener import ChangeFeedListener
from outbox_pipeline.workers.retry import RetryPolicy
from outbox_pipeline.workers.scanner import ReconciliationScanner
from outbox_pipeline.workers.sender import NotificationSender


class Pipeline:
    """Wires the writer, the event handlers and both event producers around one store."""

    def __init__(self, settings: Settings, store: Store, sink: DeliverySink):
        self.settings = settings
        self.store = store
        self.log = configure_logging("outbox_pipeline")

        self.users = UserService(store)
        self.sender = NotificationSender(store, sink, max_attempts=settings.max_delivery_attempts)
        self.dispatcher = EventDispatcher(
            store,
            sender=self.sender,
            retry_policy=RetryPolicy(
                max_attempts=settings.max_attempts,
                backoff_seconds=settings.retry_backoff_seconds,
                multiplier=settings.retry_backoff_multiplier,
            ),
        )
        self.dispatcher.register_routes(UserPipeline(settings, store).routes())

        self.scanner = ReconciliationScanner(
            store,
            self.dispatcher,
            sender=self.sender,
            interval_seconds=settings.scan_interval_seconds,
            batch_size=settings.scan_batch_size,
            grace_seconds=settings.scan_grace_seconds,
            catch_up_delay_seconds=settings.catch_up_delay_seconds,
            stale_processing_seconds=settings.stale_processing_seconds,
        )
        self.listener: Optional[ChangeFeedListener] = None
        if settings.feed_enabled:
            self.listener = ChangeFeedListener(
                store.subscribe,
                self.dispatcher,
                workers=settings.dispatch_workers,
                poll_timeout=settings.feed_poll_timeout_seconds,
                reconnect_initial=settings.feed_reconnect_initial_seconds,
                reconnect_max=settings.feed_reconnect_max_seconds,
            )

    def start(self) -> None:
        if self.listener is not None:
            self.listener.start()
        self.scanner.start()
        self.log.info(
            "Outbox pipeline started",
            extra={"pipeline": self.settings.pipeline_name, "feed": self.listener is not None},
        )

    def stop(self) -> None:
        timeout = self.settings.shutdown_timeout_seconds
        if self.listener is not None:
            self.listener.stop(timeout)
        self.scanner.stop(timeout)
        self.log.info("Outbox pipeline stopped", extra={"pipeline": self.settings.pipeline_name})

    def status(self) -> Dict[str, bool]:
        try:
            store_ok = self.store.ping()
        except StoreError:
            store_ok = False
        return {
            "store": store_ok,
            "listener": self.listener is not None and self.listener.is_alive,
            "scanner": self.scanner.is_running,
        }


def build_store(settings: Settings) -> Store:
    if settings.store_backend == "memory":
        return InMemoryStore()
    if not settings.database_url:
        raise StoreError("DATABASE_URL is required for the postgres store")
    pool = PostgresPool(
        settings.database_url,
        settings.pool_min_connections,
        settings.pool_max_connections,
        timeout=settings.pool_timeout_seconds,
    )
    apply_schema(pool, settings.feed_channel)
    return PostgresStore(pool, settings.feed_channel)


def main():
    settings = Settings()
    set_level(settings.log_level)
    log = configure_logging("outbox_worker")
    log.info("Starting outbox worker", extra={"pipeline": settings.pipeline_name, "backend": settings.store_backend})

    try:
        store = build_store(settings)
        store.ping()
    except PipelineError:
        log.exception("Store unavailable at startup")
        raise SystemExit(1)

    pipeline = Pipeline(settings, store, LoggingSink(settings.delivery_delay_seconds))
    stopping = threading.Event()

    def request_stop(signum, _frame):
        log.info("Shutdown requested", extra={"signal": signal.Signals(signum).name})
        stopping.set()

    signal.signal(signal.SIGINT, request_stop)
    signal.signal(signal.SIGTERM, request_stop)

    try:
        pipeline.start()
        stopping.wait()
    finally:
        pipeline.stop()
        store.close()


if __name__ == "__main__":
    main()

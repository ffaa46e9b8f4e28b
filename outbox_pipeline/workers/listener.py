import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

from outbox_pipeline.domain.errors import FeedError
from outbox_pipeline.domain.models.events import OutboxEvent
from outbox_pipeline.domain.ports import ChangeFeed
from outbox_pipeline.utils.logging import configure_logging
from outbox_pipeline.workers.dispatcher import EventDispatcher


class ChangeFeedListener:
    """Push newly inserted pending events to the dispatcher as they arrive.

    Latency optimization only: a dropped feed is reopened with backoff and the
    reconciliation scanner covers whatever was missed in the gap.
    """

    def __init__(
        self,
        feed_factory: Callable[[], ChangeFeed],
        dispatcher: EventDispatcher,
        workers: int = 4,
        poll_timeout: float = 1.0,
        reconnect_initial: float = 1.0,
        reconnect_max: float = 30.0,
    ):
        self.feed_factory = feed_factory
        self.dispatcher = dispatcher
        self.workers = workers
        self.poll_timeout = poll_timeout
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max

        self._feed: Optional[ChangeFeed] = None
        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._alive = threading.Event()
        self.log = configure_logging("change_feed_listener")

    @property
    def is_alive(self) -> bool:
        """Whether the feed subscription is currently open; read by health checks."""
        return self._alive.is_set()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            self.log.warning("Change feed listener already running")
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="outbox-dispatch")
        self._thread = threading.Thread(target=self._run, name="change-feed-listener", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        backoff = self.reconnect_initial
        while not self._stop.is_set():
            try:
                if self._feed is None:
                    self._feed = self._open()
                    backoff = self.reconnect_initial
                for event in self._feed.poll(self.poll_timeout):
                    self._submit(event)
            except FeedError as exc:
                self.log.warning("Change feed lost; reconnecting", extra={"error": str(exc), "retry_in": backoff})
            except Exception:  # noqa: BLE001
                self.log.exception("Change feed listener error; reconnecting", extra={"retry_in": backoff})
            else:
                continue
            self._close_feed()
            self._stop.wait(backoff)
            backoff = min(backoff * 2, self.reconnect_max)
        self._close_feed()

    def _open(self) -> ChangeFeed:
        feed = self.feed_factory()
        feed.connect()
        self._alive.set()
        self.log.info("Subscribed to outbox change feed")
        return feed

    def _close_feed(self) -> None:
        self._alive.clear()
        if self._feed is not None:
            feed, self._feed = self._feed, None
            feed.close()

    def _submit(self, event: OutboxEvent) -> None:
        future = self._executor.submit(self.dispatcher.handle, event)
        future.add_done_callback(lambda done: self._report(event, done))

    def _report(self, event: OutboxEvent, future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            self.log.error(
                "Dispatch from change feed failed",
                exc_info=(type(exc), exc, exc.__traceback__),
                extra={"event_id": event.id},
            )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Unsubscribe, then wait for in-flight dispatches to settle."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        self._alive.clear()
        self.log.info("Change feed listener stopped")

class PipelineError(Exception):
    """Base class for every error raised by the outbox pipeline."""


class ConflictError(PipelineError):
    """Aggregate mutation violated a uniqueness or existence constraint."""


class StoreError(PipelineError):
    """The durable store is unavailable or rejected the operation."""


class ClaimLostError(PipelineError):
    """Another worker claimed the event first; callers treat this as a no-op."""

    def __init__(self, event_id: str):
        super().__init__(f"event {event_id} already claimed")
        self.event_id = event_id


class HandlerError(PipelineError):
    """Business logic failed while processing a claimed event."""


class DeliveryError(PipelineError):
    """The delivery sink did not accept a notification."""

    def __init__(self, notification_id: str, reason: str):
        super().__init__(f"delivery of notification {notification_id} failed: {reason}")
        self.notification_id = notification_id
        self.reason = reason


class FeedError(PipelineError):
    """The change feed subscription dropped or could not be opened."""

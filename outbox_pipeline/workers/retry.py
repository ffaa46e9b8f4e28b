from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from outbox_pipeline.domain.models.events import utcnow


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for failed event handlers; max_attempts=1 disables retries."""

    max_attempts: int = 1
    backoff_seconds: float = 5.0
    multiplier: float = 2.0

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts

    def delay(self, attempts: int) -> float:
        return self.backoff_seconds * (self.multiplier ** max(attempts - 1, 0))

    def next_attempt_at(self, attempts: int, now: Optional[datetime] = None) -> datetime:
        return (now or utcnow()) + timedelta(seconds=self.delay(attempts))

from __future__ import annotations

from dataclasses import dataclass

from newsletter_delivery.domain.models import DeliveryStatus


@dataclass(frozen=True)
class DeliveryPolicy:
    """Retry ceiling and exponential backoff curve for delivery tasks."""

    max_attempts: int = 5
    backoff_base_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 3600.0

    def backoff_seconds(self, attempt: int) -> float:
        """Delay before a task that just failed its `attempt`-th try becomes claimable again."""
        exponent = max(attempt, 1) - 1
        delay = self.backoff_base_seconds * (self.backoff_multiplier**exponent)
        return min(delay, self.backoff_max_seconds)


ALLOWED_TRANSITIONS: dict[DeliveryStatus, set[DeliveryStatus]] = {
    DeliveryStatus.PENDING: {DeliveryStatus.IN_PROGRESS},
    DeliveryStatus.IN_PROGRESS: {
        DeliveryStatus.SUCCEEDED,
        DeliveryStatus.PENDING,
        DeliveryStatus.FAILED_TERMINAL,
    },
    DeliveryStatus.SUCCEEDED: set(),
    DeliveryStatus.FAILED_TERMINAL: set(),
}


def is_allowed_transition(from_status: DeliveryStatus, to_status: DeliveryStatus) -> bool:
    return to_status in ALLOWED_TRANSITIONS.get(from_status, set())

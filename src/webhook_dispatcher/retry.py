"""Exponential backoff policy for failed delivery attempts."""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from webhook_dispatcher.domain.enums import DeliveryStatus


@dataclass
class RetryPolicy:
    base_seconds: float = 60.0
    cap_seconds: float = 3600.0
    jitter_ratio: float = 0.1
    rng: random.Random = field(default_factory=random.Random, repr=False)

    def backoff_seconds(self, attempt_number: int) -> float:
        # attempt_number is 1-based
        n = max(1, attempt_number)
        delay = min(self.base_seconds * 2 ** min(n - 1, 32), self.cap_seconds)
        if self.jitter_ratio > 0:
            delay += self.rng.uniform(0, delay * self.jitter_ratio)
        return delay

    def outcome_for_failure(
        self, attempt_number: int, max_attempts: int, now: datetime
    ) -> tuple[DeliveryStatus, datetime | None]:
        """Status and next attempt time after ``attempt_number`` failed attempts."""
        if attempt_number >= max_attempts:
            return DeliveryStatus.FAILED, None
        return DeliveryStatus.RETRYING, now + timedelta(seconds=self.backoff_seconds(attempt_number))

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            base_seconds=settings.webhook_backoff_base_seconds,
            cap_seconds=settings.webhook_backoff_cap_seconds,
            jitter_ratio=settings.webhook_backoff_jitter_ratio,
        )

"""
Delay calculations and retry timing.

This module contains functionality for:
- Scheduling a step relative to a base time
- The dispatcher's retry/backoff policy
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 300  # 5 minutes
DEFAULT_MAX_BACKOFF_SECONDS = 6 * 60 * 60


def calculate_scheduled_at(delay_hours: Optional[int], base_time: datetime) -> datetime:
    """A step runs delay_hours after the base time (sequence start or previous send)."""
    hours = delay_hours or 0
    if hours < 0:
        raise ValueError("delay_hours cannot be negative")
    return base_time + timedelta(hours=hours)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff for failed sends.

    max_retries counts retries, not attempts: with the default of 3 a step
    is attempted at most 4 times. The retry after attempt n waits
    backoff_seconds * 2**(n-1), capped at max_backoff_seconds.
    """
    max_retries: int = DEFAULT_MAX_RETRIES
    backoff_seconds: int = DEFAULT_BACKOFF_SECONDS
    max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS

    def should_retry(self, attempt: int) -> bool:
        return attempt <= self.max_retries

    def backoff_for(self, attempt: int) -> timedelta:
        seconds = self.backoff_seconds * (2 ** max(attempt - 1, 0))
        return timedelta(seconds=min(seconds, self.max_backoff_seconds))

    def next_retry_at(self, attempt: int, now: datetime) -> datetime:
        return now + self.backoff_for(attempt)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'RetryPolicy':
        return cls(
            max_retries=int(config.get('DISPATCH_MAX_RETRIES', DEFAULT_MAX_RETRIES)),
            backoff_seconds=int(config.get('DISPATCH_RETRY_BACKOFF_SECONDS', DEFAULT_BACKOFF_SECONDS)),
            max_backoff_seconds=int(config.get('DISPATCH_RETRY_BACKOFF_MAX_SECONDS', DEFAULT_MAX_BACKOFF_SECONDS)),
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            'max_retries': self.max_retries,
            'backoff_seconds': self.backoff_seconds,
            'max_backoff_seconds': self.max_backoff_seconds
        }

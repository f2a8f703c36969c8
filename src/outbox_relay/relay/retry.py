"""
Retry Policy

Exponential backoff for failed publish attempts.

Schedule with the defaults:
    attempt:  1   2   3   4    5    6    7     8     9     10
    delay:    1s  2s  4s  8s   16s  32s  64s   128s  256s  300s (capped)
Past max_retries the policy gives up and the record is dead-lettered.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from .models import RecordId, RetryDecision

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 10
DEFAULT_INITIAL_DELAY_MS = 1000
DEFAULT_MAX_DELAY_MS = 300000  # 5 minutes


class RetryPolicy:
    """
    Decides whether a failed publish may be retried and after what delay.

    Stateless: attempt counts are tracked by the caller (see RetryTracker).
    """

    def __init__(
        self,
        max_retries: int = DEFAULT_MAX_RETRIES,
        initial_delay_ms: int = DEFAULT_INITIAL_DELAY_MS,
        max_delay_ms: int = DEFAULT_MAX_DELAY_MS
    ):
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if initial_delay_ms <= 0 or max_delay_ms <= 0:
            raise ValueError("delays must be positive")
        self.max_retries = max_retries
        self.initial_delay_ms = initial_delay_ms
        self.max_delay_ms = max_delay_ms

    def should_retry(self, attempt_count: int) -> RetryDecision:
        """
        Args:
            attempt_count: 1-indexed attempt number being asked about

        Returns:
            RetryDecision(retry=True, delay_ms=...) while attempt_count is
            within max_retries, otherwise RetryDecision(retry=False, delay_ms=0)
        """
        if attempt_count < 1:
            raise ValueError("attempt_count is 1-indexed")

        if attempt_count > self.max_retries:
            logger.warning(
                "Max retries exceeded",
                extra={"attempt_count": attempt_count, "max_retries": self.max_retries},
            )
            return RetryDecision(
                retry=False,
                delay_ms=0,
                reason=f"Max retries exceeded ({self.max_retries} attempts)",
            )

        return RetryDecision(retry=True, delay_ms=self.calculate_delay(attempt_count))

    def calculate_delay(self, attempt_count: int) -> int:
        """delay = min(initial_delay * 2^(attempt - 1), max_delay)"""
        # Cap the exponent first; 2**n grows without bound otherwise
        exponent = min(attempt_count - 1, 62)
        return min(self.initial_delay_ms * (2 ** exponent), self.max_delay_ms)


@dataclass
class _Attempts:
    count: int = 0
    next_attempt_at: float = 0.0
    last_error: Optional[str] = None


class RetryTracker:
    """
    In-memory failed-attempt bookkeeping, keyed by record id.

    Lives for the lifetime of the process; a restart starts every record
    from attempt 1 again.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, _Attempts] = {}

    @staticmethod
    def _key(record_id: RecordId) -> str:
        return str(record_id)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, record_id: RecordId) -> bool:
        return self._key(record_id) in self._entries

    def attempts(self, record_id: RecordId) -> int:
        entry = self._entries.get(self._key(record_id))
        return entry.count if entry else 0

    def last_error(self, record_id: RecordId) -> Optional[str]:
        entry = self._entries.get(self._key(record_id))
        return entry.last_error if entry else None

    def is_due(self, record_id: RecordId) -> bool:
        """True if the record may be attempted now."""
        entry = self._entries.get(self._key(record_id))
        return entry is None or self._clock() >= entry.next_attempt_at

    def record_failure(self, record_id: RecordId, error: str) -> int:
        """Count a failed attempt; returns the number of failures so far."""
        entry = self._entries.setdefault(self._key(record_id), _Attempts())
        entry.count += 1
        entry.last_error = error
        return entry.count

    def schedule(self, record_id: RecordId, delay_ms: int) -> None:
        """Hold the record back for delay_ms."""
        entry = self._entries.setdefault(self._key(record_id), _Attempts())
        entry.next_attempt_at = self._clock() + delay_ms / 1000.0

    def clear(self, record_id: RecordId) -> None:
        self._entries.pop(self._key(record_id), None)

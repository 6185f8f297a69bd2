from __future__ import annotations

import random
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict

from nexora.logging import get_logger
from nexora.service.errors import Failure, rate_limited
from nexora.storage.models import utcnow

logger = get_logger(__name__)


@dataclass
class RateLimitRecord:
    count: int
    reset_at: datetime


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int
    reset_at: datetime

    def retry_after_seconds(self, now: datetime) -> int:
        return max(0, int((self.reset_at - now).total_seconds()))

    def as_failure(self) -> Failure:
        return rate_limited(
            "Too many requests. Please try again later.",
            reset_at=self.reset_at.isoformat(),
            remaining=self.remaining,
        )


class RateLimiter:
    """Process-local fixed-window counter keyed by caller identifier.

    Counts are lost on restart and not shared between instances.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        rng: Callable[[], float] = random.random,
        purge_probability: float = 0.01,
    ) -> None:
        self._records: Dict[str, RateLimitRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock
        self._rng = rng
        self.purge_probability = purge_probability

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def check(
        self, identifier: str, window_seconds: int, max_requests: int
    ) -> RateLimitDecision:
        if window_seconds <= 0 or max_requests <= 0:
            raise ValueError("window_seconds and max_requests must be positive")
        with self._lock:
            now = self._clock()
            if self._rng() < self.purge_probability:
                self._purge_expired(now)
            record = self._records.get(identifier)
            if record is None or record.reset_at <= now:
                record = RateLimitRecord(
                    count=1, reset_at=now + timedelta(seconds=window_seconds)
                )
                self._records[identifier] = record
                return RateLimitDecision(True, max_requests - 1, record.reset_at)
            if record.count >= max_requests:
                logger.warning(
                    "rate_limit_exceeded",
                    identifier=identifier,
                    limit=max_requests,
                    reset_at=record.reset_at.isoformat(),
                )
                return RateLimitDecision(False, 0, record.reset_at)
            record.count += 1
            return RateLimitDecision(True, max_requests - record.count, record.reset_at)

    def _purge_expired(self, now: datetime) -> int:
        # Caller holds the lock
        expired = [key for key, rec in self._records.items() if rec.reset_at <= now]
        for key in expired:
            del self._records[key]
        if expired:
            logger.debug("rate_limit_records_purged", count=len(expired))
        return len(expired)

    def reset(self, identifier: str | None = None) -> None:
        with self._lock:
            if identifier is None:
                self._records.clear()
            else:
                self._records.pop(identifier, None)

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from dateutil import parser as dateparser


logger = logging.getLogger(__name__)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta seconds or HTTP date)."""
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if s.isascii() and s.isdigit():
        return float(s)
    try:
        when = dateparser.parse(s)
    except (ValueError, OverflowError):
        return None
    if not when.tzinfo:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


@dataclass(frozen=True)
class BackoffPolicy:
    max_attempts: int = 4
    base_delay_s: float = 0.4
    factor: float = 2.0
    max_delay_s: float = 30.0
    # minimum spacing between two requests of one run
    min_interval_s: float = 0.0

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BackoffPolicy":
        b = cfg.get("backoff", {}) or {}
        return cls(
            max_attempts=int(b.get("max_attempts", cls.max_attempts)),
            base_delay_s=float(b.get("base_delay_s", cls.base_delay_s)),
            factor=float(b.get("factor", cls.factor)),
            max_delay_s=float(b.get("max_delay_s", cls.max_delay_s)),
            min_interval_s=float(b.get("min_interval_s", cls.min_interval_s)),
        )

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay after failed attempt number ``attempt`` (1-based)."""
        if retry_after is not None:
            return min(max(retry_after, 0.0), self.max_delay_s)
        return min(self.base_delay_s * (self.factor ** (attempt - 1)), self.max_delay_s)


@dataclass
class BackoffState:
    """Backoff bookkeeping for a single ingestion run.

    Each run owns its own instance; concurrent runs never share one.
    """

    policy: BackoffPolicy = field(default_factory=BackoffPolicy)
    sleep: Callable[[float], None] = time.sleep
    clock: Callable[[], float] = time.monotonic
    attempts: int = 0
    retries: int = 0
    rate_limited: int = 0
    slept_s: float = 0.0
    _last_request: Optional[float] = None

    def before_request(self) -> None:
        self.attempts += 1
        if self.policy.min_interval_s > 0 and self._last_request is not None:
            wait = self.policy.min_interval_s - (self.clock() - self._last_request)
            if wait > 0:
                self._sleep(wait)
        self._last_request = self.clock()

    def pause(self, attempt: int, retry_after: Optional[float] = None, reason: str = "") -> float:
        delay = self.policy.delay_for(attempt, retry_after)
        self.retries += 1
        logger.debug("attempt %s failed (%s); retrying in %.2fs", attempt, reason or "error", delay)
        self._sleep(delay)
        return delay

    def _sleep(self, seconds: float) -> None:
        self.slept_s += seconds
        self.sleep(seconds)

import logging
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from . import config
from .utils import parse_iso8601

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 1.0


@dataclass(frozen=True)
class QuotaBudget:
    """Quota state reported by the API on every response."""

    cost: int = 0
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None

    @classmethod
    def from_payload(cls, payload):
        """Build from a GraphQL ``rateLimit`` block; None when absent."""
        if not isinstance(payload, dict):
            return None
        cost = payload.get("cost")
        remaining = payload.get("remaining")
        return cls(
            cost=int(cost) if isinstance(cost, (int, float)) else 0,
            remaining=int(remaining) if isinstance(remaining, (int, float)) else None,
            reset_at=parse_iso8601(payload.get("resetAt")),
        )

    def to_dict(self):
        return {
            "cost": self.cost,
            "remaining": self.remaining,
            "resetAt": self.reset_at.isoformat() if self.reset_at else None,
        }


class RateLimiter:
    """Sliding one-second window plus quota-budget gate for outbound queries.

    The two rules are independent: ``gate`` bounds the request rate, while
    ``check_quota`` parks the loop until the API quota resets once the
    remaining budget falls under the configured threshold.
    """

    def __init__(
        self,
        max_requests_per_second=config.MAX_REQUESTS_PER_SECOND,
        quota_threshold=config.RATE_LIMIT_THRESHOLD,
        safety_buffer=config.WINDOW_SAFETY_BUFFER_SECONDS,
        quota_safety_margin=config.QUOTA_SAFETY_MARGIN_SECONDS,
        minimum_quota_wait=config.QUOTA_MINIMUM_WAIT_SECONDS,
        clock=time.time,
        sleep=time.sleep,
    ):
        self.max_requests_per_second = max_requests_per_second
        # A fractional rate cannot admit a fractional request inside one window.
        self.capacity = max(1, math.floor(max_requests_per_second))
        self.quota_threshold = quota_threshold
        self.safety_buffer = safety_buffer
        self.quota_safety_margin = quota_safety_margin
        self.minimum_quota_wait = minimum_quota_wait
        self._clock = clock
        self._sleep = sleep
        self._request_times = deque()
        self.last_budget = None
        self.window_waits = 0
        self.quota_waits = 0
        self.seconds_waited = 0.0

    def _prune(self, now):
        cutoff = now - WINDOW_SECONDS
        while self._request_times and self._request_times[0] <= cutoff:
            self._request_times.popleft()

    def in_window(self):
        """Number of dispatches inside the trailing one-second window."""
        self._prune(self._clock())
        return len(self._request_times)

    def gate(self):
        """Block until one more request may be dispatched, then record it."""
        while True:
            now = self._clock()
            self._prune(now)
            if len(self._request_times) < self.capacity:
                self._request_times.append(now)
                return
            oldest = self._request_times[0]
            wait = oldest + WINDOW_SECONDS - now + self.safety_buffer
            if wait > 0:
                self.window_waits += 1
                self.seconds_waited += wait
                self._sleep(wait)

    def observe(self, budget):
        if budget is not None:
            self.last_budget = budget

    def quota_wait_seconds(self, budget):
        """Seconds to wait for ``budget`` to reset: max(reset - now + margin, minimum)."""
        if budget is None or budget.reset_at is None:
            return self.minimum_quota_wait
        until_reset = budget.reset_at.timestamp() - self._clock()
        return max(until_reset + self.quota_safety_margin, self.minimum_quota_wait)

    def check_quota(self, budget=None):
        """Wait for the quota reset when the remaining budget is under the threshold."""
        budget = budget or self.last_budget
        if budget is None or budget.remaining is None:
            return 0.0
        if budget.remaining >= self.quota_threshold:
            return 0.0
        wait = self.quota_wait_seconds(budget)
        logger.warning(
            "[!] Quota low (remaining=%s < %s). Waiting %.0fs for reset.",
            budget.remaining,
            self.quota_threshold,
            wait,
        )
        return self._wait_quota(wait)

    def wait_for_reset(self, budget=None):
        """Unconditional quota wait after the API refused a request."""
        wait = self.quota_wait_seconds(budget or self.last_budget)
        logger.warning("[!] Quota exhausted by the API. Waiting %.0fs for reset.", wait)
        return self._wait_quota(wait)

    def _wait_quota(self, wait):
        self.quota_waits += 1
        self.seconds_waited += wait
        self._sleep(wait)
        # The budget is refreshed by the next response; the window keeps its own pruning.
        self.last_budget = None
        return wait

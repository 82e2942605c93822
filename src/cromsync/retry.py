import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Optional

from . import config
from .errors import FetchError, MalformedResponseError, QuotaExhausted

logger = logging.getLogger(__name__)

QUOTA = "quota"
TRANSIENT = "transient"
FATAL = "fatal"

RETRY = "retry"
WAIT = "wait"
ABORT = "abort"


@dataclass(frozen=True)
class RetryDecision:
    action: str
    outcome: str
    attempt: int = 0
    delay: float = 0.0
    errors_in_window: int = 0
    reason: Optional[str] = None

    @property
    def should_retry(self):
        return self.action in {RETRY, WAIT}


class RetryPolicy:
    """Success / transient / fatal state machine over batch attempts.

    Transient failures are counted in a rolling window; reaching
    ``threshold`` failures inside the window escalates to fatal. Quota
    signals are never counted. A malformed response that recurs on the
    immediate retry escalates at once.
    """

    def __init__(
        self,
        threshold=config.RETRY_THRESHOLD,
        window_seconds=config.RETRY_WINDOW_SECONDS,
        backoff_seconds=config.RETRY_BACKOFF_SECONDS,
        backoff_max=config.RETRY_BACKOFF_MAX_SECONDS,
        exponential=config.RETRY_EXPONENTIAL,
        clock=time.time,
        sleep=time.sleep,
    ):
        self.threshold = threshold
        self.window_seconds = window_seconds
        self.backoff_seconds = backoff_seconds
        self.backoff_max = backoff_max
        self.exponential = exponential
        self._clock = clock
        self._sleep = sleep
        self._failures = deque()
        self._attempt = 0
        self._last_malformed = False

    @staticmethod
    def classify(exc):
        if isinstance(exc, QuotaExhausted):
            return QUOTA
        # TransientFetchError and MalformedResponseError are both FetchErrors.
        if isinstance(exc, FetchError):
            return TRANSIENT
        return FATAL

    def _prune(self, now):
        cutoff = now - self.window_seconds
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def errors_in_window(self):
        self._prune(self._clock())
        return len(self._failures)

    def delay_for(self, attempt):
        if not self.exponential:
            return self.backoff_seconds
        return min(self.backoff_seconds * (2 ** max(attempt - 1, 0)), self.backoff_max)

    def record_success(self):
        self._attempt = 0
        self._last_malformed = False

    def record_failure(self, exc):
        outcome = self.classify(exc)
        if outcome == QUOTA:
            return RetryDecision(action=WAIT, outcome=outcome, reason="quota exhausted")
        if outcome == FATAL:
            return RetryDecision(action=ABORT, outcome=outcome, reason=f"unrecoverable {type(exc).__name__}")

        now = self._clock()
        self._prune(now)
        self._failures.append(now)
        self._attempt += 1
        count = len(self._failures)

        malformed = isinstance(exc, MalformedResponseError)
        repeated_malformed = malformed and self._last_malformed
        self._last_malformed = malformed

        if count >= self.threshold:
            return RetryDecision(
                action=ABORT,
                outcome=FATAL,
                attempt=self._attempt,
                errors_in_window=count,
                reason=f"{count} transient errors within {self.window_seconds:.0f}s",
            )
        if repeated_malformed:
            return RetryDecision(
                action=ABORT,
                outcome=FATAL,
                attempt=self._attempt,
                errors_in_window=count,
                reason="malformed response repeated on retry",
            )
        return RetryDecision(
            action=RETRY,
            outcome=TRANSIENT,
            attempt=self._attempt,
            delay=self.delay_for(self._attempt),
            errors_in_window=count,
        )

    def backoff(self, decision):
        if decision.delay > 0:
            logger.info("[*] Backing off %.1fs before retry %s.", decision.delay, decision.attempt)
            self._sleep(decision.delay)
        return decision.delay

import unittest
from datetime import datetime, timezone

from cromsync.ratelimit import QuotaBudget, RateLimiter


class FakeClock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start
        self.sleeps = []

    def time(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def _reset_in(clock, seconds):
    return datetime.fromtimestamp(clock.now + seconds, tz=timezone.utc)


class RateLimiterWindowTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()

    def _limiter(self, rps, **kwargs):
        return RateLimiter(
            max_requests_per_second=rps,
            quota_threshold=200,
            clock=self.clock.time,
            sleep=self.clock.sleep,
            **kwargs,
        )

    def test_fractional_rate_admits_one_request_per_window(self) -> None:
        limiter = self._limiter(1.8)
        self.assertEqual(limiter.capacity, 1)
        limiter.gate()
        limiter.gate()
        self.assertEqual(len(self.clock.sleeps), 1)
        self.assertAlmostEqual(self.clock.sleeps[0], 1.05)

    def test_never_more_than_capacity_in_any_window(self) -> None:
        limiter = self._limiter(3)
        dispatched = []
        for _ in range(10):
            limiter.gate()
            dispatched.append(self.clock.now)
            self.clock.now += 0.1
        for i, start in enumerate(dispatched):
            in_window = [t for t in dispatched[i:] if t < start + 1.0]
            self.assertLessEqual(len(in_window), 3)

    def test_first_requests_in_window_pass_without_waiting(self) -> None:
        limiter = self._limiter(3)
        for _ in range(3):
            limiter.gate()
        self.assertEqual(self.clock.sleeps, [])
        self.assertEqual(limiter.in_window(), 3)
        limiter.gate()
        self.assertEqual(limiter.window_waits, 1)

    def test_window_frees_up_after_one_second(self) -> None:
        limiter = self._limiter(2)
        limiter.gate()
        limiter.gate()
        self.clock.now += 1.5
        limiter.gate()
        self.assertEqual(self.clock.sleeps, [])


class RateLimiterQuotaTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.limiter = RateLimiter(
            max_requests_per_second=2,
            quota_threshold=200,
            quota_safety_margin=10,
            minimum_quota_wait=60,
            clock=self.clock.time,
            sleep=self.clock.sleep,
        )

    def test_no_wait_when_budget_above_threshold(self) -> None:
        self.limiter.observe(QuotaBudget(cost=5, remaining=500, reset_at=_reset_in(self.clock, 30)))
        self.assertEqual(self.limiter.check_quota(), 0.0)
        self.assertEqual(self.clock.sleeps, [])

    def test_no_wait_without_budget(self) -> None:
        self.assertEqual(self.limiter.check_quota(), 0.0)

    def test_waits_minimum_when_reset_is_close(self) -> None:
        self.limiter.observe(QuotaBudget(cost=5, remaining=100, reset_at=_reset_in(self.clock, 30)))
        waited = self.limiter.check_quota()
        self.assertAlmostEqual(waited, 60.0)
        self.assertEqual(self.limiter.quota_waits, 1)

    def test_waits_until_reset_plus_margin(self) -> None:
        self.limiter.observe(QuotaBudget(cost=5, remaining=100, reset_at=_reset_in(self.clock, 120)))
        waited = self.limiter.check_quota()
        self.assertAlmostEqual(waited, 130.0)
        self.assertAlmostEqual(self.clock.sleeps[-1], 130.0)

    def test_quota_wait_clears_budget(self) -> None:
        self.limiter.gate()
        self.limiter.observe(QuotaBudget(cost=5, remaining=10, reset_at=_reset_in(self.clock, 5)))
        self.limiter.check_quota()
        self.assertIsNone(self.limiter.last_budget)
        self.assertEqual(self.limiter.in_window(), 0)
        self.assertEqual(self.limiter.check_quota(), 0.0)

    def test_short_quota_wait_keeps_window_bound(self) -> None:
        limiter = RateLimiter(
            max_requests_per_second=1,
            quota_threshold=200,
            quota_safety_margin=0,
            minimum_quota_wait=0.1,
            clock=self.clock.time,
            sleep=self.clock.sleep,
        )
        limiter.gate()
        first = self.clock.now
        limiter.observe(QuotaBudget(cost=5, remaining=10, reset_at=_reset_in(self.clock, 0)))
        self.assertAlmostEqual(limiter.check_quota(), 0.1)
        limiter.gate()
        self.assertGreaterEqual(self.clock.now - first, 1.0)

    def test_wait_for_reset_without_budget_uses_minimum(self) -> None:
        self.assertAlmostEqual(self.limiter.wait_for_reset(), 60.0)


class QuotaBudgetTests(unittest.TestCase):
    def test_from_payload(self) -> None:
        budget = QuotaBudget.from_payload({"cost": 12, "remaining": 3000, "resetAt": "2024-01-01T00:05:00Z"})
        self.assertEqual(budget.cost, 12)
        self.assertEqual(budget.remaining, 3000)
        self.assertEqual(budget.reset_at, datetime(2024, 1, 1, 0, 5, tzinfo=timezone.utc))
        self.assertEqual(budget.to_dict()["resetAt"], "2024-01-01T00:05:00+00:00")

    def test_from_payload_rejects_non_mapping(self) -> None:
        self.assertIsNone(QuotaBudget.from_payload(None))
        self.assertIsNone(QuotaBudget.from_payload([1, 2]))

    def test_from_payload_tolerates_missing_fields(self) -> None:
        budget = QuotaBudget.from_payload({"resetAt": "not a date"})
        self.assertEqual(budget.cost, 0)
        self.assertIsNone(budget.remaining)
        self.assertIsNone(budget.reset_at)


if __name__ == "__main__":
    unittest.main()

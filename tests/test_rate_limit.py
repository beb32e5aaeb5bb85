import threading
import unittest

from sitehost.rate_limit import SlidingWindowRateLimiter


class SlidingWindowRateLimiterTests(unittest.TestCase):
    def setUp(self):
        self.limiter = SlidingWindowRateLimiter(max_requests=3, window_ms=60_000)

    def test_admits_up_to_limit_then_rejects(self):
        decisions = [self.limiter.admit("k", now=1_000 + i) for i in range(3)]
        self.assertTrue(all(decision.allowed for decision in decisions))
        self.assertEqual([decision.remaining for decision in decisions], [2, 1, 0])

        rejected = self.limiter.admit("k", now=1_010)
        self.assertFalse(rejected.allowed)
        self.assertEqual(rejected.remaining, 0)
        self.assertEqual(rejected.limit, 3)
        # Oldest entry (t=1000) leaves the window at t=61000.
        self.assertEqual(rejected.retry_after, 60)

    def test_rejections_are_not_recorded(self):
        for i in range(3):
            self.limiter.admit("k", now=i)
        for i in range(10):
            self.assertFalse(self.limiter.admit("k", now=100 + i).allowed)
        self.assertEqual(self.limiter.stats(), {"keys": 1, "total_requests": 3})

    def test_window_slides(self):
        for i in range(3):
            self.limiter.admit("k", now=i * 1_000)
        self.assertFalse(self.limiter.admit("k", now=59_999).allowed)

        # t=0 ages out exactly at the window boundary.
        decision = self.limiter.admit("k", now=60_000)
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.remaining, 0)
        self.assertFalse(self.limiter.admit("k", now=60_500).allowed)
        self.assertTrue(self.limiter.admit("k", now=61_000).allowed)

    def test_identities_are_independent(self):
        for i in range(3):
            self.limiter.admit("key:1", now=i)
        self.assertFalse(self.limiter.admit("key:1", now=10).allowed)
        self.assertTrue(self.limiter.admit("ip:10.0.0.1", now=10).allowed)

    def test_retry_after_is_at_least_one_second(self):
        for i in range(3):
            self.limiter.admit("k", now=i)
        decision = self.limiter.admit("k", now=59_999)
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.retry_after, 1)

    def test_headers(self):
        allowed = self.limiter.admit("k", now=0)
        self.assertEqual(
            allowed.headers(),
            {
                "X-RateLimit-Limit": "3",
                "X-RateLimit-Remaining": "2",
                "X-RateLimit-Reset": "60",
            },
        )
        self.limiter.admit("k", now=0)
        self.limiter.admit("k", now=0)
        denied = self.limiter.admit("k", now=30_000)
        headers = denied.headers()
        self.assertEqual(headers["X-RateLimit-Remaining"], "0")
        self.assertEqual(headers["Retry-After"], "30")
        self.assertEqual(headers["X-RateLimit-Reset"], "30")

    def test_compact_evicts_idle_identities(self):
        self.limiter.admit("old", now=0)
        self.limiter.admit("fresh", now=50_000)
        evicted = self.limiter.compact(now=70_000)
        self.assertEqual(evicted, 1)
        self.assertEqual(self.limiter.stats(), {"keys": 1, "total_requests": 1})

    def test_clear(self):
        self.limiter.admit("k", now=0)
        self.limiter.clear()
        self.assertEqual(self.limiter.stats(), {"keys": 0, "total_requests": 0})

    def test_rejects_invalid_configuration(self):
        with self.assertRaises(ValueError):
            SlidingWindowRateLimiter(max_requests=0, window_ms=1_000)
        with self.assertRaises(ValueError):
            SlidingWindowRateLimiter(max_requests=1, window_ms=0)

    def test_concurrent_admits_never_exceed_limit(self):
        limiter = SlidingWindowRateLimiter(max_requests=25, window_ms=60_000)
        allowed = []
        lock = threading.Lock()
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(10):
                decision = limiter.admit("shared", now=1_000)
                if decision.allowed:
                    with lock:
                        allowed.append(decision)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(allowed), 25)


if __name__ == "__main__":
    unittest.main()

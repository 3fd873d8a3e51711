from __future__ import annotations

import json
import tempfile
import threading
import unittest
from pathlib import Path

from ig_feed.rate_limit import FileRateLimiter, RateDecision, resolve_client_id


class _Clock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestFileRateLimiter(unittest.TestCase):
    def test_window_counts_down_then_denies_then_resets(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = _Clock(1000)
            limiter = FileRateLimiter(td, window_seconds=60, max_requests=3, clock=clock)

            remaining = [limiter.allow("instagram", "1.2.3.4").remaining for _ in range(3)]
            self.assertEqual(remaining, [2, 1, 0])

            clock.now = 1010
            denied = limiter.allow("instagram", "1.2.3.4")
            self.assertFalse(denied.allowed)
            self.assertEqual(denied.remaining, 0)
            self.assertEqual(denied.retry_after, 50)

            clock.now = 1060
            fresh = limiter.allow("instagram", "1.2.3.4")
            self.assertTrue(fresh.allowed)
            self.assertEqual(fresh.remaining, 2)
            self.assertEqual(fresh.retry_after, 60)

    def test_denial_leaves_state_unchanged(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = _Clock(500)
            limiter = FileRateLimiter(td, window_seconds=60, max_requests=1, clock=clock)
            limiter.allow("g", "c")

            path = limiter.path_for("g", "c")
            before = json.loads(path.read_text(encoding="utf-8"))
            clock.now = 530
            self.assertFalse(limiter.allow("g", "c").allowed)
            self.assertEqual(json.loads(path.read_text(encoding="utf-8")), before)
            self.assertEqual(before, {"window_start": 500, "count": 1})

    def test_keys_are_independent(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            limiter = FileRateLimiter(td, window_seconds=60, max_requests=1, clock=_Clock(0))
            self.assertTrue(limiter.allow("g", "a").allowed)
            self.assertTrue(limiter.allow("g", "b").allowed)
            self.assertTrue(limiter.allow("other", "a").allowed)
            self.assertFalse(limiter.allow("g", "a").allowed)

    def test_clock_going_backwards_counts_as_no_elapsed_time(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            clock = _Clock(1000)
            limiter = FileRateLimiter(td, window_seconds=60, max_requests=2, clock=clock)
            limiter.allow("g", "c")
            clock.now = 900
            decision = limiter.allow("g", "c")
            self.assertTrue(decision.allowed)
            self.assertEqual(decision.remaining, 0)
            self.assertEqual(decision.retry_after, 60)

    def test_malformed_state_starts_fresh_window(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            limiter = FileRateLimiter(td, window_seconds=60, max_requests=5, clock=_Clock(10))
            path = limiter.path_for("g", "c")
            path.parent.mkdir(parents=True)
            path.write_text("{broken", encoding="utf-8")

            decision = limiter.allow("g", "c")
            self.assertTrue(decision.allowed)
            self.assertEqual(decision.remaining, 4)

    def test_storage_failure_fails_open(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            blocker = Path(td) / "file"
            blocker.write_text("x", encoding="utf-8")
            limiter = FileRateLimiter(blocker, window_seconds=60, max_requests=10)

            decision = limiter.allow("g", "c")
            self.assertEqual(decision, RateDecision(allowed=True, limit=10, remaining=9, retry_after=0))

    def test_concurrent_requests_are_counted_exactly(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            limiter = FileRateLimiter(td, window_seconds=3600, max_requests=20, clock=_Clock(0))
            results: list[bool] = []
            lock = threading.Lock()

            def _hit() -> None:
                for _ in range(5):
                    ok = limiter.allow("g", "c").allowed
                    with lock:
                        results.append(ok)

            threads = [threading.Thread(target=_hit) for _ in range(6)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            self.assertEqual(results.count(True), 20)
            self.assertEqual(results.count(False), 10)

    def test_rejects_bad_configuration(self) -> None:
        with self.assertRaises(ValueError):
            FileRateLimiter("x", window_seconds=0)
        with self.assertRaises(ValueError):
            FileRateLimiter("x", max_requests=0)


class TestRateDecisionHeaders(unittest.TestCase):
    def test_headers(self) -> None:
        ok = RateDecision(allowed=True, limit=60, remaining=59, retry_after=60)
        self.assertEqual(ok.headers(), {"RateLimit-Limit": "60", "RateLimit-Remaining": "59"})

        denied = RateDecision(allowed=False, limit=60, remaining=0, retry_after=12)
        self.assertEqual(denied.headers()["Retry-After"], "12")


class TestResolveClientId(unittest.TestCase):
    def test_direct_address_by_default(self) -> None:
        self.assertEqual(resolve_client_id("10.0.0.1", "8.8.8.8"), "10.0.0.1")

    def test_trusted_proxy_uses_first_forwarded_ip(self) -> None:
        self.assertEqual(
            resolve_client_id("10.0.0.1", " 8.8.8.8 , 10.0.0.2", trust_proxy=True),
            "8.8.8.8",
        )

    def test_invalid_forwarded_value_is_ignored(self) -> None:
        self.assertEqual(resolve_client_id("10.0.0.1", "evil, 8.8.8.8", trust_proxy=True), "10.0.0.1")

    def test_missing_address(self) -> None:
        self.assertEqual(resolve_client_id(None), "unknown")


if __name__ == "__main__":
    unittest.main()

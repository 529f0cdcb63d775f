import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from cryptography.fernet import Fernet

from context_resolver import ProjectContext
from persistence.db import Database
from rate_limiter import RateLimiter, requester_identity


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now


class TestRateLimiter(unittest.TestCase):
    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.db = Database(Fernet.generate_key(), db_path=Path(tmp.name) / "test.db")
        self.clock = FakeClock()
        self.limiter = RateLimiter(self.db, window_ms=60_000, max_requests=20, clock=self.clock)

    def test_twenty_first_request_in_window_is_denied(self):
        for _ in range(20):
            self.assertTrue(self.limiter.admit("acc-1").allowed)
            self.clock.now += 1

        decision = self.limiter.admit("acc-1")
        self.assertFalse(decision.allowed)
        self.assertEqual(decision.retry_after_seconds, 40)
        self.assertEqual(decision.remaining, 0)

    def test_denial_does_not_extend_the_window(self):
        for _ in range(21):
            self.limiter.admit("acc-1")
        self.assertEqual(self.db.get_rate_window("acc-1"), (1_700_000_000_000, 20))

    def test_new_window_after_expiry(self):
        for _ in range(21):
            self.limiter.admit("acc-1")
        self.clock.now += 60
        decision = self.limiter.admit("acc-1")
        self.assertTrue(decision.allowed)
        self.assertEqual(decision.remaining, 19)
        self.assertEqual(self.db.get_rate_window("acc-1"), (1_700_000_060_000, 1))

    def test_requesters_are_independent(self):
        for _ in range(21):
            self.limiter.admit("acc-1")
        self.assertTrue(self.limiter.admit("acc-2").allowed)

    def test_retry_after_is_at_least_one_second(self):
        for _ in range(20):
            self.limiter.admit("acc-1")
        self.clock.now += 59.9
        self.assertEqual(self.limiter.admit("acc-1").retry_after_seconds, 1)

    def test_storage_failure_allows_request(self):
        storage = MagicMock()
        storage.get_rate_window.side_effect = RuntimeError("database is locked")
        limiter = RateLimiter(storage, clock=self.clock)
        with self.assertLogs("rate_limiter", level="WARNING"):
            decision = limiter.admit("acc-1")
        self.assertTrue(decision.allowed)


class TestRequesterIdentity(unittest.TestCase):
    def test_account_id_wins(self):
        context = ProjectContext(project_id="10000", portal_id="3")
        self.assertEqual(requester_identity("acc-1", context), "acc-1")

    def test_context_fallbacks(self):
        self.assertEqual(requester_identity(None, ProjectContext(portal_id="3", project_key="IT")), "portal:3")
        self.assertEqual(requester_identity("", ProjectContext(project_key="IT", project_id="1")), "project:IT")
        self.assertEqual(requester_identity(None, ProjectContext(project_id="10000")), "project:10000")

    def test_anonymous_bucket(self):
        self.assertEqual(requester_identity(None, ProjectContext()), "anonymous")
        self.assertEqual(requester_identity("  ", None, anonymous_bucket="guests"), "guests")


if __name__ == "__main__":
    unittest.main()

"""Tests for the rolling-window rate limiter."""

import sqlite3

import pytest

import rate_limiter as rate_limiter_module
from rate_limiter import RateLimiter

DAY = 86400


class Clock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestRateLimiter:
    """Five batches per day per actor."""

    @pytest.fixture
    def clock(self):
        return Clock()

    @pytest.fixture
    def limiter(self, db_path, clock):
        return RateLimiter(db_path, clock=clock)

    def test_sixth_call_denied(self, limiter):
        """Five attempts pass, the sixth inside the window is refused."""
        results = [limiter.allow("user-1", "batch_scrape", 5, DAY) for _ in range(6)]
        assert results == [True, True, True, True, True, False]

    def test_denied_attempt_records_nothing(self, limiter):
        """A refusal leaves the attempt count unchanged."""
        for _ in range(7):
            limiter.allow("user-1", "batch_scrape", 5, DAY)
        assert limiter.remaining("user-1", "batch_scrape", 5, DAY) == 0

        conn = sqlite3.connect(str(limiter.db_path))
        count = conn.execute("SELECT COUNT(*) FROM rate_limits").fetchone()[0]
        conn.close()
        assert count == 5

    def test_allowed_again_after_window(self, limiter, clock):
        """Once the window rolls past the old attempts, calls pass again."""
        for _ in range(5):
            assert limiter.allow("user-1", "batch_scrape", 5, DAY)
        assert not limiter.allow("user-1", "batch_scrape", 5, DAY)

        clock.now += DAY + 1
        assert limiter.allow("user-1", "batch_scrape", 5, DAY)

    def test_actors_and_actions_counted_separately(self, limiter):
        for _ in range(5):
            limiter.allow("user-1", "batch_scrape", 5, DAY)
        assert limiter.allow("user-2", "batch_scrape", 5, DAY)
        assert limiter.allow("user-1", "scrape_source", 5, DAY)

    def test_store_error_denies(self, db_path, monkeypatch):
        """Fail closed when the store can't be reached."""
        def broken(_db_path=None):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(rate_limiter_module, "get_connection", broken)
        assert RateLimiter(db_path).allow("user-1", "batch_scrape", 5, DAY) is False

    def test_cleanup_removes_old_attempts(self, limiter, clock):
        limiter.allow("user-1", "batch_scrape", 5, DAY)
        clock.now += 8 * DAY
        limiter.allow("user-1", "batch_scrape", 5, DAY)

        assert limiter.cleanup(older_than_days=7) == 1
        assert limiter.remaining("user-1", "batch_scrape", 5, 30 * DAY) == 4

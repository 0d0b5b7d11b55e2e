"""
rate_limiter.py — Rolling-window rate limiting for scrape actions.

Attempts are rows in the ``rate_limits`` table keyed by (actor_id, action).
The count and the insert happen in one conditional INSERT so concurrent
callers for the same actor cannot both slip under the limit.
"""

import sqlite3
import time
from pathlib import Path
from typing import Callable, Optional

from database import get_connection
from monitoring import get_logger

logger = get_logger("rate_limiter")


class RateLimiter:
    """Gate how often an actor may start an action within a time window."""

    def __init__(self, db_path: Optional[Path] = None, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.clock = clock

    def allow(self, actor_id: str, action: str, limit: int, window_seconds: float) -> bool:
        """
        Record an attempt and return True if fewer than ``limit`` attempts
        exist in the last ``window_seconds``; otherwise return False and
        record nothing. Store errors deny.
        """
        now = self.clock()
        window_start = now - window_seconds
        try:
            conn = get_connection(self.db_path)
            try:
                with conn:
                    cursor = conn.execute(
                        """INSERT INTO rate_limits (actor_id, action, created_at)
                           SELECT ?, ?, ?
                           WHERE (
                               SELECT COUNT(*) FROM rate_limits
                               WHERE actor_id = ? AND action = ? AND created_at >= ?
                           ) < ?""",
                        (actor_id, action, now, actor_id, action, window_start, limit)
                    )
                    allowed = cursor.rowcount == 1
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.error(f"Rate limit store error for {actor_id}/{action}, denying: {e}")
            return False

        if not allowed:
            logger.warning(f"Rate limit hit: {actor_id}/{action} ({limit} per {window_seconds:.0f}s)")
        return allowed

    def remaining(self, actor_id: str, action: str, limit: int, window_seconds: float) -> int:
        """How many attempts are left in the current window (read-only)."""
        window_start = self.clock() - window_seconds
        conn = get_connection(self.db_path)
        row = conn.execute(
            """SELECT COUNT(*) AS n FROM rate_limits
               WHERE actor_id = ? AND action = ? AND created_at >= ?""",
            (actor_id, action, window_start)
        ).fetchone()
        conn.close()
        return max(limit - row["n"], 0)

    def cleanup(self, older_than_days: int = 7) -> int:
        """Delete attempts older than N days. Returns rows removed."""
        cutoff = self.clock() - older_than_days * 86400
        conn = get_connection(self.db_path)
        cursor = conn.execute("DELETE FROM rate_limits WHERE created_at < ?", (cutoff,))
        conn.commit()
        deleted = cursor.rowcount
        conn.close()
        if deleted:
            logger.info(f"Removed {deleted} expired rate limit attempts")
        return deleted

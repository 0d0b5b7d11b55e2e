"""
progress.py — Durable per-source progress records and live subscriptions.

Records live in ``scraping_progress`` keyed by (session_id, source_url).
Every update is an upsert, so applying the same update twice leaves the
same state. Subscribers get a snapshot first and then each change as it
lands, until every record in the session is terminal.
"""

import queue
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from database import get_connection
from errors import InvalidTransition
from models import ALLOWED_TRANSITIONS, PENDING, ProgressRecord, Source, utcnow_iso
from monitoring import get_logger, log_transition

logger = get_logger("progress")

PATCH_FIELDS = (
    "source_name",
    "status",
    "opportunities_found",
    "error_message",
    "retry_count",
    "started_at",
    "completed_at",
)


@dataclass
class ProgressEvent:
    """One message on a subscription: the opening snapshot or a single change."""
    kind: str  # "snapshot" or "update"
    records: list[ProgressRecord] = field(default_factory=list)


class Subscription:
    """
    Iterator over progress events for one session.

    Updates made through the same ProgressChannel arrive on an in-process
    queue. With ``poll_interval`` set, the store is also re-read whenever the
    queue stays quiet that long, which picks up updates written by another
    process.
    """

    def __init__(
        self,
        channel: "ProgressChannel",
        session_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ):
        self.channel = channel
        self.session_id = session_id
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._queue: "queue.Queue[ProgressRecord]" = queue.Queue()
        self._closed = False

    def __iter__(self):
        state: dict[str, ProgressRecord] = {}
        try:
            snapshot = self.channel.snapshot(self.session_id)
            for record in snapshot:
                state[record.source_url] = record
            yield ProgressEvent(kind="snapshot", records=snapshot)

            idle = 0.0
            while not self._closed and not _all_terminal(state.values()):
                wait = self._next_wait(idle)
                try:
                    record = self._queue.get(timeout=wait)
                except queue.Empty:
                    changed = self._poll(state) if self.poll_interval is not None else []
                    if not changed:
                        idle += wait
                        if self.timeout is not None and idle >= self.timeout:
                            logger.debug(f"Subscription to {self.session_id} timed out")
                            return
                        continue
                    idle = 0.0
                    for record in changed:
                        state[record.source_url] = record
                        yield ProgressEvent(kind="update", records=[record])
                    continue

                if record is None:
                    return
                known = state.get(record.source_url)
                if _is_stale(record, known):
                    # Already covered by the snapshot or a poll
                    continue
                idle = 0.0
                state[record.source_url] = record
                yield ProgressEvent(kind="update", records=[record])
        finally:
            self.close()

    def _next_wait(self, idle: float) -> Optional[float]:
        if self.poll_interval is None:
            return None if self.timeout is None else self.timeout - idle
        if self.timeout is None:
            return self.poll_interval
        return min(self.poll_interval, self.timeout - idle)

    def _poll(self, state: dict) -> list[ProgressRecord]:
        changed = []
        for record in self.channel.snapshot(self.session_id):
            known = state.get(record.source_url)
            if not _is_stale(record, known):
                changed.append(record)
        return changed

    def _deliver(self, record: ProgressRecord):
        self._queue.put(record)

    def close(self):
        if not self._closed:
            self._closed = True
            self._queue.put(None)
            self.channel.unsubscribe(self)

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


def _is_stale(record: ProgressRecord, known: Optional[ProgressRecord]) -> bool:
    """True if ``known`` already reflects this version of the record or a later one."""
    if known is None or not known.updated_at or not record.updated_at:
        return False
    return record.updated_at <= known.updated_at


def _all_terminal(records) -> bool:
    records = list(records)
    return bool(records) and all(r.is_terminal for r in records)


class ProgressChannel:
    """Owns the progress records for all sessions in this process."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path
        self._guard = threading.Lock()
        self._record_locks: dict[tuple[str, str], threading.Lock] = {}
        self._subscribers: dict[str, list[Subscription]] = {}

    def _lock_for(self, session_id: str, source_url: str) -> threading.Lock:
        with self._guard:
            return self._record_locks.setdefault((session_id, source_url), threading.Lock())

    def _release_lock(self, session_id: str, source_url: str):
        with self._guard:
            self._record_locks.pop((session_id, source_url), None)

    def create(self, session_id: str, source: Source) -> ProgressRecord:
        """Ensure a pending record exists for the source."""
        return self.update(session_id, source.url, source_name=source.name)

    def update(self, session_id: str, source_url: str, **patch) -> ProgressRecord:
        """
        Upsert the record for (session_id, source_url) with the given fields.

        Status changes must follow ALLOWED_TRANSITIONS; re-applying the current
        status is a no-op. opportunities_found never decreases. Raises
        InvalidTransition for a disallowed status change.
        """
        unknown = set(patch) - set(PATCH_FIELDS)
        if unknown:
            raise ValueError(f"unknown progress fields: {', '.join(sorted(unknown))}")

        with self._lock_for(session_id, source_url):
            current = self._get(session_id, source_url)
            record = current or ProgressRecord(
                session_id=session_id,
                source_name=patch.get("source_name") or source_url,
                source_url=source_url,
                status=PENDING,
            )
            old_status = record.status if current else None

            new_status = patch.get("status", record.status)
            if current and new_status != current.status:
                if new_status not in ALLOWED_TRANSITIONS.get(current.status, set()):
                    if current.is_terminal:
                        self._release_lock(session_id, source_url)
                    raise InvalidTransition(
                        f"{source_url}: cannot move from {current.status} to {new_status}"
                    )

            merged = ProgressRecord(
                session_id=session_id,
                source_name=patch.get("source_name") or record.source_name,
                source_url=source_url,
                status=new_status,
                opportunities_found=max(record.opportunities_found, patch.get("opportunities_found") or 0),
                error_message=patch.get("error_message", record.error_message),
                retry_count=patch.get("retry_count", record.retry_count),
                started_at=patch.get("started_at", record.started_at),
                completed_at=patch.get("completed_at", record.completed_at),
            )

            if current and _same_state(current, merged):
                merged = None
            else:
                merged.updated_at = utcnow_iso()
                self._write(merged)
                log_transition(logger, session_id, source_url, old_status, merged.status)
                subscribers = list(self._subscribers.get(session_id, []))

        if merged is None:
            if current.is_terminal:
                self._release_lock(session_id, source_url)
            return current
        if merged.is_terminal:
            self._release_lock(session_id, source_url)

        for subscription in subscribers:
            subscription._deliver(merged)
        return merged

    def _get(self, session_id: str, source_url: str) -> Optional[ProgressRecord]:
        conn = get_connection(self.db_path)
        row = conn.execute(
            "SELECT * FROM scraping_progress WHERE session_id = ? AND source_url = ?",
            (session_id, source_url)
        ).fetchone()
        conn.close()
        return ProgressRecord.from_row(row) if row else None

    def _write(self, record: ProgressRecord):
        conn = get_connection(self.db_path)
        try:
            with conn:
                conn.execute(
                    """INSERT INTO scraping_progress
                       (session_id, source_name, source_url, status, opportunities_found,
                        error_message, retry_count, started_at, completed_at, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                       ON CONFLICT(session_id, source_url) DO UPDATE SET
                           source_name = excluded.source_name,
                           status = excluded.status,
                           opportunities_found = MAX(scraping_progress.opportunities_found, excluded.opportunities_found),
                           error_message = excluded.error_message,
                           retry_count = excluded.retry_count,
                           started_at = excluded.started_at,
                           completed_at = excluded.completed_at,
                           updated_at = excluded.updated_at""",
                    (
                        record.session_id, record.source_name, record.source_url, record.status,
                        record.opportunities_found, record.error_message, record.retry_count,
                        record.started_at, record.completed_at, record.updated_at, record.updated_at,
                    )
                )
        finally:
            conn.close()

    def snapshot(self, session_id: str) -> list[ProgressRecord]:
        """All records for a session, in creation order."""
        conn = get_connection(self.db_path)
        rows = conn.execute(
            "SELECT * FROM scraping_progress WHERE session_id = ? ORDER BY id", (session_id,)
        ).fetchall()
        conn.close()
        return [ProgressRecord.from_row(row) for row in rows]

    def is_complete(self, session_id: str) -> bool:
        """True once the session has records and every one is completed or failed."""
        return _all_terminal(self.snapshot(session_id))

    def subscribe(
        self,
        session_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Subscription:
        """
        Subscribe to a session. Iterating the result yields a snapshot event,
        then one update event per change, and stops when the session is
        complete or no change arrives within ``timeout`` seconds.
        """
        subscription = Subscription(self, session_id, timeout, poll_interval)
        with self._guard:
            self._subscribers.setdefault(session_id, []).append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        with self._guard:
            subscribers = self._subscribers.get(subscription.session_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.session_id, None)


def _same_state(a: ProgressRecord, b: ProgressRecord) -> bool:
    return all(getattr(a, name) == getattr(b, name) for name in PATCH_FIELDS)

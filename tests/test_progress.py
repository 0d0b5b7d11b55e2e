"""Tests for the progress channel and its subscriptions."""

import pytest

from errors import InvalidTransition
from models import Source
from progress import ProgressChannel

SESSION = "batch-test-1"
A = Source(url="https://ventura.gov/bids", name="Ventura")
B = Source(url="https://santa-ana.org/bids", name="Santa Ana")


class TestProgressUpdates:

    @pytest.fixture
    def channel(self, db_path):
        channel = ProgressChannel(db_path)
        channel.create(SESSION, A)
        return channel

    def test_create_is_pending(self, channel):
        [record] = channel.snapshot(SESSION)
        assert record.status == "pending"
        assert record.source_name == "Ventura"
        assert record.opportunities_found == 0

    def test_update_is_idempotent(self, channel):
        first = channel.update(SESSION, A.url, status="in_progress", started_at="2025-06-01T00:00:00+00:00")
        second = channel.update(SESSION, A.url, status="in_progress", started_at="2025-06-01T00:00:00+00:00")
        assert second == first
        assert channel.snapshot(SESSION) == [first]

    def test_opportunities_found_never_decreases(self, channel):
        channel.update(SESSION, A.url, status="in_progress", opportunities_found=5)
        record = channel.update(SESSION, A.url, opportunities_found=3)
        assert record.opportunities_found == 5

    @pytest.mark.parametrize("path", [
        ["completed"],
        ["retrying"],
        ["failed"],
        ["in_progress", "completed", "in_progress"],
        ["in_progress", "pending"],
    ])
    def test_illegal_transitions_rejected(self, channel, path):
        with pytest.raises(InvalidTransition):
            for status in path:
                channel.update(SESSION, A.url, status=status)

    def test_retry_path_allowed(self, channel):
        for status in ["in_progress", "retrying", "in_progress", "failed", "retrying", "in_progress", "completed"]:
            channel.update(SESSION, A.url, status=status)
        assert channel.snapshot(SESSION)[0].status == "completed"

    def test_unknown_field_rejected(self, channel):
        with pytest.raises(ValueError):
            channel.update(SESSION, A.url, colour="blue")

    def test_record_lock_dropped_once_terminal(self, channel):
        channel.update(SESSION, A.url, status="in_progress")
        assert list(channel._record_locks) == [(SESSION, A.url)]

        channel.update(SESSION, A.url, status="completed")
        assert channel._record_locks == {}

        with pytest.raises(InvalidTransition):
            channel.update(SESSION, A.url, status="in_progress")
        assert channel._record_locks == {}

    def test_durable_across_channels(self, channel, db_path):
        channel.update(SESSION, A.url, status="in_progress")
        assert ProgressChannel(db_path).snapshot(SESSION)[0].status == "in_progress"


class TestCompletion:

    def test_no_records_is_not_complete(self, db_path):
        assert not ProgressChannel(db_path).is_complete("batch-empty")

    def test_complete_when_all_terminal(self, db_path):
        channel = ProgressChannel(db_path)
        channel.create(SESSION, A)
        channel.create(SESSION, B)
        channel.update(SESSION, A.url, status="in_progress")
        channel.update(SESSION, A.url, status="completed")
        assert not channel.is_complete(SESSION)

        channel.update(SESSION, B.url, status="in_progress")
        channel.update(SESSION, B.url, status="failed", error_message="rate limit exceeded")
        assert channel.is_complete(SESSION)


class TestSubscription:

    @pytest.fixture
    def channel(self, db_path):
        channel = ProgressChannel(db_path)
        channel.create(SESSION, A)
        return channel

    def test_snapshot_then_deltas_until_complete(self, channel):
        events = iter(channel.subscribe(SESSION, timeout=5))

        snapshot = next(events)
        assert snapshot.kind == "snapshot"
        assert [r.status for r in snapshot.records] == ["pending"]

        channel.update(SESSION, A.url, status="in_progress")
        channel.update(SESSION, A.url, status="completed", opportunities_found=2)

        rest = list(events)
        assert [e.kind for e in rest] == ["update", "update"]
        assert [e.records[0].status for e in rest] == ["in_progress", "completed"]
        assert rest[-1].records[0].opportunities_found == 2

    def test_complete_session_yields_only_snapshot(self, channel):
        channel.update(SESSION, A.url, status="in_progress")
        channel.update(SESSION, A.url, status="completed")

        events = list(channel.subscribe(SESSION, timeout=5))
        assert len(events) == 1
        assert events[0].records[0].status == "completed"

    def test_quiet_session_times_out(self, channel):
        events = list(channel.subscribe(SESSION, timeout=0.05))
        assert [e.kind for e in events] == ["snapshot"]

    def test_unsubscribed_after_iteration(self, channel):
        list(channel.subscribe(SESSION, timeout=0.01))
        assert channel._subscribers == {}

    def test_poll_picks_up_updates_from_another_channel(self, channel, db_path):
        """A watcher in another process only sees the shared store."""
        events = iter(channel.subscribe(SESSION, timeout=5, poll_interval=0.01))
        next(events)

        other = ProgressChannel(db_path)
        other.update(SESSION, A.url, status="in_progress")
        other.update(SESSION, A.url, status="failed", error_message="HTTP 500 fetching https://ventura.gov/bids")

        rest = list(events)
        assert rest[-1].records[0].status == "failed"

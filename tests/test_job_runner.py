"""Tests for the per-source job runner."""

import pytest

from classifier import Classifier
from errors import FetchFailed
from job_runner import JobRunner, RetryPolicy
from models import SearchRequest, Source, WriteResult
from progress import ProgressChannel
from rate_limiter import RateLimiter
from writer import OpportunityWriter

SESSION = "batch-runner-1"
SOURCE = Source(url="https://ventura.gov/bids", name="Ventura", kind="local")
PAGE = "<html><body><h1>Open Bids</h1><p>Emergency ambulance services</p></body></html>"


class FailingWriter:
    def insert(self, candidate, source):
        return WriteResult(status="error", error="database is locked")


class TestJobRunner:

    @pytest.fixture
    def sleeps(self):
        return []

    @pytest.fixture
    def channel(self, db_path):
        channel = ProgressChannel(db_path)
        channel.create(SESSION, SOURCE)
        return channel

    @pytest.fixture
    def build(self, db_path, channel, sleeps):
        def _build(fetcher, client, writer=None, source_limit=None):
            return JobRunner(
                progress=channel,
                fetcher=fetcher,
                classifier=Classifier(client=client),
                writer=writer or OpportunityWriter(db_path),
                rate_limiter=RateLimiter(db_path),
                policy=RetryPolicy(max_retries=2, backoff_seconds=2.0),
                sleep=sleeps.append,
                db_path=db_path,
                source_limit=source_limit,
            )
        return _build

    def test_success(self, build, channel, fake_fetcher, fake_claude, make_record):
        client = fake_claude(replies=[[
            make_record("Emergency Ambulance Services", "County of Ventura"),
            make_record("Paramedic Training Academy", "County of Ventura", due="2099-05-20"),
        ]])
        runner = build(fake_fetcher(pages={SOURCE.url: PAGE}), client)

        outcome = runner.run(SESSION, SOURCE, "user-1")

        assert outcome.status == "completed"
        assert outcome.inserted == 2
        [record] = channel.snapshot(SESSION)
        assert record.status == "completed"
        assert record.opportunities_found == 2
        assert record.started_at is not None
        assert record.completed_at is not None

    def test_retry_exhaustion(self, build, channel, fake_fetcher, fake_claude, sleeps):
        """Two retries with backoff, then failed with the last error."""
        fetcher = fake_fetcher(pages={SOURCE.url: FetchFailed("HTTP 503 fetching page", status_code=503)})
        runner = build(fetcher, fake_claude())

        events = iter(channel.subscribe(SESSION, timeout=5))
        next(events)
        outcome = runner.run(SESSION, SOURCE, "user-1")
        statuses = ["pending"] + [e.records[0].status for e in events]

        assert statuses == [
            "pending", "in_progress", "retrying", "in_progress", "retrying", "in_progress", "failed",
        ]
        assert outcome.status == "failed"
        assert outcome.retry_count == 2
        assert sleeps == [2.0, 4.0]
        [record] = channel.snapshot(SESSION)
        assert record.retry_count == 2
        assert record.error_message == "HTTP 503 fetching page"
        assert len(fetcher.fetched) == 3

    def test_fetch_that_always_times_out(self, build, channel, fake_fetcher, fake_claude, sleeps):
        fetcher = fake_fetcher(pages={
            SOURCE.url: FetchFailed(f"timed out after 30.0s fetching {SOURCE.url}", kind="timeout"),
        })
        runner = build(fetcher, fake_claude())

        events = iter(channel.subscribe(SESSION, timeout=5))
        statuses = [r.status for r in next(events).records]
        outcome = runner.run(SESSION, SOURCE, "user-1")
        statuses += [e.records[0].status for e in events]

        assert statuses == [
            "pending", "in_progress", "retrying", "in_progress", "retrying", "in_progress", "failed",
        ]
        assert outcome.retry_count == 2
        assert sleeps == [2.0, 4.0]
        [record] = channel.snapshot(SESSION)
        assert record.retry_count == 2
        assert record.error_message.startswith("timeout:")

    def test_recovers_on_retry(self, build, channel, fake_fetcher, fake_claude, make_record):
        client = fake_claude(replies=[
            "Sorry, I can't help with that.",
            [make_record("Emergency Ambulance Services", "County of Ventura")],
        ])
        runner = build(fake_fetcher(pages={SOURCE.url: PAGE}), client)

        outcome = runner.run(SESSION, SOURCE, "user-1")

        assert outcome.status == "completed"
        assert outcome.retry_count == 1
        [record] = channel.snapshot(SESSION)
        assert record.status == "completed"
        assert record.error_message is None

    def test_rate_limited_source_is_not_fetched(self, build, channel, fake_fetcher, fake_claude):
        fetcher = fake_fetcher(pages={SOURCE.url: PAGE})
        runner = build(fetcher, fake_claude(), source_limit={
            "action": "scrape_source", "limit": 0, "window_seconds": 3600,
        })

        outcome = runner.run(SESSION, SOURCE, "user-1")

        assert outcome.status == "failed"
        assert outcome.error == "rate limit exceeded"
        assert outcome.retry_count == 0
        assert fetcher.fetched == []
        assert channel.snapshot(SESSION)[0].error_message == "rate limit exceeded"

    def test_untrusted_source_fails_without_retry(self, db_path, build, fake_fetcher, fake_claude, sleeps):
        source = Source(url="http://ventura.gov/bids", name="Ventura (http)")
        channel = ProgressChannel(db_path)
        channel.create("batch-runner-2", source)
        runner = build(fake_fetcher(), fake_claude())
        runner.progress = channel

        outcome = runner.run("batch-runner-2", source, "user-1")

        assert outcome.status == "failed"
        assert outcome.retry_count == 0
        assert "untrusted source" in outcome.error
        assert sleeps == []

    def test_incomplete_record_rejected_sibling_written(self, build, channel, fake_fetcher, fake_claude, make_record):
        """One record without proposalDue, one complete: a single opportunity lands."""
        incomplete = make_record("Billing Services", "County of Ventura")
        incomplete["keyDates"] = {}
        client = fake_claude(replies=[[incomplete, make_record("Emergency Ambulance Services", "County of Ventura")]])
        runner = build(fake_fetcher(pages={SOURCE.url: PAGE}), client)

        outcome = runner.run(SESSION, SOURCE, "user-1")

        assert outcome.status == "completed"
        assert outcome.inserted == 1
        assert outcome.rejected == 1
        assert channel.snapshot(SESSION)[0].opportunities_found == 1

    def test_write_errors_above_threshold_are_retried(self, build, fake_fetcher, fake_claude, make_record, sleeps):
        reply = [make_record("Emergency Ambulance Services", "County of Ventura")]
        client = fake_claude(replies=[reply, reply, reply])
        runner = build(fake_fetcher(pages={SOURCE.url: PAGE}), client, writer=FailingWriter())

        outcome = runner.run(SESSION, SOURCE, "user-1")

        assert outcome.status == "failed"
        assert outcome.write_errors == 1
        assert "writes failed" in outcome.error
        assert len(sleeps) == 2

    def test_history_recorded(self, db_path, build, fake_fetcher, fake_claude, make_record):
        from database import get_active_scraped_sources, get_history

        client = fake_claude(replies=[[make_record("Emergency Ambulance Services", "County of Ventura")]])
        build(fake_fetcher(pages={SOURCE.url: PAGE}), client).run(SESSION, SOURCE, "user-1")

        [entry] = get_history(SESSION, db_path)
        assert entry["status"] == "completed"
        assert entry["opportunities_inserted"] == 1
        assert entry["actor_id"] == "user-1"
        assert [s["source_url"] for s in get_active_scraped_sources(db_path)] == [SOURCE.url]


class TestRetryPolicy:

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_retries=3, backoff_seconds=1.5)
        assert [policy.delay(i) for i in range(3)] == [1.5, 3.0, 6.0]


class TestSearchRun:

    def test_completed_search_remembers_source(self, db_path, fake_fetcher, fake_claude, monkeypatch):
        from database import get_active_scraped_sources
        from scrapers.highergov import search_source

        monkeypatch.setattr("scrapers.highergov.HIGHERGOV_API_KEY", "test-key")
        source = search_source()
        channel = ProgressChannel(db_path)
        channel.create("search-runner-1", source)
        runner = JobRunner(
            progress=channel,
            fetcher=fake_fetcher(api={"results": []}),
            classifier=Classifier(client=fake_claude()),
            writer=OpportunityWriter(db_path),
            rate_limiter=RateLimiter(db_path),
            sleep=lambda seconds: None,
            db_path=db_path,
        )

        outcome = runner.run_search("search-runner-1", source, "user-1", SearchRequest(source_type="primary"))

        assert outcome.status == "completed"
        assert [s["source_url"] for s in get_active_scraped_sources(db_path)] == [source.url]

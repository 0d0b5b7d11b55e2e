"""
orchestrator.py — Runs every source of one scrape session and aggregates the result.
Per-source detail stays in the Progress Channel; the caller gets a summary.
"""

import random
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Optional, Union

import database
from classifier import Classifier
from config import GLOBAL_SOURCES, ORCHESTRATOR, RATE_LIMITS
from errors import InvalidRequest, RateLimited, describe
from job_runner import JobRunner, RetryPolicy
from models import (
    FAILED,
    IN_PROGRESS,
    PENDING,
    RETRYING,
    JobOutcome,
    ScrapeSession,
    SearchRequest,
    SearchSyncSummary,
    SessionSummary,
    Source,
    utcnow_iso,
)
from monitoring import get_logger, log_session_summary, log_source_failure
from progress import ProgressChannel
from rate_limiter import RateLimiter
from scrapers.base import SourceFetcher
from scrapers.highergov import search_source
from writer import OpportunityWriter

logger = get_logger("orchestrator")


def new_session_id(prefix: str = "batch") -> str:
    """Generate a session id like ``batch-1718030000000-k3j9x2``."""
    suffix = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


class BatchOrchestrator:
    """Entry point for batch scrapes and search-API syncs."""

    def __init__(
        self,
        db_path: Optional[Path] = None,
        progress: Optional[ProgressChannel] = None,
        fetcher: Optional[SourceFetcher] = None,
        classifier: Optional[Classifier] = None,
        writer: Optional[OpportunityWriter] = None,
        rate_limiter: Optional[RateLimiter] = None,
        policy: Optional[RetryPolicy] = None,
        workers: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db_path = db_path
        self.progress = progress or ProgressChannel(db_path)
        self.fetcher = fetcher or SourceFetcher()
        self.classifier = classifier or Classifier()
        self.writer = writer or OpportunityWriter(db_path)
        self.rate_limiter = rate_limiter or RateLimiter(db_path)
        self.workers = ORCHESTRATOR.get("workers", 3) if workers is None else workers
        self.delay_between_sources = ORCHESTRATOR.get("delay_between_sources", 0.0)
        self.sleep = sleep
        self.runner = JobRunner(
            progress=self.progress,
            fetcher=self.fetcher,
            classifier=self.classifier,
            writer=self.writer,
            rate_limiter=self.rate_limiter,
            policy=policy,
            sleep=sleep,
            db_path=db_path,
        )

    # --- Batch scrape ---

    def start_batch(self, session_id: str, sources: list[Union[Source, dict]], actor_id: str) -> SessionSummary:
        """
        Scrape every source for a new session.

        Raises InvalidRequest or DuplicateSession before any work starts.
        Everything after that is reported in the summary, never raised.
        """
        session = self._open_session(session_id, sources, actor_id)
        summary = SessionSummary(session_id=session_id)
        return self._execute(
            session, actor_id, summary,
            lambda source: self.runner.run(session.session_id, source, actor_id),
        )

    # --- Search-API sync ---

    def start_search_sync(
        self,
        request: Union[SearchRequest, dict],
        actor_id: str,
        session_id: Optional[str] = None,
    ) -> SearchSyncSummary:
        """Pull the structured search API as a one-source session."""
        if isinstance(request, dict):
            request = SearchRequest.from_dict(request)
        session_id = session_id or new_session_id("search")
        session = self._open_session(session_id, [search_source()], actor_id)
        summary = SearchSyncSummary(session_id=session_id)
        return self._execute(
            session, actor_id, summary,
            lambda source: self.runner.run_search(session.session_id, source, actor_id, request),
        )

    # --- Daily batch ---

    def daily_sources(self) -> list[Source]:
        """
        Active sources from earlier runs, least recently scraped first, then
        any configured global source not already among them. The search API
        is synced separately and never scraped as a page.
        """
        global_urls = {entry["url"] for entry in GLOBAL_SOURCES}
        skip = {search_source().url}
        sources = {}
        for row in database.get_active_scraped_sources(self.db_path):
            if row["source_url"] in skip:
                continue
            sources[row["source_url"]] = Source(
                url=row["source_url"],
                name=row["source_name"],
                kind="global" if row["source_url"] in global_urls else "local",
            )
        for entry in GLOBAL_SOURCES:
            source = Source.from_dict({**entry, "kind": "global"})
            sources.setdefault(source.url, source)
        return list(sources.values())

    def start_daily(self, actor_id: str = "scheduler") -> SessionSummary:
        return self.start_batch(new_session_id("batch"), self.daily_sources(), actor_id)

    # --- Internals ---

    def _open_session(self, session_id: str, sources: list, actor_id: str) -> ScrapeSession:
        if not isinstance(session_id, str) or not session_id.strip():
            raise InvalidRequest("session_id is required")
        if not isinstance(actor_id, str) or not actor_id.strip():
            raise InvalidRequest("actor_id is required")
        if sources is None or not isinstance(sources, (list, tuple)):
            raise InvalidRequest("sources must be a list")

        unique: dict[str, Source] = {}
        for entry in sources:
            source = entry if isinstance(entry, Source) else Source.from_dict(entry)
            unique.setdefault(source.url, source)

        session = ScrapeSession(session_id=session_id, sources=list(unique.values()))
        database.create_session(session, self.db_path)

        for source in session.sources:
            self.progress.create(session_id, source)

        logger.info(f"Session {session_id}: {len(session.sources)} sources for {actor_id}")
        return session

    def _execute(self, session: ScrapeSession, actor_id: str, summary: SessionSummary, run_one) -> SessionSummary:
        started = time.time()

        if session.sources:
            limit = RATE_LIMITS["batch"]
            if not self.rate_limiter.allow(actor_id, limit["action"], limit["limit"], limit["window_seconds"]):
                return self._refuse(session, summary, started)

        if self.workers <= 1 or len(session.sources) <= 1:
            for i, source in enumerate(session.sources):
                if i and self.delay_between_sources:
                    self.sleep(self.delay_between_sources)
                summary.add(self._run_guarded(session.session_id, source, run_one))
        else:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                future_to_source = {
                    executor.submit(self._run_guarded, session.session_id, source, run_one): source
                    for source in session.sources
                }
                for future in as_completed(future_to_source):
                    summary.add(future.result())

        log_session_summary(logger, session.session_id, summary, time.time() - started)
        return summary

    def _run_guarded(self, session_id: str, source: Source, run_one) -> JobOutcome:
        """Run one source; anything unexpected becomes a failed record."""
        try:
            return run_one(source)
        except Exception as e:
            log_source_failure(logger, source.name, e)
            error = describe(e)
            self._force_failed(session_id, source, error)
            return JobOutcome(source=source, status=FAILED, error=error)

    def _force_failed(self, session_id: str, source: Source, error: str):
        record = next((r for r in self.progress.snapshot(session_id) if r.source_url == source.url), None)
        if record is not None and record.is_terminal:
            return
        try:
            if record is not None and record.status == PENDING:
                self.progress.update(session_id, source.url, status=IN_PROGRESS, started_at=utcnow_iso())
            elif record is not None and record.status == RETRYING:
                self.progress.update(session_id, source.url, status=IN_PROGRESS)
            self.progress.update(
                session_id, source.url, status=FAILED, error_message=error, completed_at=utcnow_iso()
            )
        except Exception as e:
            logger.error(f"Could not mark {source.url} failed in session {session_id}: {e}")

    def _refuse(self, session: ScrapeSession, summary: SessionSummary, started: float) -> SessionSummary:
        """Batch-level rate limit hit: fail every record without touching any source."""
        error = str(RateLimited())
        summary.rate_limited = True
        for source in session.sources:
            self.progress.update(session.session_id, source.url, status=IN_PROGRESS, started_at=utcnow_iso())
            self.progress.update(
                session.session_id, source.url,
                status=FAILED, error_message=error, completed_at=utcnow_iso(),
            )
            summary.add(JobOutcome(source=source, status=FAILED, error=error))
        logger.warning(f"Session {session.session_id} refused: {error}")
        log_session_summary(logger, session.session_id, summary, time.time() - started)
        return summary

    def close(self):
        self.fetcher.close()

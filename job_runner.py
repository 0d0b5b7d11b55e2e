"""
job_runner.py — Drives one source through fetch → classify → write.

Every status change goes to the Progress Channel as it happens. Transient
failures (fetch, classification, too many write errors) are retried with
exponential backoff; rate-limit denials and untrusted sources are not.
"""

import sqlite3
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import database
from classifier import Classifier
from config import RATE_LIMITS, RETRY_POLICY, WRITER
from errors import (
    ClassificationFailed,
    FetchFailed,
    RateLimited,
    UntrustedSource,
    WriteFailed,
    describe,
)
from models import (
    COMPLETED,
    FAILED,
    IN_PROGRESS,
    RETRYING,
    Candidate,
    JobOutcome,
    SearchRequest,
    Source,
    utcnow_iso,
)
from monitoring import get_logger, log_source_failure, log_source_success
from progress import ProgressChannel
from rate_limiter import RateLimiter
from scrapers.base import SourceFetcher, extract_text
from scrapers.highergov import HigherGovClient, record_for_classifier, to_candidate
from writer import OpportunityWriter

logger = get_logger("job_runner")

RETRYABLE = (FetchFailed, ClassificationFailed, WriteFailed)


@dataclass
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 2.0

    @classmethod
    def from_config(cls) -> "RetryPolicy":
        return cls(
            max_retries=RETRY_POLICY.get("max_retries", 2),
            backoff_seconds=RETRY_POLICY.get("backoff_seconds", 2.0),
        )

    def delay(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (0-based)."""
        return self.backoff_seconds * 2 ** attempt


@dataclass
class Harvest:
    """Candidates gathered from one source in one attempt."""
    candidates: list[Candidate] = field(default_factory=list)
    rejected: int = 0
    fetched: int = 0
    classified: int = 0


class JobRunner:
    """Runs a single source for a session."""

    def __init__(
        self,
        progress: ProgressChannel,
        fetcher: SourceFetcher,
        classifier: Classifier,
        writer: OpportunityWriter,
        rate_limiter: RateLimiter,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        db_path: Optional[Path] = None,
        source_limit: Optional[dict] = None,
        max_write_error_rate: Optional[float] = None,
    ):
        self.progress = progress
        self.fetcher = fetcher
        self.classifier = classifier
        self.writer = writer
        self.rate_limiter = rate_limiter
        self.policy = policy or RetryPolicy.from_config()
        self.sleep = sleep
        self.db_path = db_path
        self.source_limit = source_limit or RATE_LIMITS["source"]
        self.max_write_error_rate = (
            WRITER.get("max_write_error_rate", 0.5) if max_write_error_rate is None else max_write_error_rate
        )

    def run(self, session_id: str, source: Source, actor_id: str) -> JobOutcome:
        """Scrape one page source: fetch the page, extract candidates, write them."""
        outcome = self._run(session_id, source, actor_id, self._harvest_page)
        if outcome.status == COMPLETED:
            self._remember_source(source)
        return outcome

    def run_search(self, session_id: str, source: Source, actor_id: str, request: SearchRequest) -> JobOutcome:
        """Pull the structured search API and keep the records judged relevant."""
        client = HigherGovClient(self.fetcher)
        outcome = self._run(session_id, source, actor_id, lambda s: self._harvest_search(client, request))
        if outcome.status == COMPLETED:
            self._remember_source(source)
        return outcome

    # --- Harvest strategies ---

    def _harvest_page(self, source: Source) -> Harvest:
        html = self.fetcher.fetch(source.url)
        content = extract_text(html)
        hints = {"source_name": source.name, "source_url": source.url, "county": source.county, "state": source.state}
        result = self.classifier.extract(content, hints)
        return Harvest(candidates=result.candidates, rejected=result.rejected)

    def _harvest_search(self, client: HigherGovClient, request: SearchRequest) -> Harvest:
        records = client.search(request)
        verdicts = self.classifier.classify_relevance([record_for_classifier(r) for r in records])
        candidates = [to_candidate(r, v) for r, v in zip(records, verdicts) if v.is_relevant]
        return Harvest(candidates=candidates, fetched=len(records), classified=len(candidates))

    # --- Lifecycle ---

    def _run(self, session_id: str, source: Source, actor_id: str, harvest: Callable[[Source], Harvest]) -> JobOutcome:
        outcome = JobOutcome(source=source, status=IN_PROGRESS)
        started_at = utcnow_iso()
        self.progress.update(
            session_id, source.url, source_name=source.name, status=IN_PROGRESS, started_at=started_at
        )

        limit = self.source_limit
        if not self.rate_limiter.allow(actor_id, limit["action"], limit["limit"], limit["window_seconds"]):
            return self._fail(session_id, source, outcome, RateLimited(), started_at, actor_id)

        attempt = 0
        while True:
            try:
                result = harvest(source)
                self._write_all(result, source, outcome)
                break
            except UntrustedSource as e:
                return self._fail(session_id, source, outcome, e, started_at, actor_id)
            except RETRYABLE as e:
                if attempt >= self.policy.max_retries:
                    return self._fail(session_id, source, outcome, e, started_at, actor_id)
                delay = self.policy.delay(attempt)
                attempt += 1
                outcome.retry_count = attempt
                logger.warning(
                    f"{source.name}: {describe(e)} (retry {attempt}/{self.policy.max_retries} in {delay:.1f}s)"
                )
                self.progress.update(
                    session_id, source.url,
                    status=RETRYING,
                    retry_count=attempt,
                    error_message=describe(e),
                    opportunities_found=outcome.inserted,
                )
                self.sleep(delay)
                self.progress.update(session_id, source.url, status=IN_PROGRESS)

        outcome.status = COMPLETED
        self.progress.update(
            session_id, source.url,
            status=COMPLETED,
            opportunities_found=outcome.inserted,
            error_message=None,
            completed_at=utcnow_iso(),
        )
        log_source_success(logger, source.name, outcome.inserted, outcome.retry_count)
        self._log_history(session_id, source, outcome, started_at, actor_id)
        return outcome

    def _write_all(self, result: Harvest, source: Source, outcome: JobOutcome):
        """
        Write every candidate independently. Inserted counts carry across
        attempts; the other counts describe the latest attempt only.
        Raises WriteFailed if too many writes errored.
        """
        outcome.fetched = result.fetched
        outcome.classified = result.classified
        outcome.rejected = result.rejected
        outcome.duplicates = 0
        outcome.write_errors = 0

        for candidate in result.candidates:
            written = self.writer.insert(candidate, source)
            if written.status == "inserted":
                outcome.inserted += 1
                outcome.inserted_ids.append(written.opportunity_id)
            elif written.status == "duplicate":
                outcome.duplicates += 1
            elif written.status == "rejected":
                outcome.rejected += 1
            else:
                outcome.write_errors += 1

        total = len(result.candidates)
        if total and outcome.write_errors / total > self.max_write_error_rate:
            raise WriteFailed(f"{outcome.write_errors} of {total} writes failed")

    def _fail(
        self,
        session_id: str,
        source: Source,
        outcome: JobOutcome,
        error: Exception,
        started_at: str,
        actor_id: str,
    ) -> JobOutcome:
        outcome.status = FAILED
        outcome.error = describe(error)
        self.progress.update(
            session_id, source.url,
            status=FAILED,
            error_message=outcome.error,
            retry_count=outcome.retry_count,
            opportunities_found=outcome.inserted,
            completed_at=utcnow_iso(),
        )
        log_source_failure(logger, source.name, error)
        self._log_history(session_id, source, outcome, started_at, actor_id)
        return outcome

    # --- Bookkeeping ---

    def _log_history(self, session_id: str, source: Source, outcome: JobOutcome, started_at: str, actor_id: str):
        try:
            database.log_history(
                session_id=session_id,
                source_url=source.url,
                source_name=source.name,
                source_type=source.kind,
                started_at=started_at,
                status=outcome.status,
                opportunities_found=outcome.inserted + outcome.duplicates,
                opportunities_inserted=outcome.inserted,
                error_message=outcome.error,
                actor_id=actor_id,
                metadata={
                    "retries": outcome.retry_count,
                    "rejected": outcome.rejected,
                    "write_errors": outcome.write_errors,
                    "fetched": outcome.fetched,
                    "classified": outcome.classified,
                },
                db_path=self.db_path,
            )
        except sqlite3.Error as e:
            logger.error(f"Could not record scraping history for {source.name}: {e}")

    def _remember_source(self, source: Source):
        try:
            database.upsert_scraped_source(source.url, source.name, self.db_path)
        except sqlite3.Error as e:
            logger.error(f"Could not record scraped source {source.url}: {e}")

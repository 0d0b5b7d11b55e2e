"""
models.py — Data models for the Opportunity Scout pipeline.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Optional

from errors import InvalidRequest


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# --- Enumerations ---

SOURCE_KINDS = ("local", "global", "custom")

PENDING = "pending"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
FAILED = "failed"
RETRYING = "retrying"

PROGRESS_STATUSES = (PENDING, IN_PROGRESS, COMPLETED, FAILED, RETRYING)
TERMINAL_STATUSES = (COMPLETED, FAILED)

ALLOWED_TRANSITIONS = {
    PENDING: {IN_PROGRESS},
    IN_PROGRESS: {COMPLETED, FAILED, RETRYING},
    RETRYING: {IN_PROGRESS},
    FAILED: {RETRYING},
    COMPLETED: set(),
}

PRIORITIES = ("high", "medium", "low")
SEARCH_SOURCE_TYPES = ("primary", "secondary", "all")


@dataclass(frozen=True)
class Source:
    """One URL/API target in a batch. Immutable for the life of the batch."""
    url: str
    name: str
    kind: str = "custom"
    county: Optional[str] = None
    state: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "Source":
        url = (data.get("url") or "").strip()
        if not url:
            raise InvalidRequest("source url is required")
        kind = data.get("kind") or data.get("type") or "custom"
        if kind not in SOURCE_KINDS:
            raise InvalidRequest(f"source kind must be one of {', '.join(SOURCE_KINDS)}: got {kind!r}")
        name = (data.get("name") or "").strip() or _hostname(url)
        return cls(url=url, name=name, kind=kind, county=data.get("county"), state=data.get("state"))


def _hostname(url: str) -> str:
    from urllib.parse import urlparse
    return urlparse(url).hostname or url


@dataclass
class ScrapeSession:
    """One batch invocation. Never mutated after creation."""
    session_id: str
    sources: list[Source]
    created_at: str = field(default_factory=utcnow_iso)


@dataclass
class ProgressRecord:
    """Durable per-source status row for a session."""
    session_id: str
    source_name: str
    source_url: str
    status: str = PENDING
    opportunities_found: int = 0
    error_message: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_row(cls, row) -> "ProgressRecord":
        return cls(
            session_id=row["session_id"],
            source_name=row["source_name"],
            source_url=row["source_url"],
            status=row["status"],
            opportunities_found=row["opportunities_found"] or 0,
            error_message=row["error_message"],
            retry_count=row["retry_count"] or 0,
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Geography:
    state: Optional[str] = None
    county: Optional[str] = None
    city: Optional[str] = None


@dataclass
class KeyDates:
    proposal_due: Optional[str] = None
    issue_date: Optional[str] = None
    questions_due: Optional[str] = None
    pre_bid_meeting: Optional[str] = None


@dataclass
class Candidate:
    """Unvalidated record proposed by the classifier. Lives only between classify and write."""
    title: str
    agency: str
    key_dates: KeyDates
    geography: Geography = field(default_factory=Geography)
    service_tags: list[str] = field(default_factory=list)
    contract_type: Optional[str] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    term_length: Optional[str] = None
    link: Optional[str] = None
    summary: str = ""
    priority: Optional[str] = None
    source: Optional[str] = None
    recommended_action: Optional[str] = None


@dataclass
class Opportunity:
    """Accepted, persisted form of a candidate. Owned by the CRUD app once written."""
    title: str
    agency: str
    contract_type: str
    proposal_due: str
    link: str
    summary: str
    source: str
    geography_state: Optional[str] = None
    geography_county: Optional[str] = None
    geography_city: Optional[str] = None
    service_tags: list[str] = field(default_factory=list)
    estimated_value_min: Optional[float] = None
    estimated_value_max: Optional[float] = None
    issue_date: Optional[str] = None
    questions_due: Optional[str] = None
    pre_bid_meeting: Optional[str] = None
    term_length: Optional[str] = None
    priority: str = "medium"
    status: str = "new"
    recommended_action: Optional[str] = None
    fuzzy_key: Optional[str] = None
    created_by: Optional[str] = None
    created_at: str = field(default_factory=utcnow_iso)
    id: Optional[int] = None


@dataclass
class WriteResult:
    """Outcome of writing one candidate."""
    status: str  # "inserted", "duplicate", "rejected", "error"
    opportunity_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ExtractionResult:
    """Candidates that passed shape validation plus the count dropped."""
    candidates: list[Candidate] = field(default_factory=list)
    rejected: int = 0

    def __iter__(self):
        return iter(self.candidates)

    def __len__(self):
        return len(self.candidates)


@dataclass
class RelevanceVerdict:
    """Per-record answer to the domain-match question (search-API variant)."""
    is_relevant: bool
    service_tags: list[str] = field(default_factory=list)
    priority: Optional[str] = None
    reasoning: Optional[str] = None


@dataclass
class JobOutcome:
    """What one Job Runner reports back to the orchestrator."""
    source: Source
    status: str
    inserted: int = 0
    duplicates: int = 0
    rejected: int = 0
    write_errors: int = 0
    retry_count: int = 0
    error: Optional[str] = None
    fetched: int = 0
    classified: int = 0
    inserted_ids: list[int] = field(default_factory=list)


@dataclass
class SessionSummary:
    """Aggregate result returned to the batch caller."""
    session_id: str
    sources_succeeded: int = 0
    sources_failed: int = 0
    total_opportunities_inserted: int = 0
    candidates_rejected: int = 0
    write_errors: int = 0
    duplicates: int = 0
    rate_limited: bool = False
    errors: list[str] = field(default_factory=list)
    per_source: list[dict] = field(default_factory=list)
    inserted_ids: list[int] = field(default_factory=list)

    @property
    def status_code(self) -> int:
        return 429 if self.rate_limited else 200

    def add(self, outcome: JobOutcome):
        if outcome.status == COMPLETED:
            self.sources_succeeded += 1
        else:
            self.sources_failed += 1
            self.errors.append(f"{outcome.source.name}: {outcome.error or 'failed'}")
        self.total_opportunities_inserted += outcome.inserted
        self.candidates_rejected += outcome.rejected
        self.write_errors += outcome.write_errors
        self.duplicates += outcome.duplicates
        self.inserted_ids.extend(outcome.inserted_ids)
        self.per_source.append({
            "name": outcome.source.name,
            "url": outcome.source.url,
            "status": outcome.status,
            "opportunities": outcome.inserted,
        })

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "sources_succeeded": self.sources_succeeded,
            "sources_failed": self.sources_failed,
            "total_opportunities_inserted": self.total_opportunities_inserted,
            "candidates_rejected": self.candidates_rejected,
            "write_errors": self.write_errors,
            "rate_limited": self.rate_limited,
        }


@dataclass
class SearchSyncSummary(SessionSummary):
    """Session summary for the search-API variant, with its record counts."""
    fetched: int = 0
    classified: int = 0
    inserted: int = 0
    skipped: int = 0

    def add(self, outcome: JobOutcome):
        super().add(outcome)
        self.fetched += outcome.fetched
        self.classified += outcome.classified
        self.inserted += outcome.inserted
        self.skipped += max(outcome.fetched - outcome.classified, 0)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "fetched": self.fetched,
            "classified": self.classified,
            "inserted": self.inserted,
            "skipped": self.skipped,
        })
        return data


@dataclass
class SearchRequest:
    """Validated input for the structured search-API variant."""
    days_back: int = 7
    search_keywords: Optional[str] = None
    search_id: Optional[str] = None
    source_type: str = "all"

    @classmethod
    def from_dict(cls, data: dict) -> "SearchRequest":
        errors = []

        days_back = data.get("days_back", 7)
        if isinstance(days_back, bool) or not isinstance(days_back, int):
            errors.append("days_back: must be an integer")
        elif not 1 <= days_back <= 90:
            errors.append("days_back: must be between 1 and 90")

        keywords = data.get("search_keywords")
        if keywords is not None:
            if not isinstance(keywords, str):
                errors.append("search_keywords: must be a string")
            else:
                keywords = keywords.strip()
                if len(keywords) > 500:
                    errors.append("search_keywords: must be less than 500 characters")
                keywords = keywords or None

        source_type = data.get("source_type", "all")
        if source_type not in SEARCH_SOURCE_TYPES:
            errors.append(f"source_type: must be one of {', '.join(SEARCH_SOURCE_TYPES)}")

        if errors:
            raise InvalidRequest("; ".join(errors))

        return cls(
            days_back=days_back,
            search_keywords=keywords,
            search_id=data.get("search_id") or None,
            source_type=source_type,
        )

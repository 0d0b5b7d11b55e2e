"""
writer.py — Validate, normalize and persist candidate opportunities.
Each candidate is written on its own; one bad record never blocks its siblings.
"""

import sqlite3
import threading
from datetime import date
from pathlib import Path
from typing import Optional

from database import insert_opportunity
from deduplication import find_duplicate, generate_fuzzy_key
from errors import ValidationFailed, WriteFailed
from models import Candidate, Opportunity, Source, WriteResult
from monitoring import get_logger
from validation import (
    compute_priority,
    enrich_geography,
    normalize_contract_type,
    normalize_dates,
    normalize_service_tags,
    validate_candidate,
)

logger = get_logger("writer")

# Dedup check and insert must not interleave between concurrent sources.
_write_lock = threading.Lock()


class OpportunityWriter:
    """Turns candidates into stored opportunities."""

    def __init__(self, db_path: Optional[Path] = None, created_by: Optional[str] = None, today: Optional[date] = None):
        self.db_path = db_path
        self.created_by = created_by
        self.today = today

    def build(self, candidate: Candidate, source: Source) -> Opportunity:
        """Validate and normalize a candidate. Raises ValidationFailed."""
        proposal_due = validate_candidate(candidate)
        geography = enrich_geography(candidate.geography, source, candidate.agency)
        dates = normalize_dates(candidate)

        title = candidate.title.strip()
        agency = candidate.agency.strip()
        return Opportunity(
            title=title,
            agency=agency,
            contract_type=normalize_contract_type(candidate.contract_type),
            proposal_due=proposal_due.isoformat(),
            link=candidate.link or source.url,
            summary=candidate.summary or "No summary available",
            source=candidate.source or source.name,
            geography_state=geography.state,
            geography_county=geography.county,
            geography_city=geography.city,
            service_tags=normalize_service_tags(candidate.service_tags),
            estimated_value_min=candidate.value_min,
            estimated_value_max=candidate.value_max,
            issue_date=dates["issue_date"],
            questions_due=dates["questions_due"],
            pre_bid_meeting=dates["pre_bid_meeting"],
            term_length=candidate.term_length,
            priority=compute_priority(proposal_due, candidate.value_max, self.today),
            recommended_action=candidate.recommended_action,
            fuzzy_key=generate_fuzzy_key(agency, title, proposal_due.isoformat()),
            created_by=self.created_by,
        )

    def insert(self, candidate: Candidate, source: Source) -> WriteResult:
        """Write one candidate. Never raises; the outcome is in the result."""
        try:
            opp = self.build(candidate, source)
        except ValidationFailed as e:
            return WriteResult(status="rejected", error=str(e))

        # A link equal to the listing page is shared by every opportunity on it.
        specific_link = opp.link if opp.link != source.url else None

        try:
            with _write_lock:
                existing_id = find_duplicate(opp.fuzzy_key, specific_link, self.db_path)
                if existing_id is not None:
                    logger.debug(f"Duplicate of #{existing_id}: {opp.agency} - {opp.title}")
                    return WriteResult(status="duplicate", opportunity_id=existing_id)
                opp.id = insert_opportunity(opp, self.db_path)
        except sqlite3.Error as e:
            error = WriteFailed(f"could not store {opp.title!r}: {e}")
            logger.error(str(error))
            return WriteResult(status="error", error=str(error))

        logger.info(f"Stored opportunity #{opp.id}: {opp.agency} - {opp.title} (due {opp.proposal_due}, {opp.priority})")
        return WriteResult(status="inserted", opportunity_id=opp.id)

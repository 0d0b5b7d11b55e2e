"""
validation.py — Hard pass/fail checks and normalization applied before a
candidate is written. A candidate that fails any required-field check is
rejected on its own; siblings from the same source are unaffected.
"""

import re
from datetime import date, datetime
from typing import Optional
from urllib.parse import urlparse

from config import CONTRACT_TYPES, DEFAULT_CONTRACT_TYPE, PRIORITY_THRESHOLDS, SERVICE_TAGS
from errors import ValidationFailed
from models import Candidate, Geography, Source
from monitoring import get_logger

logger = get_logger("validation")

STATE_CODES = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR", "california": "CA",
    "colorado": "CO", "connecticut": "CT", "delaware": "DE", "district of columbia": "DC",
    "florida": "FL", "georgia": "GA", "hawaii": "HI", "idaho": "ID", "illinois": "IL",
    "indiana": "IN", "iowa": "IA", "kansas": "KS", "kentucky": "KY", "louisiana": "LA",
    "maine": "ME", "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE", "nevada": "NV",
    "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM", "new york": "NY",
    "north carolina": "NC", "north dakota": "ND", "ohio": "OH", "oklahoma": "OK", "oregon": "OR",
    "pennsylvania": "PA", "rhode island": "RI", "south carolina": "SC", "south dakota": "SD",
    "tennessee": "TN", "texas": "TX", "utah": "UT", "vermont": "VT", "virginia": "VA",
    "washington": "WA", "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}
VALID_STATE_CODES = set(STATE_CODES.values())

# Loose phrasings the model and the search API use for each contract type.
# Checked in order, so more specific phrases come first.
CONTRACT_TYPE_ALIASES = {
    "presolicitation": "Pre-solicitation",
    "pre-solicitation": "Pre-solicitation",
    "sources sought": "Sources Sought",
    "sole source": "Sole-Source Notice",
    "sole-source": "Sole-Source Notice",
    "justification": "Sole-Source Notice",
    "request for quote": "RFQ",
    "request for quotation": "RFQ",
    "request for qualifications": "RFQ",
    "request for information": "RFI",
    "request for proposal": "RFP",
    "solicitation": "RFP",
}

DATE_FORMATS = [
    "%Y-%m-%d",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
    "%Y-%m-%dT%H:%M:%S.%f",
    "%Y-%m-%dT%H:%M:%S.%fZ",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y",
    "%m/%d/%y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%b. %d, %Y",
    "%d %B %Y",
]


def parse_date(value) -> Optional[date]:
    """Try to parse a date string in the formats procurement portals use."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = str(value).strip()
    if not text:
        return None

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    except ValueError:
        pass

    # Drop trailing times like "2:00 PM PST" before trying the date formats
    text = re.sub(r"\s+(?:at\s+)?\d{1,2}:\d{2}.*$", "", text, flags=re.IGNORECASE).strip()

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _normalize_date(value) -> Optional[str]:
    parsed = parse_date(value)
    return parsed.isoformat() if parsed else None


def _squash(value: str) -> str:
    return re.sub(r"[^a-z0-9]", "", value.lower())


_TAG_LOOKUP = {_squash(tag): tag for tag in SERVICE_TAGS}


def normalize_service_tags(tags: list[str]) -> list[str]:
    """Map tags onto the fixed enumeration, dropping unknown ones and duplicates."""
    result = []
    for tag in tags or []:
        canonical = _TAG_LOOKUP.get(_squash(str(tag)))
        if canonical and canonical not in result:
            result.append(canonical)
    return result


def normalize_contract_type(value: Optional[str]) -> str:
    """Map a contract type onto the enumeration, defaulting to RFP."""
    if not value:
        return DEFAULT_CONTRACT_TYPE
    for contract_type in CONTRACT_TYPES:
        if value.strip().lower() == contract_type.lower():
            return contract_type
    lowered = value.lower()
    for phrase, contract_type in CONTRACT_TYPE_ALIASES.items():
        if phrase in lowered:
            return contract_type
    for contract_type in CONTRACT_TYPES:
        if re.search(rf"\b{re.escape(contract_type.lower())}\b", lowered):
            return contract_type
    return DEFAULT_CONTRACT_TYPE


def normalize_state(value: Optional[str]) -> Optional[str]:
    """Return a two-letter state code, or None if the value isn't a US state."""
    if not value:
        return None
    text = value.strip()
    if text.upper() in VALID_STATE_CODES:
        return text.upper()
    return STATE_CODES.get(text.lower().replace("state of ", "").strip())


def _state_from_url(url: str) -> Optional[str]:
    """Agency hosts often carry the state: caleprocure.ca.gov, camisvr.co.la.ca.us."""
    host = (urlparse(url).hostname or "").lower()
    parts = host.split(".")
    if len(parts) >= 3 and parts[-1] in ("gov", "us"):
        candidate = parts[-2].upper()
        if candidate in VALID_STATE_CODES:
            return candidate
    return None


def _state_from_text(text: str) -> Optional[str]:
    lowered = (text or "").lower()
    for name, code in STATE_CODES.items():
        if re.search(rf"\b{name}\b", lowered):
            return code
    return None


def enrich_geography(geography: Geography, source: Source, agency: str = "") -> Geography:
    """
    Normalize the state and fill gaps from the source: its configured
    county/state, then the agency host, then a state named in the agency.
    """
    state = (
        normalize_state(geography.state)
        or normalize_state(source.state)
        or _state_from_url(source.url)
        or _state_from_text(agency)
    )
    county = geography.county or source.county
    if county:
        county = re.sub(r"\s+county$", "", county.strip(), flags=re.IGNORECASE)
    return Geography(state=state, county=county, city=geography.city)


def compute_priority(proposal_due: date, value_max: Optional[float] = None, today: Optional[date] = None) -> str:
    """
    high: closing within high_days or worth at least high_value.
    medium: closing within medium_days or worth at least medium_value.
    low: everything else.
    """
    today = today or date.today()
    days_left = (proposal_due - today).days
    value = value_max or 0

    if days_left <= PRIORITY_THRESHOLDS["high_days"] or value >= PRIORITY_THRESHOLDS["high_value"]:
        return "high"
    if days_left <= PRIORITY_THRESHOLDS["medium_days"] or value >= PRIORITY_THRESHOLDS["medium_value"]:
        return "medium"
    return "low"


def validate_candidate(candidate: Candidate) -> date:
    """
    Check required fields. Returns the parsed proposal-due date.
    Raises ValidationFailed listing every problem found.
    """
    problems = []
    if not (candidate.title or "").strip():
        problems.append("missing title")
    if not (candidate.agency or "").strip():
        problems.append("missing agency")

    proposal_due = parse_date(candidate.key_dates.proposal_due)
    if candidate.key_dates.proposal_due is None:
        problems.append("missing proposal due date")
    elif proposal_due is None:
        problems.append(f"unparseable proposal due date {candidate.key_dates.proposal_due!r}")

    if problems:
        message = f"{candidate.title or '(untitled)'}: {', '.join(problems)}"
        logger.debug(f"Rejected candidate {message}")
        raise ValidationFailed(message)
    return proposal_due


def normalize_dates(candidate: Candidate) -> dict:
    """ISO-format the optional key dates; unparseable ones become None."""
    return {
        "issue_date": _normalize_date(candidate.key_dates.issue_date),
        "questions_due": _normalize_date(candidate.key_dates.questions_due),
        "pre_bid_meeting": _normalize_date(candidate.key_dates.pre_bid_meeting),
    }


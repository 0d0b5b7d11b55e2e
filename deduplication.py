"""
deduplication.py — Duplicate detection for opportunities across sources and re-runs.
Uses rapidfuzz for intelligent string matching.
"""

import re
from pathlib import Path
from typing import Optional

from rapidfuzz import fuzz

from config import WRITER
from database import find_by_link, get_fuzzy_keys
from monitoring import get_logger

logger = get_logger("deduplication")

# Words to strip when normalizing agency names
AGENCY_NOISE = [
    "the", "of", "city", "county", "state", "department", "dept", "division",
    "office", "district", "agency", "authority", "board",
]

FUZZY_THRESHOLD = WRITER.get("fuzzy_threshold", 90)  # Similarity percentage to consider a duplicate


def normalize_agency(name: str) -> str:
    """Normalize an agency name for comparison."""
    name = name.lower().strip()
    # Remove punctuation
    name = re.sub(r'[^\w\s]', '', name)
    words = [w for w in name.split() if w not in AGENCY_NOISE]
    return " ".join(words).strip()


def normalize_title(title: str) -> str:
    """Normalize an opportunity title for comparison."""
    title = title.lower().strip()
    title = title.replace("&", "and")
    title = re.sub(r'[^\w\s]', '', title)
    title = re.sub(r'\s+', ' ', title)
    return title.strip()


def generate_fuzzy_key(agency: str, title: str, proposal_due: str) -> str:
    """Generate a normalized key for fuzzy matching."""
    return f"{normalize_agency(agency)}|{normalize_title(title)}|{proposal_due}"


def find_duplicate(
    fuzzy_key: str,
    link: Optional[str] = None,
    db_path: Optional[Path] = None,
    threshold: Optional[int] = None,
) -> Optional[int]:
    """
    Return the id of a stored opportunity this one duplicates, or None.
    Pass ``link`` only when it points at this opportunity itself;
    several opportunities can share one listing page.
    """
    threshold = FUZZY_THRESHOLD if threshold is None else threshold

    if link:
        existing_id = find_by_link(link, db_path)
        if existing_id is not None:
            return existing_id

    for existing_key, existing_id in get_fuzzy_keys(db_path=db_path).items():
        if fuzz.ratio(fuzzy_key, existing_key) >= threshold:
            logger.debug(f"Fuzzy duplicate: {fuzzy_key!r} ~ {existing_key!r} (id {existing_id})")
            return existing_id
    return None

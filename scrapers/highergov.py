"""
highergov.py — Structured search-API source (HigherGov opportunity API).
Fetched through the allow-listed SourceFetcher; records are mapped to
candidates after the classifier has judged their relevance.
"""

from datetime import date, timedelta
from typing import Optional

from config import HIGHERGOV, HIGHERGOV_API_KEY
from errors import FetchFailed
from models import Candidate, Geography, KeyDates, RelevanceVerdict, SearchRequest, Source
from monitoring import get_logger
from scrapers.base import SourceFetcher

logger = get_logger("scrapers.highergov")

SOURCE_NAME = "HigherGov"


def search_source() -> Source:
    return Source(url=HIGHERGOV["base_url"], name="HigherGov API", kind="global")


class HigherGovClient:
    """Opportunity search via the HigherGov external API."""

    def __init__(self, fetcher: SourceFetcher, api_key: str = None, base_url: str = None):
        self.fetcher = fetcher
        self.api_key = HIGHERGOV_API_KEY if api_key is None else api_key
        self.base_url = base_url or HIGHERGOV["base_url"]
        self.page_size = HIGHERGOV.get("page_size", 100)

    def search(self, request: SearchRequest, today: Optional[date] = None) -> list[dict]:
        """Fetch opportunities captured in the last ``days_back`` days."""
        if not self.api_key:
            raise FetchFailed("HIGHERGOV_API_KEY is not configured")

        captured = (today or date.today()) - timedelta(days=request.days_back)
        results = []
        seen_keys = set()

        for search_id in self._search_ids(request):
            params = {
                "api_key": self.api_key,
                "captured_date": captured.isoformat(),
                "ordering": "-captured_date",
                "page_size": str(self.page_size),
            }
            if search_id:
                params["search_id"] = search_id
            if request.search_keywords:
                params["keywords"] = request.search_keywords

            logger.info(f"Fetching HigherGov opportunities since {params['captured_date']} (search {search_id or 'none'})")
            data = self.fetcher.fetch_json(self.base_url, params=params)

            for opp in data.get("results", []):
                key = opp.get("opp_key") or opp.get("path") or opp.get("title")
                if key in seen_keys:
                    continue
                seen_keys.add(key)
                results.append(opp)

        logger.info(f"Fetched {len(results)} opportunities from HigherGov")
        return results

    def _search_ids(self, request: SearchRequest) -> list[Optional[str]]:
        if request.search_id:
            return [request.search_id]
        search_ids = HIGHERGOV.get("search_ids", {})
        if request.source_type == "all":
            ids = [search_ids.get("primary"), search_ids.get("secondary")]
        else:
            ids = [search_ids.get(request.source_type)]
        ids = [i for i in ids if i]
        return ids or [None]


def record_for_classifier(opp: dict) -> dict:
    """The subset of an API record the relevance question needs."""
    return {
        "title": opp.get("title") or "",
        "description": opp.get("ai_summary") or opp.get("description_text") or "",
        "naics": (opp.get("naics_code") or {}).get("naics_code", ""),
        "psc": (opp.get("psc_code") or {}).get("psc_code", ""),
    }


def to_candidate(opp: dict, verdict: RelevanceVerdict) -> Candidate:
    """Shape an API record plus its relevance verdict into a candidate."""
    description = opp.get("description_text") or ""
    return Candidate(
        title=opp.get("title") or "",
        agency=(opp.get("agency") or {}).get("agency_name") or "",
        geography=Geography(state=opp.get("pop_state"), city=opp.get("pop_city")),
        service_tags=verdict.service_tags,
        contract_type=(opp.get("opp_type") or {}).get("opp_type_name"),
        value_min=_to_float(opp.get("val_est_low")),
        value_max=_to_float(opp.get("val_est_high")),
        key_dates=KeyDates(
            proposal_due=opp.get("due_date"),
            issue_date=opp.get("posted_date"),
        ),
        link=opp.get("path") or opp.get("source_path") or _opportunity_url(opp),
        summary=opp.get("ai_summary") or description[:500],
        priority=verdict.priority,
        source=SOURCE_NAME,
        recommended_action=verdict.reasoning,
    )


def _opportunity_url(opp: dict) -> Optional[str]:
    if opp.get("opp_key"):
        return f"https://www.highergov.com/opportunity/{opp['opp_key']}"
    return None


def _to_float(value) -> Optional[float]:
    if value in (None, ""):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None

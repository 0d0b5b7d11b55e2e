"""
classifier.py — Claude-backed extraction of procurement opportunities.
The model's reply is treated as untrusted: it is parsed into provisional
candidates and any record missing mandatory fields is dropped on its own.
"""

import json
import re
from typing import Optional

import anthropic

from config import ANTHROPIC_API_KEY, CLASSIFIER, SERVICE_TAGS, CONTRACT_TYPES, TIMEOUTS
from errors import ClassificationFailed
from models import Candidate, ExtractionResult, Geography, KeyDates, RelevanceVerdict
from monitoring import get_logger

logger = get_logger("classifier")


EXTRACTION_PROMPT = """You are an expert at extracting EMS (Emergency Medical Services) procurement opportunities from government and public procurement websites. Extract ALL relevant opportunities and classify them according to EMS service types.

Service tags to use: {service_tags}
Contract types: {contract_types}
Priority levels: high (closing soon or high value), medium (moderate timeline), low (early stage or low value)

For each opportunity found, extract:
- title, agency
- geography: {{"state", "county", "city"}}
- serviceTags: array of tags from the list above
- contractType: one of the contract types above
- estimatedValue: {{"min", "max"}} in USD
- keyDates: {{"issueDate", "questionsDue", "preBidMeeting", "proposalDue"}} (proposalDue is required)
- termLength, link, summary (2-3 sentences), priority, source

Context: {hints}

Return ONLY a valid JSON array of opportunities. If no opportunities are found, return [].

Page content:
{content}"""


RELEVANCE_PROMPT = """You are an expert at classifying Emergency Medical Services (EMS) procurement opportunities.
For each opportunity determine:
1. Whether it is EMS-related (ambulance, emergency medical services, paramedic, EMT, 911 dispatch, medical transport, emergency response)
2. Which service tags apply: {service_tags}
3. Priority (high: closing in under 14 days or over $1M, medium: 14-30 days or $100K-$1M, low: otherwise)

Return ONLY a JSON array with one element per input opportunity, in the same order.
EMS-related: {{"isEMS": true, "serviceTags": ["EMS 911"], "priority": "high", "reasoning": "brief explanation"}}
Not EMS-related: {{"isEMS": false}}

Opportunities:
{records}"""


_FENCED_ARRAY = re.compile(r"```(?:json)?\s*(\[[\s\S]*?\])\s*```")
_BARE_ARRAY = re.compile(r"(\[[\s\S]*\])")


def parse_json_array(text: str) -> list:
    """
    Parse a model reply as a JSON array, tolerating a code fence or prose
    around it. Raises ClassificationFailed if no array can be recovered.
    """
    if not text or not text.strip():
        raise ClassificationFailed("empty response from classifier")

    text = text.strip()
    match = _FENCED_ARRAY.search(text) or _BARE_ARRAY.search(text)
    json_string = match.group(1) if match else text

    try:
        parsed = json.loads(json_string)
    except json.JSONDecodeError as e:
        raise ClassificationFailed(f"could not parse classifier response: {e}")

    if not isinstance(parsed, list):
        raise ClassificationFailed("classifier response is not a JSON array")
    return parsed


def candidate_from_record(record, default_source: Optional[str] = None) -> Optional[Candidate]:
    """Build a Candidate from one loosely-typed record, or None if mandatory fields are missing."""
    if not isinstance(record, dict):
        return None

    title = _text(record.get("title"))
    agency = _text(record.get("agency"))
    key_dates = record.get("keyDates") or record.get("key_dates") or {}
    if not isinstance(key_dates, dict):
        key_dates = {}
    proposal_due = _text(key_dates.get("proposalDue") or key_dates.get("proposal_due"))

    if not title or not agency or not proposal_due:
        return None

    geography = record.get("geography") or {}
    if not isinstance(geography, dict):
        geography = {}
    value = record.get("estimatedValue") or record.get("estimated_value") or {}
    if not isinstance(value, dict):
        value = {}
    tags = record.get("serviceTags") or record.get("service_tags") or []
    if isinstance(tags, str):
        tags = [tags]

    return Candidate(
        title=title,
        agency=agency,
        geography=Geography(
            state=_text(geography.get("state")),
            county=_text(geography.get("county")),
            city=_text(geography.get("city")),
        ),
        service_tags=[str(t) for t in tags if t],
        contract_type=_text(record.get("contractType") or record.get("contract_type")),
        value_min=_number(value.get("min")),
        value_max=_number(value.get("max")),
        key_dates=KeyDates(
            proposal_due=proposal_due,
            issue_date=_text(key_dates.get("issueDate") or key_dates.get("issue_date")),
            questions_due=_text(key_dates.get("questionsDue") or key_dates.get("questions_due")),
            pre_bid_meeting=_text(key_dates.get("preBidMeeting") or key_dates.get("pre_bid_meeting")),
        ),
        term_length=_text(record.get("termLength") or record.get("term_length")),
        link=_text(record.get("link")),
        summary=_text(record.get("summary")) or "",
        priority=_text(record.get("priority")),
        source=_text(record.get("source")) or default_source,
    )


def _text(value) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def _number(value) -> Optional[float]:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    try:
        return float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        return None


class Classifier:
    """Adapter over the structured-extraction service."""

    def __init__(self, client=None, model: str = None, timeout: float = None):
        self.timeout = TIMEOUTS["classify_seconds"] if timeout is None else timeout
        self.model = model or CLASSIFIER["model"]
        self.max_tokens = CLASSIFIER.get("max_tokens", 8000)
        self.max_content_chars = CLASSIFIER.get("max_content_chars", 50000)
        if client is None:
            if ANTHROPIC_API_KEY:
                client = anthropic.Anthropic(api_key=ANTHROPIC_API_KEY, timeout=self.timeout, max_retries=0)
            else:
                logger.error("ANTHROPIC_API_KEY not set — classification calls will fail")
        self.client = client

    def extract(self, content: str, hints: dict = None) -> ExtractionResult:
        """
        Extract candidate opportunities from page content.
        Records lacking title, agency or proposal-due date are dropped individually.
        """
        hints = hints or {}
        prompt = EXTRACTION_PROMPT.format(
            service_tags=", ".join(SERVICE_TAGS),
            contract_types=", ".join(CONTRACT_TYPES),
            hints=json.dumps(hints, default=str),
            content=(content or "")[:self.max_content_chars],
        )

        records = parse_json_array(self._call_claude(prompt))

        result = ExtractionResult()
        for record in records:
            candidate = candidate_from_record(record, default_source=hints.get("source_name"))
            if candidate is None:
                result.rejected += 1
                continue
            result.candidates.append(candidate)

        logger.info(
            f"Extraction complete: {len(result.candidates)} candidates, "
            f"{result.rejected} dropped for missing fields"
        )
        return result

    def classify_relevance(self, records: list[dict]) -> list[RelevanceVerdict]:
        """
        Answer the domain-match question for each record, by index.
        Records are sent in batches that each fit within max_content_chars.
        Missing or malformed verdicts count as not relevant.
        """
        if not records:
            return []

        verdicts = []
        for batch in self._relevance_batches(records):
            verdicts.extend(self._classify_batch(batch))

        relevant = sum(1 for v in verdicts if v.is_relevant)
        logger.info(f"Relevance: {relevant} of {len(records)} records are in scope")
        return verdicts

    def _relevance_batches(self, records: list[dict]):
        """Yield consecutive slices of records whose JSON fits the content limit."""
        batch = []
        for record in records:
            record = self._fit_record(record)
            if batch and len(json.dumps(batch + [record], indent=2)) > self.max_content_chars:
                yield batch
                batch = []
            batch.append(record)
        if batch:
            yield batch

    def _fit_record(self, record: dict) -> dict:
        """Shorten the description of a record that can't fit on its own."""
        overflow = len(json.dumps([record], indent=2)) - self.max_content_chars
        if overflow <= 0:
            return record
        description = record.get("description") or ""
        return dict(record, description=description[:max(len(description) - overflow, 0)])

    def _classify_batch(self, batch: list[dict]) -> list[RelevanceVerdict]:
        prompt = RELEVANCE_PROMPT.format(
            service_tags=", ".join(SERVICE_TAGS),
            records=json.dumps(batch, indent=2),
        )
        raw = parse_json_array(self._call_claude(prompt))

        verdicts = []
        for i in range(len(batch)):
            item = raw[i] if i < len(raw) else None
            if not isinstance(item, dict) or not item.get("isEMS"):
                verdicts.append(RelevanceVerdict(is_relevant=False))
                continue
            tags = item.get("serviceTags") or []
            if isinstance(tags, str):
                tags = [tags]
            verdicts.append(RelevanceVerdict(
                is_relevant=True,
                service_tags=[str(t) for t in tags if t],
                priority=_text(item.get("priority")),
                reasoning=_text(item.get("reasoning")),
            ))
        return verdicts

    def _call_claude(self, prompt: str) -> str:
        """Call Claude and return the reply text."""
        if self.client is None:
            raise ClassificationFailed("ANTHROPIC_API_KEY is not configured")
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": prompt}],
                timeout=self.timeout,
            )
        except anthropic.APITimeoutError as e:
            raise ClassificationFailed(f"classifier timed out after {self.timeout}s", kind="timeout") from e
        except anthropic.APIError as e:
            raise ClassificationFailed(f"Claude API error: {e}") from e

        if not response.content:
            raise ClassificationFailed("no content returned from classifier")
        return response.content[0].text

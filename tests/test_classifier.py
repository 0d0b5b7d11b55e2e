"""Tests for the Claude-backed classifier adapter."""

import json

import anthropic
import httpx
import pytest

from classifier import Classifier, candidate_from_record, parse_json_array
from errors import ClassificationFailed


class TestParseJsonArray:

    def test_bare_array(self):
        assert parse_json_array('[{"title": "A"}]') == [{"title": "A"}]

    def test_fenced_array_with_prose(self):
        """Replies often wrap the JSON in a code fence and commentary."""
        text = 'Here is what I found:\n```json\n[{"title": "A", "serviceTags": ["BLS"]}]\n```\nLet me know!'
        assert parse_json_array(text) == [{"title": "A", "serviceTags": ["BLS"]}]

    def test_empty_array(self):
        assert parse_json_array("[]") == []

    @pytest.mark.parametrize("text", ["", "   ", "no opportunities here", '{"title": "A"}', "[{broken"])
    def test_unparsable(self, text):
        with pytest.raises(ClassificationFailed):
            parse_json_array(text)


class TestCandidateFromRecord:

    def test_maps_camel_case_fields(self, make_record):
        record = make_record(
            "Ambulance Services", "County of Ventura",
            geography={"state": "CA", "county": "Ventura"},
            estimatedValue={"min": "$100,000", "max": 250000},
            link="https://ventura.gov/bids/12",
        )
        candidate = candidate_from_record(record, default_source="Ventura")
        assert candidate.title == "Ambulance Services"
        assert candidate.key_dates.proposal_due == "2099-03-01"
        assert candidate.geography.county == "Ventura"
        assert candidate.value_min == 100000.0
        assert candidate.value_max == 250000.0
        assert candidate.source == "Ventura"

    @pytest.mark.parametrize("missing", ["title", "agency"])
    def test_missing_mandatory_field(self, make_record, missing):
        record = make_record("Ambulance Services", "County of Ventura")
        del record[missing]
        assert candidate_from_record(record) is None

    def test_missing_proposal_due(self, make_record):
        record = make_record("Ambulance Services", "County of Ventura")
        record["keyDates"] = {"issueDate": "2099-01-01"}
        assert candidate_from_record(record) is None

    def test_non_dict_record(self):
        assert candidate_from_record("Ambulance Services") is None


class TestClassifierExtract:

    def test_partial_records_dropped_individually(self, fake_claude, make_record):
        """One record lacking proposalDue is dropped; its sibling survives."""
        incomplete = make_record("Billing Services", "City of Santa Ana")
        incomplete["keyDates"] = {}
        client = fake_claude(replies=[[make_record("Ambulance Services", "County of Ventura"), incomplete]])

        result = Classifier(client=client).extract("page text", {"source_name": "Ventura"})

        assert [c.title for c in result] == ["Ambulance Services"]
        assert result.rejected == 1

    def test_content_is_truncated(self, fake_claude):
        client = fake_claude(replies=["[]"])
        classifier = Classifier(client=client)
        classifier.max_content_chars = 100

        classifier.extract("x" * 10_000)

        prompt = client.calls[0]["messages"][0]["content"]
        assert "x" * 100 in prompt
        assert "x" * 101 not in prompt

    def test_unparsable_reply_fails(self, fake_claude):
        client = fake_claude(replies=["I could not find anything useful."])
        with pytest.raises(ClassificationFailed):
            Classifier(client=client).extract("page text")

    def test_timeout_is_classification_failed_of_kind_timeout(self, fake_claude):
        request = httpx.Request("POST", "https://api.anthropic.com/v1/messages")
        client = fake_claude(replies=[anthropic.APITimeoutError(request=request)])
        with pytest.raises(ClassificationFailed) as exc_info:
            Classifier(client=client).extract("page text")
        assert exc_info.value.kind == "timeout"

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.setattr("classifier.ANTHROPIC_API_KEY", "")
        with pytest.raises(ClassificationFailed):
            Classifier().extract("page text")


class TestClassifyRelevance:

    def test_verdicts_by_index(self, fake_claude):
        reply = [
            {"isEMS": True, "serviceTags": ["EMS 911"], "priority": "high", "reasoning": "911 ambulance"},
            {"isEMS": False},
        ]
        client = fake_claude(replies=[json.dumps(reply)])
        verdicts = Classifier(client=client).classify_relevance([
            {"title": "911 Ambulance"}, {"title": "Office Furniture"}, {"title": "Paving"},
        ])

        assert [v.is_relevant for v in verdicts] == [True, False, False]
        assert verdicts[0].service_tags == ["EMS 911"]

    def test_no_records_no_call(self, fake_claude):
        client = fake_claude()
        assert Classifier(client=client).classify_relevance([]) == []
        assert client.calls == []

    def test_large_payload_is_split_not_cut(self, fake_claude):
        """Every record reaches the model as valid JSON, and verdicts line up by index."""
        records = [
            {"title": f"REC-{i} ambulance", "description": "Emergency medical transport. " * 15}
            for i in range(200)
        ]

        def respond(prompt):
            batch = json.loads(prompt.split("Opportunities:\n", 1)[1])
            return [{"isEMS": True, "reasoning": r["title"]} for r in batch]

        client = fake_claude(responder=respond)
        classifier = Classifier(client=client)
        classifier.max_content_chars = 20000

        verdicts = classifier.classify_relevance(records)

        assert len(client.calls) > 1
        assert [v.reasoning for v in verdicts] == [r["title"] for r in records]
        for call in client.calls:
            payload = call["messages"][0]["content"].split("Opportunities:\n", 1)[1]
            assert len(payload) <= 20000

    def test_oversized_record_is_shortened(self, fake_claude):
        client = fake_claude(replies=[[{"isEMS": True}]])
        classifier = Classifier(client=client)
        classifier.max_content_chars = 500

        verdicts = classifier.classify_relevance([{"title": "Ambulance", "description": "x" * 2000}])

        assert verdicts[0].is_relevant
        payload = client.calls[0]["messages"][0]["content"].split("Opportunities:\n", 1)[1]
        assert json.loads(payload)[0]["title"] == "Ambulance"
        assert len(payload) <= 500

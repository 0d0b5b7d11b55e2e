"""Shared fixtures: a throwaway database, a fake Claude client and a fake fetcher."""

import json
from types import SimpleNamespace

import httpx
import pytest

import config
from database import init_db
from scrapers.base import check_url


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    """Fresh SQLite database; also becomes the default DB_PATH."""
    path = tmp_path / "scout.db"
    monkeypatch.setattr(config, "DB_PATH", path)
    init_db(path)
    return path


class FakeClaude:
    """Stands in for anthropic.Anthropic: only ``messages.create`` is used."""

    def __init__(self, replies=None, responder=None):
        self.replies = list(replies or [])
        self.responder = responder
        self.calls = []
        self.messages = SimpleNamespace(create=self._create)

    def _create(self, **kwargs):
        self.calls.append(kwargs)
        prompt = kwargs["messages"][0]["content"]
        reply = self.responder(prompt) if self.responder else self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if not isinstance(reply, str):
            reply = json.dumps(reply)
        return SimpleNamespace(content=[SimpleNamespace(text=reply)])


class FakeFetcher:
    """Serves canned pages by URL after the real allow-list check."""

    def __init__(self, pages=None, api=None):
        self.pages = pages or {}
        self.api = api if api is not None else {"results": []}
        self.fetched = []

    def fetch(self, url):
        check_url(url)
        self.fetched.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return page

    def fetch_json(self, url, params=None):
        check_url(url)
        self.fetched.append(url)
        if isinstance(self.api, Exception):
            raise self.api
        return self.api

    def close(self):
        pass


def _record(title, agency, due="2099-03-01", **extra):
    record = {
        "title": title,
        "agency": agency,
        "keyDates": {"proposalDue": due},
        "serviceTags": ["EMS 911"],
        "contractType": "RFP",
        "summary": f"{title} for {agency}.",
    }
    record.update(extra)
    return record


@pytest.fixture
def make_record():
    """Build one classifier-style opportunity record."""
    return _record


@pytest.fixture
def fake_claude():
    return FakeClaude


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


@pytest.fixture
def counting_transport():
    """httpx MockTransport that records every request and serves ``responses`` by URL."""
    calls = []
    responses = {}

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        responder = responses.get(str(request.url))
        if responder is None:
            return httpx.Response(200, text="<html><body>ok</body></html>")
        if callable(responder):
            return responder(request)
        return responder

    return httpx.MockTransport(handler), calls, responses

"""
base.py — HTTPS source fetcher with a domain allow-list.
The allow-list is a security boundary: it runs before any request is issued
and again on every redirect hop.
"""

import json
import random
import time
from typing import Callable, Optional
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from config import ALLOWED_DOMAIN_SUFFIXES, ALLOWED_HOSTS, FETCHER, TIMEOUTS
from errors import FetchFailed, UntrustedSource
from monitoring import get_logger

logger = get_logger("scrapers.base")

USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36 Edg/120.0.0.0",
]


def is_allowed_url(url: str, suffixes: list[str] = None, hosts: list[str] = None) -> bool:
    """True if the URL is https and its host is on the allow-list."""
    suffixes = ALLOWED_DOMAIN_SUFFIXES if suffixes is None else suffixes
    hosts = ALLOWED_HOSTS if hosts is None else hosts

    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme != "https":
        return False
    host = (parsed.hostname or "").lower().rstrip(".")
    if not host:
        return False

    for suffix in suffixes:
        if host.endswith(suffix):
            return True
    for allowed in hosts:
        if host == allowed or host.endswith("." + allowed):
            return True
    return False


def check_url(url: str, suffixes: list[str] = None, hosts: list[str] = None):
    """Raise UntrustedSource unless the URL passes the allow-list."""
    if not is_allowed_url(url, suffixes, hosts):
        raise UntrustedSource(f"untrusted source: {url}")


def extract_text(html: str) -> str:
    """Reduce an HTML page to its visible text, keeping links inline."""
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "svg"]):
        tag.decompose()
    for a in soup.find_all("a", href=True):
        href = a["href"]
        if href.startswith("http"):
            a.append(f" ({href})")
    text = soup.get_text("\n", strip=True)
    return text


class SourceFetcher:
    """
    Fetch one source over HTTPS. No retries; the job runner owns retry policy.

    httpx timeouts apply per connect/read, so the body is streamed against an
    overall deadline and a size cap as well.
    """

    def __init__(
        self,
        timeout: float = None,
        transport: Optional[httpx.BaseTransport] = None,
        suffixes: list[str] = None,
        hosts: list[str] = None,
        max_bytes: int = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = TIMEOUTS["fetch_seconds"] if timeout is None else timeout
        self.max_bytes = FETCHER.get("max_bytes", 10_000_000) if max_bytes is None else max_bytes
        self.suffixes = ALLOWED_DOMAIN_SUFFIXES if suffixes is None else suffixes
        self.hosts = ALLOWED_HOSTS if hosts is None else hosts
        self.clock = clock
        self._client = httpx.Client(
            timeout=self.timeout,
            follow_redirects=True,
            transport=transport,
            event_hooks={"request": [self._check_request]},
        )

    def _check_request(self, request: httpx.Request):
        # Redirect hops come through here too.
        check_url(str(request.url), self.suffixes, self.hosts)

    def fetch(self, url: str) -> str:
        """Return the raw body of an allow-listed URL."""
        check_url(url, self.suffixes, self.hosts)
        text = self._get(url)
        logger.info(f"Fetched {len(text)} characters from {url}")
        return text

    def fetch_json(self, url: str, params: dict = None) -> dict:
        """GET an allow-listed JSON API endpoint."""
        check_url(url, self.suffixes, self.hosts)
        text = self._get(url, params=params)
        try:
            return json.loads(text)
        except ValueError as e:
            raise FetchFailed(f"invalid JSON from {url}: {e}")

    def _get(self, url: str, params: dict = None) -> str:
        deadline = self.clock() + self.timeout
        try:
            with self._client.stream(
                "GET", url, params=params, headers={"User-Agent": random.choice(USER_AGENTS)}
            ) as response:
                if not response.is_success:
                    raise FetchFailed(
                        f"HTTP {response.status_code} fetching {url}",
                        status_code=response.status_code,
                    )
                body = bytearray()
                for chunk in response.iter_bytes():
                    body.extend(chunk)
                    if len(body) > self.max_bytes:
                        raise FetchFailed(f"response from {url} exceeds {self.max_bytes} bytes")
                    if self.clock() > deadline:
                        raise FetchFailed(f"timed out after {self.timeout}s fetching {url}", kind="timeout")
                return bytes(body).decode(response.encoding or "utf-8", errors="replace")
        except httpx.TimeoutException as e:
            raise FetchFailed(f"timed out after {self.timeout}s fetching {url}", kind="timeout") from e
        except httpx.HTTPError as e:
            raise FetchFailed(f"request to {url} failed: {e}") from e

    def close(self):
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()

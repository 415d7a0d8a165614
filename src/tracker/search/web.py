"""Web search providers.

``GoogleSearch`` talks to the Custom Search JSON API. The API key is read from
``GOOGLE_SEARCH_API_KEY``; it is never stored in config files.
"""

from __future__ import annotations

import json
import os
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Protocol

from tracker.errors import SearchError
from tracker.log import get_logger

logger = get_logger(__name__)

_ENDPOINT = "https://www.googleapis.com/customsearch/v1"
_USER_AGENT = "tracker/0.1 (+project search)"
_TIMEOUT = 15  # seconds
_MAX_BYTES = 2 * 1024 * 1024


@dataclass
class SearchResult:
    title: str
    description: str
    url: str


class WebSearch(Protocol):
    def search(self, query: str) -> list[SearchResult]: ...


class GoogleSearch:
    """Google Custom Search client.

    Args:
        api_key: API key; defaults to ``GOOGLE_SEARCH_API_KEY``.
        cx: Search engine id; defaults to ``GOOGLE_SEARCH_CX``.
        timeout: Request timeout in seconds.
        num: Results requested per query (the API caps this at 10).
    """

    def __init__(
        self,
        api_key: str | None = None,
        cx: str | None = None,
        timeout: float = _TIMEOUT,
        num: int = 10,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("GOOGLE_SEARCH_API_KEY", "")
        self.cx = cx if cx is not None else os.environ.get("GOOGLE_SEARCH_CX", "")
        self.timeout = timeout
        self.num = max(1, min(num, 10))

    def _url(self, query: str) -> str:
        params = {"key": self.api_key, "cx": self.cx, "q": query, "num": str(self.num)}
        return f"{_ENDPOINT}?{urllib.parse.urlencode(params)}"

    def search(self, query: str) -> list[SearchResult]:
        """Return results for *query*, dropping items without a link.

        Raises:
            SearchError: Missing credentials, HTTP/network failure or a body
                that is not a JSON object.
        """
        if not self.api_key or not self.cx:
            raise SearchError(
                "Google search is not configured. Set GOOGLE_SEARCH_API_KEY and "
                "GOOGLE_SEARCH_CX (or search.cx in tracker.yaml)."
            )

        request = urllib.request.Request(self._url(query), headers={"User-Agent": _USER_AGENT})
        try:
            with urllib.request.urlopen(request, timeout=self.timeout) as response:
                body = response.read(_MAX_BYTES)
        except urllib.error.HTTPError as exc:
            raise SearchError(f"Search for {query!r} failed: HTTP {exc.code}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise SearchError(f"Search for {query!r} failed: {exc}") from exc

        try:
            data = json.loads(body.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as exc:
            raise SearchError(f"Search for {query!r} returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise SearchError(f"Search for {query!r} returned an unexpected response shape")

        results = parse_results(data)
        logger.info("Search %r: %d results", query, len(results))
        return results


def parse_results(data: dict) -> list[SearchResult]:
    """Map a Custom Search response body to SearchResult objects."""
    results: list[SearchResult] = []
    for item in data.get("items") or []:
        if not isinstance(item, dict) or not item.get("link"):
            continue
        results.append(
            SearchResult(
                title=str(item.get("title") or item["link"]),
                description=str(item.get("snippet") or ""),
                url=str(item["link"]),
            )
        )
    return results

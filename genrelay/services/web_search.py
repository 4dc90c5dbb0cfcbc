"""
Web search augmentation via a self-hosted SearXNG instance (JSON API).

augment(query) returns a bounded, URL-deduplicated list of results, possibly
empty. An empty list means "no augmentation", never an error. Provider failures
raise SearchProviderError; the pipeline logs it and carries on without context.
"""
import json
import logging
import re
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

SOURCES_OPEN = "[WEB_SOURCES]"
SOURCES_CLOSE = "[/WEB_SOURCES]"
_SOURCES_RE = re.compile(r"\n\n\[WEB_SOURCES\]\n(.*?)\n\[/WEB_SOURCES\]\s*$", re.DOTALL)


class SearchProviderError(Exception):
    """Search backend failed (timeout, HTTP error, unparseable body)."""


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    description: str = ""

    def to_dict(self) -> dict:
        return {"title": self.title, "url": self.url, "description": self.description}


class SearchClient:
    async def search(self, query: str) -> list[SearchResult]:
        raise NotImplementedError


class SearxngSearchClient(SearchClient):
    def __init__(
        self,
        http: httpx.AsyncClient,
        base_url: str,
        *,
        max_results: int = 5,
        timeout_seconds: float = 8.0,
        language: str = "en-US",
    ):
        self._http = http
        self._base_url = (base_url or "").rstrip("/")
        self._max_results = max_results
        self._timeout = timeout_seconds
        self._language = language

    async def search(self, query: str) -> list[SearchResult]:
        if not self._base_url:
            return []
        params = {"q": query, "format": "json", "categories": "general", "language": self._language}
        try:
            response = await self._http.get(f"{self._base_url}/search", params=params, timeout=self._timeout)
            response.raise_for_status()
            data = response.json()
        except httpx.TimeoutException as e:
            raise SearchProviderError("search request timed out") from e
        except (httpx.HTTPError, ValueError) as e:
            raise SearchProviderError(f"search request failed: {e}") from e
        if not isinstance(data, dict):
            raise SearchProviderError(f"unexpected search response: {type(data).__name__}")

        seen: set[str] = set()
        results: list[SearchResult] = []
        for item in data.get("results") or []:
            if len(results) >= self._max_results:
                break
            if not isinstance(item, dict):
                continue
            url = item.get("url")
            if not isinstance(url, str) or not url or url in seen:
                continue
            seen.add(url)
            results.append(
                SearchResult(
                    title=str(item.get("title") or url),
                    url=url,
                    description=str(item.get("content") or ""),
                )
            )
        return results


class SearchAugmenter:
    """Bounds and dedupes whatever the client returns."""

    def __init__(self, client: SearchClient, max_results: int = 5):
        self._client = client
        self._max_results = max(1, max_results)

    async def augment(self, query: str) -> list[SearchResult]:
        query = (query or "").strip()
        if not query:
            return []
        results = await self._client.search(query)
        seen: set[str] = set()
        out: list[SearchResult] = []
        for r in results:
            if r.url in seen:
                continue
            seen.add(r.url)
            out.append(r)
            if len(out) >= self._max_results:
                break
        return out


def format_search_context(results: list[SearchResult]) -> str:
    """Render results as one system message for the model."""
    if not results:
        return ""
    lines = [f"[{i}] {r.title}\nURL: {r.url}\n{r.description}" for i, r in enumerate(results, start=1)]
    return "\n".join(
        [
            "Web search results (use them to inform your answer and cite sources when relevant):",
            "",
            *lines,
        ]
    )


def format_sources_marker(results: list[SearchResult]) -> str:
    """Suffix appended to the saved assistant message; parsed back by parse_sources_marker."""
    if not results:
        return ""
    sources = "\n".join(json.dumps(r.to_dict(), ensure_ascii=False) for r in results)
    return f"\n\n{SOURCES_OPEN}\n{sources}\n{SOURCES_CLOSE}"


def parse_sources_marker(content: str) -> tuple[str, list[SearchResult]]:
    """Split a saved message into (text, sources). Malformed lines are skipped."""
    match = _SOURCES_RE.search(content or "")
    if not match:
        return content, []
    sources: list[SearchResult] = []
    for line in match.group(1).split("\n"):
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict) and data.get("url"):
            sources.append(
                SearchResult(
                    title=str(data.get("title") or data["url"]),
                    url=str(data["url"]),
                    description=str(data.get("description") or ""),
                )
            )
    return content[: match.start()], sources

import asyncio
import json

import httpx
import pytest

from genrelay.services.web_search import (
    SearchAugmenter,
    SearchProviderError,
    SearchResult,
    SearxngSearchClient,
    format_search_context,
    format_sources_marker,
    parse_sources_marker,
)

from conftest import StaticSearchClient, TWO_RESULTS


def _searxng(handler, **kwargs):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SearxngSearchClient(http, "http://searx.local", **kwargs)


class TestSearxngClient:
    def test_parses_and_dedupes_results(self):
        seen = {}

        def handler(request):
            seen["params"] = dict(request.url.params)
            return httpx.Response(200, json={"results": [
                {"title": "A", "url": "https://a.example", "content": "alpha"},
                {"title": "A again", "url": "https://a.example", "content": "dup"},
                {"title": "B", "url": "https://b.example"},
                {"title": "no url"},
            ]})

        results = asyncio.run(_searxng(handler).search("python asyncio"))
        assert [r.url for r in results] == ["https://a.example", "https://b.example"]
        assert results[0].description == "alpha"
        assert seen["params"]["q"] == "python asyncio"
        assert seen["params"]["format"] == "json"

    def test_http_error_raises_provider_error(self):
        client = _searxng(lambda request: httpx.Response(502))
        with pytest.raises(SearchProviderError):
            asyncio.run(client.search("anything"))

    def test_non_object_body_raises_provider_error(self):
        client = _searxng(lambda request: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(SearchProviderError, match="unexpected search response"):
            asyncio.run(client.search("anything"))

    def test_not_configured_returns_nothing(self):
        client = SearxngSearchClient(httpx.AsyncClient(), "")
        assert asyncio.run(client.search("anything")) == []


class TestAugmenter:
    def test_bounds_and_dedupes(self):
        results = [SearchResult(f"t{i}", f"https://x/{i % 4}") for i in range(10)]
        out = asyncio.run(SearchAugmenter(StaticSearchClient(results), max_results=3).augment("q"))
        assert [r.url for r in out] == ["https://x/0", "https://x/1", "https://x/2"]

    def test_blank_query_skips_search(self):
        client = StaticSearchClient(TWO_RESULTS)
        assert asyncio.run(SearchAugmenter(client).augment("   ")) == []
        assert client.queries == []


class TestSourcesMarker:
    def test_marker_round_trip(self):
        content = "Answer text" + format_sources_marker(TWO_RESULTS)
        assert content.endswith("[/WEB_SOURCES]")
        text, sources = parse_sources_marker(content)
        assert text == "Answer text"
        assert sources == TWO_RESULTS

    def test_marker_lines_are_json(self):
        marker = format_sources_marker(TWO_RESULTS)
        lines = marker.strip().split("\n")[1:-1]
        assert [json.loads(line)["url"] for line in lines] == [r.url for r in TWO_RESULTS]

    def test_no_marker(self):
        assert parse_sources_marker("plain") == ("plain", [])
        assert format_sources_marker([]) == ""

    def test_context_lists_every_result(self):
        context = format_search_context(TWO_RESULTS)
        assert "[1] Python docs" in context
        assert "URL: https://peps.python.org/pep-0008/" in context

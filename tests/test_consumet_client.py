import asyncio

import httpx
import pytest

from sources.base import SourceKind
from sources.consumet import ConsumetClient, create_http_client
from sources.errors import MalformedUpstreamResponse, RateLimited, UpstreamUnavailable


def run(coro):
    return asyncio.run(coro)


def call(handler, fn):
    """Run fn(client, http) against a MockTransport-backed AsyncClient."""
    async def go():
        async with create_http_client(transport=httpx.MockTransport(handler)) as http:
            return await fn(http)
    return run(go())


def test_search_page_builds_url_and_normalizes():
    seen = []

    def handler(request):
        seen.append(request.url)
        return httpx.Response(200, json={
            "results": [{"id": "tower-of-god", "title": "Tower of God"}, {"title": "no id"}],
            "hasNextPage": False,
        })

    client = ConsumetClient("mangapark", base_url="https://consumet.test")
    items = call(handler, lambda http: client.search_page(http, "tower god", 2, "webtoon"))

    assert seen[0].path == "/manga/mangapark/tower god"
    assert b"tower%20god" in seen[0].raw_path
    assert seen[0].params["page"] == "2"
    assert len(items) == 1
    assert items[0].source_kind == SourceKind.AGGREGATOR
    assert items[0].provider_name == "mangapark"
    assert items[0].content_type == "webtoon"
    assert items[0].updated_at is not None


def test_missing_results_is_an_empty_page():
    client = ConsumetClient("mangapark", base_url="https://consumet.test")
    items = call(lambda request: httpx.Response(200, json={"message": "none"}),
                 lambda http: client.search_page(http, "x", 1))
    assert items == []


def test_html_body_is_malformed():
    client = ConsumetClient("asurascans", base_url="https://consumet.test")
    with pytest.raises(MalformedUpstreamResponse):
        call(lambda request: httpx.Response(200, text="<!DOCTYPE html><html></html>"),
             lambda http: client.search_page(http, "x", 1))


def test_status_errors_are_typed():
    client = ConsumetClient("asurascans", base_url="https://consumet.test")

    with pytest.raises(RateLimited):
        call(lambda request: httpx.Response(429), lambda http: client.search_page(http, "x", 1))

    with pytest.raises(UpstreamUnavailable) as info:
        call(lambda request: httpx.Response(500), lambda http: client.search_page(http, "x", 1))
    assert info.value.status_code == 500


def test_network_error_is_upstream_unavailable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = ConsumetClient("flamescans", base_url="https://consumet.test")
    with pytest.raises(UpstreamUnavailable):
        call(handler, lambda http: client.search_page(http, "x", 1))
    assert client.get_health_info()["failure_count"] == 1


def test_info_gives_exact_chapter_count():
    def handler(request):
        assert request.url.path == "/manga/mangakakalot/info"
        assert request.url.params["id"] == "abc"
        return httpx.Response(200, json={
            "id": "abc",
            "title": "Info Title",
            "genres": ["Manhua"],
            "chapters": [{"id": "c1", "chapterNumber": 1}, {"id": "c2", "chapterNumber": 2}],
        })

    client = ConsumetClient("mangakakalot", base_url="https://consumet.test")
    title = call(handler, lambda http: client.get_info(http, "abc"))

    assert title.total_chapters.value == 2
    assert title.content_type == "manhua"

    chapters = call(handler, lambda http: client.get_chapters(http, "abc"))
    assert [c.id for c in chapters.chapters] == ["c1", "c2"]

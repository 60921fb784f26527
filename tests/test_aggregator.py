import asyncio
import math

import httpx
import pytest

from sources import ProviderRegistry
from sources.base import SearchRequest
from sources.consumet import ConsumetClient, create_http_client
from sources.mangadex import MangaDexClient
from mangascope_app.search.aggregator import (
    AggregationEngine, apply_post_filters, batch_has_more, deduplicate,
)

from conftest import make_aggregator


class Upstream:
    """
    Fake Consumet server.

    `pages` maps provider -> callable(query, page) returning a list of raw
    result dicts, or an int N meaning N non-empty pages of `per_page` items.
    """

    def __init__(self, pages, per_page=2, fail=None):
        self.pages = pages
        self.per_page = per_page
        self.fail = fail or set()
        self.calls = []

    def __call__(self, request):
        _, _, provider, query = request.url.path.split("/", 3)
        page = int(request.url.params["page"])
        self.calls.append((provider, query, page))
        if (provider, page) in self.fail or (provider, None) in self.fail:
            return httpx.Response(500)

        plan = self.pages.get(provider, 0)
        if callable(plan):
            results = plan(query, page)
        elif page <= plan:
            results = [{"id": f"{query}-{page}-{i}", "title": f"{query} {page}.{i}"} for i in range(self.per_page)]
        else:
            results = []
        return httpx.Response(200, json={"results": results, "hasNextPage": True})

    def pages_for(self, provider):
        return sorted(page for p, _, page in self.calls if p == provider)


def make_engine(upstream, providers=("asurascans",), **kwargs):
    registry = ProviderRegistry(
        MangaDexClient(base_url="https://md.test"),
        [ConsumetClient(name, base_url="https://consumet.test") for name in providers],
    )
    kwargs.setdefault("timeout", 10)
    return AggregationEngine(
        registry,
        client_factory=lambda: create_http_client(transport=httpx.MockTransport(upstream)),
        **kwargs
    )


# =============================================================================
# TERMINATION
# =============================================================================

def test_batch_has_more_rule():
    assert batch_has_more([[1], [1], [1]])
    assert not batch_has_more([[1], [1], []])
    assert not batch_has_more([[], [], []])
    assert not batch_has_more([])


@pytest.mark.parametrize("non_empty_pages", [0, 1, 2, 3, 4, 7, 9])
def test_pagination_stops_after_first_batch_ending_empty(non_empty_pages):
    batch = 3
    upstream = Upstream({"asurascans": non_empty_pages})
    engine = make_engine(upstream, batch_size=batch)

    items = engine.fetch_provider("asurascans", "q")

    expected_batches = math.ceil((non_empty_pages + 1) / batch)
    assert len(upstream.calls) == expected_batches * batch
    assert len(items) == non_empty_pages * upstream.per_page


def test_pagination_never_exceeds_page_cap():
    upstream = Upstream({"asurascans": 1000})
    engine = make_engine(upstream, batch_size=2, max_pages=5)

    items = engine.fetch_provider("asurascans", "q")

    assert upstream.pages_for("asurascans") == [1, 2, 3, 4, 5]
    assert len(items) == 10


def test_failed_page_mid_batch_does_not_stop_provider():
    upstream = Upstream({"asurascans": 5}, fail={("asurascans", 2)})
    engine = make_engine(upstream, batch_size=3)

    items = engine.fetch_provider("asurascans", "q")

    # pages 1-3 (2 failed), 4-6 (6 empty) -> stop
    assert upstream.pages_for("asurascans") == [1, 2, 3, 4, 5, 6]
    assert len(items) == 4 * upstream.per_page


def test_failed_page_in_last_slot_ends_provider():
    upstream = Upstream({"asurascans": 25}, fail={("asurascans", 10)})
    engine = make_engine(upstream, batch_size=10)

    items = engine.fetch_provider("asurascans", "q")

    # Page 10 failing reads as the upstream running dry
    assert upstream.pages_for("asurascans") == list(range(1, 11))
    assert len(items) == 9 * upstream.per_page


# =============================================================================
# DEDUP / FILTERS
# =============================================================================

def test_deduplicate_collapses_same_provider_repeats_only():
    a1 = make_aggregator("x", "First", provider="asurascans")
    a2 = make_aggregator("x", "Repeat", provider="asurascans")
    b1 = make_aggregator("x", "Other provider", provider="mangapark")

    unique = deduplicate([a1, a2, b1])

    assert [(t.provider_name, t.title) for t in unique] == [("asurascans", "First"), ("mangapark", "Other provider")]
    assert deduplicate(unique) == unique


def test_post_filters_only_when_requested():
    items = [
        make_aggregator("a", "A", status="ongoing", content_rating="safe"),
        make_aggregator("b", "B", status="completed", content_rating="erotica"),
    ]
    assert len(apply_post_filters(items, SearchRequest())) == 2
    assert [i.id for i in apply_post_filters(items, SearchRequest(statuses=["completed"]))] == ["b"]
    assert [i.id for i in apply_post_filters(items, SearchRequest(content_ratings=["safe"]))] == ["a"]


# =============================================================================
# AGGREGATE
# =============================================================================

def test_revenge_scenario_keeps_one_title_per_provider():
    def two_pages_with_repeat(query, page):
        if page in (1, 2):
            return [{"id": "revenge-1", "title": "Return of the Avenger"}]
        return []

    providers = ("asurascans", "reaperscans", "flamescans")
    upstream = Upstream({p: two_pages_with_repeat for p in providers})
    engine = make_engine(upstream, providers=providers)

    result = engine.aggregate(SearchRequest(query="revenge", webcomic_type="manhwa", limit=20, offset=0))

    assert result.total_after_dedup == 3
    assert sorted(t.provider_name for t in result.items) == sorted(providers)
    assert result.per_provider_counts == {p: 2 for p in providers}
    assert all(t.content_type == "manhwa" for t in result.items)
    assert {q for _, q, _ in upstream.calls} == {"revenge"}


def test_aggregation_is_repeatable():
    upstream = Upstream({"asurascans": 2, "mangapark": 1})
    engine = make_engine(upstream, providers=("asurascans", "mangapark"))
    request = SearchRequest(query="q")

    first = engine.aggregate(request)
    second = engine.aggregate(request)

    assert [t.dedup_key for t in first.items] == [t.dedup_key for t in second.items]


def test_failing_provider_contributes_nothing():
    upstream = Upstream({"asurascans": 1, "mangapark": 3}, fail={("mangapark", None)})
    engine = make_engine(upstream, providers=("asurascans", "mangapark"))

    result = engine.aggregate(SearchRequest(query="q"))

    assert result.per_provider_counts == {"asurascans": 2, "mangapark": 0}
    assert result.total_after_dedup == 2


def test_offset_and_limit_slice_merged_set():
    upstream = Upstream({"asurascans": 3})
    engine = make_engine(upstream)

    result = engine.aggregate(SearchRequest(query="q", limit=2, offset=3))

    assert result.total_after_dedup == 6
    assert len(result.items) == 2
    response = result.to_response()
    assert response.source == "aggregator"
    assert response.total == 6
    assert response.total_pages == 3


def test_empty_query_browses_with_fallback_letter():
    upstream = Upstream({"asurascans": 1})
    engine = make_engine(upstream)

    engine.aggregate(SearchRequest(query="  "))

    assert {q for _, q, _ in upstream.calls} == {"a"}


def test_deadline_cancels_in_flight_pages():
    async def slow(request):
        await asyncio.sleep(5)
        return httpx.Response(200, json={"results": [{"id": "late", "title": "Late"}]})

    registry = ProviderRegistry(
        MangaDexClient(base_url="https://md.test"),
        [ConsumetClient("asurascans", base_url="https://consumet.test")],
    )
    engine = AggregationEngine(
        registry,
        timeout=0.2,
        client_factory=lambda: create_http_client(transport=httpx.MockTransport(slow)),
    )

    result = engine.aggregate(SearchRequest(query="q", limit=5))

    assert result.is_empty
    assert result.items == []
    assert result.limit == 5

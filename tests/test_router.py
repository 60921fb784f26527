from sources.base import SearchRequest, TitleListResponse
from sources.errors import IndexUnavailable, UpstreamUnavailable
from mangascope_app.search.aggregator import AggregationResult
from mangascope_app.search.router import SearchRouter, fallback_languages, section_for

from conftest import make_aggregator, make_canonical


class FakeCanonical:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.requests = []

    def search(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return TitleListResponse(items=list(self.items), total=len(self.items),
                                 limit=request.limit, offset=request.offset, source="canonical")


class FakeRegistry:
    def __init__(self, canonical):
        self.canonical = canonical


class FakeStore:
    def __init__(self, structured=None, fuzzy=None, error=None):
        self.structured = structured or []
        self.fuzzy = fuzzy or []
        self.error = error
        self.calls = []

    def structured_search(self, request, kind):
        self.calls.append(("structured", kind, request))
        if self.error:
            raise self.error
        return list(self.structured), len(self.structured)

    def fuzzy_search(self, request):
        self.calls.append(("fuzzy", "aggregator", request))
        if self.error:
            raise self.error
        return list(self.fuzzy), len(self.fuzzy)


class FakeAvailability:
    def __init__(self, populated=()):
        self.populated = set(populated)

    def is_populated(self, kind):
        return kind in self.populated


class FakeEngine:
    def __init__(self, items=None, error=None):
        self.items = items or []
        self.error = error
        self.requests = []

    def aggregate(self, request):
        self.requests.append(request)
        if self.error:
            raise self.error
        return AggregationResult(items=list(self.items), total_after_dedup=len(self.items),
                                 limit=request.limit, offset=request.offset)


def build(canonical=None, store=None, engine=None, populated=()):
    canonical = canonical or FakeCanonical()
    router = SearchRouter(FakeRegistry(canonical), store or FakeStore(), FakeAvailability(populated),
                          engine or FakeEngine())
    return router, canonical


# =============================================================================
# SECTION SELECTION
# =============================================================================

def test_legacy_routing():
    assert section_for(SearchRequest()) == "manga"
    assert section_for(SearchRequest(content_type="manga")) == "manga"
    assert section_for(SearchRequest(content_type="manhua")) == "webcomics"
    assert section_for(SearchRequest(webcomic_type="webtoon")) == "webcomics"
    assert section_for(SearchRequest(languages=["ko"])) == "webcomics"
    assert section_for(SearchRequest(languages=["en", "zh"])) == "webcomics"
    assert section_for(SearchRequest(section="manga", languages=["ko"])) == "manga"


def test_fallback_languages():
    assert fallback_languages("manhwa") == ["ko"]
    assert fallback_languages("webtoon") == ["ko"]
    assert fallback_languages("manhua") == ["zh"]
    assert fallback_languages(None) == ["ko", "zh"]


# =============================================================================
# CANONICAL SECTION
# =============================================================================

def test_canonical_cache_hit_forces_japanese():
    store = FakeStore(structured=[make_canonical("a", "Cached")])
    router, canonical = build(store=store, populated={"canonical"})

    response = router.resolve(SearchRequest(query="x", section="manga", languages=["ko"]))

    assert response.source == "cache"
    assert response.total == 1
    kind, request = store.calls[0][1], store.calls[0][2]
    assert kind == "canonical"
    assert request.languages == ["ja"]
    assert canonical.requests == []


def test_canonical_cache_miss_goes_live():
    router, canonical = build(canonical=FakeCanonical([make_canonical("a", "Live")]))

    response = router.resolve(SearchRequest(query="x", section="manga"))

    assert response.source == "canonical"
    assert canonical.requests[0].languages == ["ja"]


def test_canonical_store_error_goes_live():
    router, canonical = build(store=FakeStore(error=IndexUnavailable("store unreachable")),
                              canonical=FakeCanonical([make_canonical("a", "Live")]), populated={"canonical"})

    response = router.resolve(SearchRequest(query="x", section="manga"))

    assert response.source == "canonical"
    assert [item.title for item in response.items] == ["Live"]
    assert len(canonical.requests) == 1
    assert canonical.requests[0].languages == ["ja"]


def test_canonical_store_error_and_live_failure_is_empty():
    router, canonical = build(store=FakeStore(error=IndexUnavailable("store unreachable")),
                              canonical=FakeCanonical(error=UpstreamUnavailable("mangadex", "down")),
                              populated={"canonical"})

    response = router.resolve(SearchRequest(section="manga"))

    assert response.source == "none"
    assert response.items == []


def test_canonical_live_error_is_empty():
    router, _ = build(canonical=FakeCanonical(error=UpstreamUnavailable("mangadex", "HTTP 503")))
    response = router.resolve(SearchRequest(query="x"))
    assert response.source == "none"
    assert response.total == 0


# =============================================================================
# WEBCOMICS SECTION
# =============================================================================

def test_index_hit_answers_from_index():
    store = FakeStore(fuzzy=[make_aggregator("a", "Indexed")])
    engine = FakeEngine([make_aggregator("b", "Live")])
    router, canonical = build(store=store, engine=engine, populated={"aggregator"})

    response = router.resolve(SearchRequest(query="solo", section="webcomics"))

    assert response.source == "index"
    assert engine.requests == []
    assert canonical.requests == []


def test_empty_index_uses_live_aggregation_and_not_canonical():
    engine = FakeEngine([make_aggregator("b", "Live")])
    router, canonical = build(engine=engine, canonical=FakeCanonical([make_canonical("c", "Fallback")]))

    response = router.resolve(SearchRequest(query="solo", section="webcomics", webcomic_type="manhwa"))

    assert response.source == "aggregator"
    assert [i.id for i in response.items] == ["b"]
    assert engine.requests[0].webcomic_type == "manhwa"
    assert canonical.requests == []


def test_populated_index_without_matches_falls_to_live():
    engine = FakeEngine([make_aggregator("b", "Live")])
    router, _ = build(store=FakeStore(fuzzy=[]), engine=engine, populated={"aggregator"})

    response = router.resolve(SearchRequest(query="nothing", section="webcomics"))

    assert response.source == "aggregator"


def test_live_empty_falls_back_to_canonical_in_subtype_language():
    canonical = FakeCanonical([make_canonical("c", "Fallback", original_language="zh")])
    router, _ = build(canonical=canonical)

    response = router.resolve(SearchRequest(query="x", content_type="manhua"))

    assert response.source == "canonical-fallback"
    assert canonical.requests[0].languages == ["zh"]


def test_exhausted_waterfall_is_empty_not_error():
    router, canonical = build(store=FakeStore(error=IndexUnavailable("no trgm")),
                              engine=FakeEngine(error=RuntimeError("boom")), populated={"aggregator"})

    response = router.resolve(SearchRequest(query="x", section="webcomics", limit=10, offset=20))

    assert response.source == "none"
    assert response.items == []
    assert response.total == 0
    assert response.limit == 10
    assert response.offset == 20
    assert canonical.requests[0].languages == ["ko", "zh"]

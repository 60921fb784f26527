import pytest

from sources.base import SearchRequest, SourceStatus
from sources.errors import MalformedUpstreamResponse, RateLimited, UpstreamUnavailable
from sources.mangadex import MangaDexClient, build_search_params, filter_by_ranges, order_params
from sources.normalize import normalize_canonical_title


class FakeResponse:
    def __init__(self, status_code=200, payload=None, headers=None, raw=None):
        self.status_code = status_code
        self._payload = payload
        self.headers = headers or {}
        self._raw = raw

    def json(self):
        if self._raw is not None:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    """Records calls and replays queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        return self.responses.pop(0)


def manga_doc(title_id, title="T", **attrs):
    attributes = {"title": {"en": title}, "originalLanguage": "ja", "contentRating": "safe"}
    attributes.update(attrs)
    return {"id": title_id, "attributes": attributes, "relationships": []}


def test_search_maps_filters_and_normalizes():
    session = FakeSession(FakeResponse(payload={"data": [manga_doc("a", "Alpha")], "total": 1}))
    client = MangaDexClient(session=session, base_url="https://md.test")

    response = client.search(SearchRequest(query="alpha", statuses=["ongoing"], limit=10))

    call = session.calls[0]
    assert call["url"] == "https://md.test/manga"
    assert ("title", "alpha") in call["params"]
    assert ("status[]", "ongoing") in call["params"]
    assert ("contentRating[]", "safe") in call["params"]
    assert ("contentRating[]", "suggestive") in call["params"]
    assert ("originalLanguage[]", "ja") in call["params"]
    assert ("order[relevance]", "desc") in call["params"]
    assert "MangaScope" in call["headers"]["User-Agent"]
    assert response.source == "canonical"
    assert [i.title for i in response.items] == ["Alpha"]
    assert client.status == SourceStatus.ONLINE


def test_order_params_mapping():
    assert order_params(SearchRequest(sort_by="popularity")) == [("order[followedCount]", "desc")]
    assert order_params(SearchRequest(sort_by="title")) == [("order[title]", "asc")]
    assert order_params(SearchRequest(sort_by="title", sort_order="desc")) == [("order[title]", "desc")]
    assert order_params(SearchRequest(sort_by="relevance")) == [("order[updatedAt]", "desc")]


def test_build_search_params_uses_requested_languages():
    params = build_search_params(SearchRequest(languages=["ko", "zh"]), 20)
    languages = [v for k, v in params if k == "originalLanguage[]"]
    assert languages == ["ko", "zh"]


def test_range_post_filters_drop_unknown_chapter_totals():
    known = normalize_canonical_title(manga_doc("k", lastChapter="50", year=2010))
    unknown = normalize_canonical_title(manga_doc("u", year=2010))
    kept = filter_by_ranges([known, unknown], SearchRequest(min_chapters=10, min_year=2000))
    assert [i.id for i in kept] == ["k"]


def test_list_titles_returns_docs_and_total():
    session = FakeSession(FakeResponse(payload={"data": [manga_doc("a")], "total": 345}))
    client = MangaDexClient(session=session, base_url="https://md.test")

    docs, total = client.list_titles(limit=100, offset=200, updated_since="2024-01-01T00:00:00")

    params = session.calls[0]["params"]
    assert ("offset", 200) in params
    assert ("updatedAtSince", "2024-01-01T00:00:00") in params
    assert ("contentRating[]", "pornographic") in params
    assert total == 345
    assert docs[0]["id"] == "a"


def test_statistics_parses_follows_and_totals():
    payload = {"statistics": {"a": {"follows": 7, "chapters": {"total": 33}}, "b": {"follows": None}}}
    client = MangaDexClient(session=FakeSession(FakeResponse(payload=payload)), base_url="https://md.test")

    stats = client.get_statistics(["a", "b"])

    assert stats == {"a": {"follows": 7, "chapters": 33}, "b": {"follows": 0, "chapters": None}}


def test_chapters_exclude_external():
    payload = {"data": [
        {"id": "c1", "attributes": {"chapter": "1", "pages": 20}},
        {"id": "c2", "attributes": {"chapter": "2", "externalUrl": "https://elsewhere"}},
    ], "total": 2}
    client = MangaDexClient(session=FakeSession(FakeResponse(payload=payload)), base_url="https://md.test")

    chapters = client.get_chapters("a")

    assert [c.id for c in chapters.chapters] == ["c1"]
    assert chapters.external_count == 1


def test_rate_limit_raises_typed_error():
    session = FakeSession(FakeResponse(status_code=429, headers={"Retry-After": "3"}))
    client = MangaDexClient(session=session, base_url="https://md.test")

    with pytest.raises(RateLimited) as info:
        client.list_titles()

    assert info.value.retry_after == 3.0
    assert client.status == SourceStatus.RATE_LIMITED


def test_server_error_and_bad_json():
    client = MangaDexClient(
        session=FakeSession(FakeResponse(status_code=503), FakeResponse(raw="<html>")),
        base_url="https://md.test"
    )

    with pytest.raises(UpstreamUnavailable) as info:
        client.list_titles()
    assert info.value.status_code == 503

    with pytest.raises(MalformedUpstreamResponse):
        client.list_titles()


def test_missing_data_array_is_malformed():
    client = MangaDexClient(session=FakeSession(FakeResponse(payload={"result": "ok"})), base_url="https://md.test")
    with pytest.raises(MalformedUpstreamResponse):
        client.search(SearchRequest(query="x"))

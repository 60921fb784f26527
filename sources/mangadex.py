"""
================================================================================
MangaScope v1.0 - MangaDex Canonical Client
================================================================================
The single authoritative catalog: one record per title, strong metadata.

THIS IMPLEMENTATION:
  - Conservative token bucket (4 req/sec, below MangaDex's 5/sec limit)
  - Identifying User-Agent (no browser spoofing)
  - Typed failures instead of silent None: 429 -> RateLimited, other non-2xx
    and network errors -> UpstreamUnavailable, bad JSON -> Malformed
  - No retries here: the sync engine owns retry policy, live search fails
    fast and lets the router fall through

ENDPOINTS USED:
  GET /manga                  list/search (limit <= 100)
  GET /manga/{id}             single title
  GET /statistics/manga       follows + chapter totals, batched by id
  GET /chapter                chapter list (externalUrl chapters excluded)
================================================================================
"""

import os
from typing import Any, Dict, List, Optional, Sequence, Tuple

import requests

from .base import (
    ChapterList, NormalizedTitle, ProviderClient, SearchRequest, SourceKind,
    TitleListResponse, source_log, CONTENT_RATINGS, DEFAULT_CONTENT_RATINGS
)
from .errors import MalformedUpstreamResponse, RateLimited, UpstreamUnavailable
from .normalize import normalize_canonical_chapter, normalize_canonical_title


Params = List[Tuple[str, Any]]

MAX_LIMIT = 100
STATISTICS_BATCH = 100


class MangaDexClient(ProviderClient):
    """Canonical catalog client for the MangaDex v5 API."""

    id = "mangadex"
    name = "MangaDex"
    kind = SourceKind.CANONICAL
    base_url = "https://api.mangadex.org"

    rate_limit = 4.0
    rate_limit_burst = 4
    request_timeout = 15

    USER_AGENT = "MangaScope/1.0 (catalog sync)"

    def __init__(self, session: Optional[requests.Session] = None, base_url: Optional[str] = None):
        super().__init__()
        self.session = session
        self.base_url = (base_url or os.environ.get("MANGADEX_API") or self.base_url).rstrip("/")

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def _headers(self) -> Dict[str, str]:
        return {
            "User-Agent": self.USER_AGENT,
            "Accept": "application/json"
        }

    def _request(self, endpoint: str, params: Optional[Params] = None) -> Dict[str, Any]:
        """
        Make a rate-limited API request.

        Raises:
            RateLimited: on 429 (cooldown recorded from Retry-After)
            UpstreamUnavailable: on 403, 5xx, other non-2xx or network errors
            MalformedUpstreamResponse: when the body is not a JSON object
        """
        if self.session is None:
            self.session = requests.Session()

        self._wait_for_rate_limit()
        url = f"{self.base_url}{endpoint}"

        try:
            response = self.session.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.request_timeout
            )
        except requests.RequestException as e:
            self._handle_error(str(e))
            raise UpstreamUnavailable(self.id, f"request failed: {e}") from e

        if response.status_code == 429:
            retry_after = _retry_after(response.headers.get("Retry-After"))
            self._handle_rate_limit(retry_after or 5)
            source_log(f"⚠️ MangaDex rate limit hit on {endpoint}")
            raise RateLimited(self.id, retry_after=retry_after)

        if response.status_code == 403:
            self._handle_blocked()
            source_log("🚫 MangaDex refused the request (403)")
            raise UpstreamUnavailable(self.id, "forbidden", status_code=403)

        if response.status_code != 200:
            self._handle_error(f"HTTP {response.status_code}")
            raise UpstreamUnavailable(self.id, f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            self._handle_error("invalid JSON")
            raise MalformedUpstreamResponse(self.id, f"invalid JSON from {endpoint}") from e

        if not isinstance(payload, dict):
            raise MalformedUpstreamResponse(self.id, f"unexpected payload type from {endpoint}")

        self._handle_success()
        return payload

    # =========================================================================
    # LIST / SEARCH
    # =========================================================================

    def list_titles(
        self,
        limit: int = MAX_LIMIT,
        offset: int = 0,
        content_ratings: Sequence[str] = CONTENT_RATINGS,
        updated_since: Optional[str] = None,
        order: Optional[Dict[str, str]] = None,
        languages: Optional[Sequence[str]] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        """
        Fetch one raw page of manga documents (used by the sync engine).

        Returns:
            (documents, upstream total)
        """
        params: Params = [
            ("limit", min(max(int(limit), 1), MAX_LIMIT)),
            ("offset", max(int(offset), 0)),
            ("includes[]", "cover_art"),
            ("includes[]", "author"),
            ("includes[]", "artist"),
        ]
        for rating in content_ratings:
            params.append(("contentRating[]", rating))
        for language in languages or []:
            params.append(("originalLanguage[]", language))
        if updated_since:
            params.append(("updatedAtSince", updated_since))
        for key, direction in (order or {"updatedAt": "desc"}).items():
            params.append((f"order[{key}]", direction))

        payload = self._request("/manga", params)
        data = payload.get("data")
        if not isinstance(data, list):
            raise MalformedUpstreamResponse(self.id, "manga list without data array")
        return data, int(payload.get("total") or 0)

    def search(self, request: SearchRequest) -> TitleListResponse:
        """Live search with filters mapped onto MangaDex query parameters."""
        limit = min(max(request.limit, 1), MAX_LIMIT)
        params = build_search_params(request, limit)

        payload = self._request("/manga", params)
        data = payload.get("data")
        if not isinstance(data, list):
            raise MalformedUpstreamResponse(self.id, "manga list without data array")

        items = [normalize_canonical_title(doc) for doc in data]
        items = filter_by_ranges(items, request)

        return TitleListResponse(
            items=items,
            total=int(payload.get("total") or 0),
            limit=limit,
            offset=request.offset,
            source="canonical"
        )

    # =========================================================================
    # DETAIL / STATISTICS / CHAPTERS
    # =========================================================================

    def get_details(self, title_id: str) -> NormalizedTitle:
        params: Params = [
            ("includes[]", "cover_art"),
            ("includes[]", "author"),
            ("includes[]", "artist"),
        ]
        payload = self._request(f"/manga/{title_id}", params)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise MalformedUpstreamResponse(self.id, f"manga {title_id} without data object")
        statistics = self.get_statistics([title_id])
        return normalize_canonical_title(data, statistics)

    def get_statistics(self, title_ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """
        Batch-fetch follows and chapter totals.

        Returns a dict keyed by title id: {"follows": int, "chapters": int|None}.
        """
        result: Dict[str, Dict[str, Any]] = {}
        ids = [i for i in title_ids if i]
        for start in range(0, len(ids), STATISTICS_BATCH):
            chunk = ids[start:start + STATISTICS_BATCH]
            params: Params = [("manga[]", title_id) for title_id in chunk]
            payload = self._request("/statistics/manga", params)
            statistics = payload.get("statistics") or {}
            if not isinstance(statistics, dict):
                raise MalformedUpstreamResponse(self.id, "statistics payload is not an object")
            for title_id, stats in statistics.items():
                if not isinstance(stats, dict):
                    continue
                chapters = stats.get("chapters")
                total = chapters.get("total") if isinstance(chapters, dict) else None
                result[title_id] = {
                    "follows": stats.get("follows") or 0,
                    "chapters": total,
                }
        return result

    def get_chapters(
        self,
        title_id: str,
        language: str = "en",
        limit: int = MAX_LIMIT,
        offset: int = 0
    ) -> ChapterList:
        params: Params = [
            ("manga", title_id),
            ("limit", min(max(int(limit), 1), MAX_LIMIT)),
            ("offset", max(int(offset), 0)),
            ("translatedLanguage[]", language),
            ("order[chapter]", "asc"),
        ]
        for rating in CONTENT_RATINGS:
            params.append(("contentRating[]", rating))

        payload = self._request("/chapter", params)
        chapters = [normalize_canonical_chapter(c) for c in payload.get("data") or []]
        readable = [c for c in chapters if not c.external_url]
        return ChapterList(
            title_id=title_id,
            chapters=readable,
            external_count=len(chapters) - len(readable),
            total=int(payload.get("total") or 0)
        )


# =============================================================================
# PARAMETER BUILDING
# =============================================================================

def _retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def order_params(request: SearchRequest) -> Params:
    """Map sort_by/sort_order onto a single MangaDex order directive."""
    direction = request.sort_order if request.sort_order in ("asc", "desc") else None
    if request.sort_by == "popularity":
        return [("order[followedCount]", direction or "desc")]
    if request.sort_by == "latest":
        return [("order[updatedAt]", direction or "desc")]
    if request.sort_by == "title":
        return [("order[title]", "desc" if direction == "desc" else "asc")]
    if request.sort_by == "year":
        return [("order[year]", direction or "desc")]
    if request.has_query:
        return [("order[relevance]", "desc")]
    return [("order[updatedAt]", "desc")]


def build_search_params(request: SearchRequest, limit: int) -> Params:
    params: Params = [
        ("limit", limit),
        ("offset", max(request.offset, 0)),
        ("includes[]", "cover_art"),
        ("includes[]", "author"),
        ("includes[]", "artist"),
    ]
    if request.has_query:
        params.append(("title", request.text))

    for rating in request.content_ratings or DEFAULT_CONTENT_RATINGS:
        params.append(("contentRating[]", rating))
    for status in request.statuses:
        params.append(("status[]", status))
    for tag_id in request.included_tags:
        params.append(("includedTags[]", tag_id))
    for tag_id in request.excluded_tags:
        params.append(("excludedTags[]", tag_id))
    for language in request.languages or ["ja"]:
        params.append(("originalLanguage[]", language))
    for demographic in request.demographics:
        params.append(("publicationDemographic[]", demographic))

    params.extend(order_params(request))
    return params


def filter_by_ranges(items: List[NormalizedTitle], request: SearchRequest) -> List[NormalizedTitle]:
    """Chapter and year ranges MangaDex cannot express server-side."""
    def keep(item: NormalizedTitle) -> bool:
        if request.min_chapters is not None or request.max_chapters is not None:
            chapters = item.total_chapters.value
            if chapters is None:
                return False
            if request.min_chapters is not None and chapters < request.min_chapters:
                return False
            if request.max_chapters is not None and chapters > request.max_chapters:
                return False
        if request.min_year is not None and (item.year is None or item.year < request.min_year):
            return False
        if request.max_year is not None and (item.year is None or item.year > request.max_year):
            return False
        return True

    return [item for item in items if keep(item)]

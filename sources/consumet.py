"""
================================================================================
MangaScope v1.0 - Consumet Aggregator Client
================================================================================
One AggregatorClient per scraped provider behind the Consumet API.

ENDPOINTS:
  GET {api}/manga/{provider}/{query}?page=N   -> {results: [...], hasNextPage}
  GET {api}/manga/{provider}/info?id=...      -> title + chapter list
  GET {api}/manga/{provider}/read?chapterId=  -> page images (not used here)

NOTES:
  - hasNextPage is unreliable and deliberately ignored; the aggregation
    engine decides when a provider is exhausted.
  - Some providers answer errors with an HTML page and status 200. Those
    bodies are reported as MalformedUpstreamResponse.
  - Clients are stateless apart from health counters. The httpx.AsyncClient
    is owned by the caller so one connection pool serves a whole fan-out.
================================================================================
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import httpx

from .base import (
    ChapterList, NormalizedTitle, ProviderClient, SourceKind
)
from .errors import MalformedUpstreamResponse, RateLimited, UpstreamUnavailable
from .normalize import (
    normalize_aggregator_chapter, normalize_aggregator_title
)


DEFAULT_API = "https://api.consumet.org"
REQUEST_TIMEOUT = 8.0
USER_AGENT = "MangaScope/1.0 (aggregator)"

ALL_PROVIDERS = ["mangakakalot", "mangapark", "asurascans", "reaperscans", "flamescans"]


def consumet_api_url() -> str:
    return (os.environ.get("CONSUMET_API") or DEFAULT_API).rstrip("/")


def create_http_client(
    timeout: float = REQUEST_TIMEOUT,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> httpx.AsyncClient:
    """Build the shared async client for one fan-out."""
    return httpx.AsyncClient(
        timeout=timeout,
        transport=transport,
        follow_redirects=True,
        headers={
            "User-Agent": USER_AGENT,
            "Accept": "application/json"
        }
    )


def parse_json_safe(source: str, response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object, treating HTML error pages as malformed."""
    text = response.text.strip()
    lowered = text[:20].lower()
    if lowered.startswith("<!doctype") or lowered.startswith("<html"):
        raise MalformedUpstreamResponse(source, "HTML page instead of JSON")
    try:
        payload = response.json()
    except ValueError as e:
        raise MalformedUpstreamResponse(source, "invalid JSON") from e
    if not isinstance(payload, dict):
        raise MalformedUpstreamResponse(source, "payload is not an object")
    return payload


class ConsumetClient(ProviderClient):
    """Aggregator client bound to a single Consumet provider."""

    kind = SourceKind.AGGREGATOR

    def __init__(self, provider: str, base_url: Optional[str] = None):
        super().__init__()
        self.id = provider
        self.name = f"Consumet/{provider}"
        self.base_url = (base_url or consumet_api_url()).rstrip("/")

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def search_url(self, query: str, page: int) -> str:
        return f"{self.base_url}/manga/{self.id}/{quote(query, safe='')}?page={page}"

    async def _get(self, client: httpx.AsyncClient, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        try:
            response = await client.get(url, params=params)
        except httpx.HTTPError as e:
            self._handle_error(str(e) or e.__class__.__name__)
            raise UpstreamUnavailable(self.id, f"request failed: {e.__class__.__name__}") from e

        if response.status_code == 429:
            self._handle_rate_limit(30)
            raise RateLimited(self.id)
        if response.status_code != 200:
            self._handle_error(f"HTTP {response.status_code}")
            raise UpstreamUnavailable(self.id, f"HTTP {response.status_code}", status_code=response.status_code)

        try:
            payload = parse_json_safe(self.id, response)
        except MalformedUpstreamResponse:
            self._handle_error("malformed body")
            raise
        self._handle_success()
        return payload

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def search_page(
        self,
        client: httpx.AsyncClient,
        query: str,
        page: int,
        requested_type: Optional[str] = None
    ) -> List[NormalizedTitle]:
        """Fetch and normalize one search page."""
        payload = await self._get(client, self.search_url(query, page))
        results = payload.get("results")
        if results is None:
            return []
        if not isinstance(results, list):
            raise MalformedUpstreamResponse(self.id, "results is not a list")

        fetched_at = datetime.now(timezone.utc).isoformat()
        return [
            normalize_aggregator_title(raw, self.id, requested_type, updated_at=fetched_at)
            for raw in results
            if isinstance(raw, dict) and raw.get("id")
        ]

    async def get_info(
        self,
        client: httpx.AsyncClient,
        title_id: str,
        requested_type: Optional[str] = None
    ) -> NormalizedTitle:
        """Title detail; the chapter list makes the chapter total exact."""
        payload = await self._get(client, f"{self.base_url}/manga/{self.id}/info", {"id": title_id})
        if not payload.get("id"):
            raise MalformedUpstreamResponse(self.id, f"info for {title_id} has no id")
        return normalize_aggregator_title(
            payload, self.id, requested_type,
            updated_at=datetime.now(timezone.utc).isoformat()
        )

    async def get_chapters(self, client: httpx.AsyncClient, title_id: str) -> ChapterList:
        payload = await self._get(client, f"{self.base_url}/manga/{self.id}/info", {"id": title_id})
        chapters = [
            normalize_aggregator_chapter(c)
            for c in payload.get("chapters") or []
            if isinstance(c, dict) and c.get("id")
        ]
        return ChapterList(title_id=title_id, chapters=chapters, total=len(chapters))

"""
================================================================================
MangaScope v1.0 - Parallel Pagination & Aggregation Engine
================================================================================
Fans a search out to every aggregator provider at once, pages each provider
until it runs dry, then deduplicates and paginates the merged set.

Flow:
  1. One asyncio task per provider (priority order by subtype)
  2. Each task fetches pages in concurrent batches of B pages
  3. A provider stops when a batch comes back without items at its end
     (upstream hasNextPage flags are ignored), or at MAX_PAGES
     Requiring the batch's last page to be non-empty keeps the request
     count at ceil((N+1)/B) batches for N non-empty pages. The cost is
     coverage: a timed-out or failed page in a batch's last slot reads as
     the upstream running dry, so that provider stops there even if later
     pages exist. A failed page anywhere else in the batch does not stop it.
  4. Failed pages count as empty; they are logged, never retried here
  5. Dedup on provider:id, post-filter status/rating, slice offset/limit

Identity:
  The same work under two providers is kept twice. Only exact repeats from
  one provider collapse.
================================================================================
"""

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import httpx

from sources import ProviderRegistry
from sources.base import NormalizedTitle, SearchRequest, TitleListResponse
from sources.consumet import ConsumetClient, create_http_client
from sources.errors import CatalogError

logger = logging.getLogger(__name__)


CONCURRENT_PAGES = 10
MAX_PAGES_PER_PROVIDER = 50
PAGE_TIMEOUT = 8.0
BROWSE_FALLBACK_QUERY = "a"
DEFAULT_LIMIT = 20
MAX_LIMIT = 100


def default_timeout() -> float:
    try:
        return float(os.environ.get("AGGREGATION_TIMEOUT", "25"))
    except ValueError:
        return 25.0


def run_async(coro):
    """Run a coroutine to completion from synchronous code."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    # Already inside a loop on this thread: use a private loop elsewhere.
    with ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class PageBatch:
    """Outcome of one concurrent batch of pages for one provider."""
    results: List[NormalizedTitle] = field(default_factory=list)
    has_more: bool = False
    pages_requested: int = 0


@dataclass
class AggregationResult:
    """One page of deduplicated aggregator titles plus per-provider tallies."""
    items: List[NormalizedTitle] = field(default_factory=list)
    per_provider_counts: Dict[str, int] = field(default_factory=dict)
    total_after_dedup: int = 0
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    @property
    def is_empty(self) -> bool:
        return self.total_after_dedup == 0

    def to_response(self, source: str = "aggregator") -> TitleListResponse:
        return TitleListResponse(
            items=list(self.items),
            total=self.total_after_dedup,
            limit=self.limit,
            offset=self.offset,
            source=source
        )


# =============================================================================
# PURE STEPS
# =============================================================================

def deduplicate(items: List[NormalizedTitle]) -> List[NormalizedTitle]:
    """Collapse exact (provider, id) repeats; first occurrence wins."""
    seen: Dict[str, NormalizedTitle] = {}
    for item in items:
        key = item.dedup_key
        if key not in seen:
            seen[key] = item
    return list(seen.values())


def apply_post_filters(items: List[NormalizedTitle], request: SearchRequest) -> List[NormalizedTitle]:
    """Filters the aggregator search endpoint cannot express."""
    statuses = set(request.statuses)
    ratings = set(request.content_ratings)
    if statuses:
        items = [i for i in items if i.status in statuses]
    if ratings:
        items = [i for i in items if i.content_rating in ratings]
    return items


def batch_has_more(pages: List[List[NormalizedTitle]]) -> bool:
    """
    A batch has more when at least one page returned items and the batch's
    highest page still did, i.e. the upstream did not run dry inside it.
    """
    return bool(pages) and any(pages) and bool(pages[-1])


# =============================================================================
# ENGINE
# =============================================================================

class AggregationEngine:
    """
    Live multi-provider aggregation.

    Usage:
        engine = AggregationEngine(registry)
        result = engine.aggregate(SearchRequest(query="revenge", webcomic_type="manhwa"))
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        batch_size: int = CONCURRENT_PAGES,
        max_pages: int = MAX_PAGES_PER_PROVIDER,
        page_timeout: float = PAGE_TIMEOUT,
        timeout: Optional[float] = None,
        client_factory: Callable[[], httpx.AsyncClient] = create_http_client
    ):
        self.registry = registry
        self.batch_size = max(1, batch_size)
        self.max_pages = max(1, max_pages)
        self.page_timeout = page_timeout
        self.timeout = timeout if timeout is not None else default_timeout()
        self.client_factory = client_factory

    # =========================================================================
    # PAGE / BATCH / PROVIDER
    # =========================================================================

    async def fetch_page(
        self,
        http: httpx.AsyncClient,
        provider: ConsumetClient,
        query: str,
        page: int,
        requested_type: Optional[str] = None
    ) -> List[NormalizedTitle]:
        """One page; any failure resolves to an empty list."""
        try:
            return await asyncio.wait_for(
                provider.search_page(http, query, page, requested_type),
                timeout=self.page_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"{provider.id} page {page} timed out after {self.page_timeout}s")
        except CatalogError as e:
            logger.warning(f"{provider.id} page {page} failed: {e}")
        return []

    async def fetch_batch(
        self,
        http: httpx.AsyncClient,
        provider: ConsumetClient,
        query: str,
        start_page: int,
        size: int,
        requested_type: Optional[str] = None
    ) -> PageBatch:
        tasks = [
            self.fetch_page(http, provider, query, start_page + i, requested_type)
            for i in range(size)
        ]
        pages = await asyncio.gather(*tasks, return_exceptions=True)

        ordered: List[List[NormalizedTitle]] = []
        for offset, page in enumerate(pages):
            if isinstance(page, BaseException):
                if isinstance(page, asyncio.CancelledError):
                    raise page
                logger.error(f"{provider.id} page {start_page + offset} crashed: {page}")
                ordered.append([])
            else:
                ordered.append(page)

        results = [item for page in ordered for item in page]
        return PageBatch(results=results, has_more=batch_has_more(ordered), pages_requested=size)

    async def fetch_all_pages(
        self,
        provider: ConsumetClient,
        query: str,
        requested_type: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        batch_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        batch_delay: float = 0.0
    ) -> List[NormalizedTitle]:
        """Page one provider until it runs dry or the page cap is reached."""
        if http is None:
            async with self.client_factory() as own_http:
                return await self.fetch_all_pages(
                    provider, query, requested_type, own_http,
                    batch_size, max_pages, batch_delay
                )

        size = max(1, batch_size or self.batch_size)
        cap = max(1, max_pages or self.max_pages)
        collected: List[NormalizedTitle] = []
        page = 1

        while page <= cap:
            count = min(size, cap - page + 1)
            batch = await self.fetch_batch(http, provider, query, page, count, requested_type)
            collected.extend(batch.results)
            if not batch.has_more:
                break
            page += count
            if batch_delay and page <= cap:
                await asyncio.sleep(batch_delay)

        return collected

    # =========================================================================
    # AGGREGATE
    # =========================================================================

    async def aggregate_async(self, request: SearchRequest) -> AggregationResult:
        providers = self.registry.aggregators_for(request.webcomic_type)
        query = request.text or BROWSE_FALLBACK_QUERY
        limit = min(max(request.limit or DEFAULT_LIMIT, 1), MAX_LIMIT)
        offset = max(request.offset, 0)

        logger.info(f"⚡ Parallel fetch for '{query}' from: {', '.join(p.id for p in providers)}")
        start = time.time()

        async with self.client_factory() as http:
            tasks = [
                self.fetch_all_pages(p, query, request.webcomic_type, http)
                for p in providers
            ]
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)

        merged: List[NormalizedTitle] = []
        counts: Dict[str, int] = {}
        for provider, outcome in zip(providers, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.error(f"{provider.id} aggregation failed: {outcome}")
                counts[provider.id] = 0
                continue
            counts[provider.id] = len(outcome)
            merged.extend(outcome)

        unique = apply_post_filters(deduplicate(merged), request)
        logger.info(
            f"⚡ Fetched {len(merged)} items in {time.time() - start:.2f}s, "
            f"{len(unique)} after dedup/filter ({counts})"
        )

        return AggregationResult(
            items=unique[offset:offset + limit],
            per_provider_counts=counts,
            total_after_dedup=len(unique),
            limit=limit,
            offset=offset
        )

    def aggregate(self, request: SearchRequest, timeout: Optional[float] = None) -> AggregationResult:
        """
        Synchronous entry point bounded by the caller's deadline.

        On timeout every in-flight page fetch is cancelled and an empty
        result is returned so the router can move to its next tier.
        """
        deadline = timeout if timeout is not None else self.timeout

        async def bounded() -> AggregationResult:
            return await asyncio.wait_for(self.aggregate_async(request), timeout=deadline)

        try:
            return run_async(bounded())
        except asyncio.TimeoutError:
            logger.warning(f"Aggregation cancelled after {deadline}s deadline")
            return AggregationResult(limit=request.limit, offset=request.offset)

    def fetch_provider(
        self,
        provider_name: str,
        query: str,
        batch_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        batch_delay: float = 0.0
    ) -> List[NormalizedTitle]:
        """Synchronous full pagination of a single provider (indexer use)."""
        provider = self.registry.aggregator(provider_name)
        return run_async(self.fetch_all_pages(
            provider, query,
            batch_size=batch_size, max_pages=max_pages, batch_delay=batch_delay
        ))

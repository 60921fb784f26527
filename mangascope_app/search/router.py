"""
================================================================================
MangaScope v1.0 - Search Router
================================================================================
Decides, per request, which tier answers it.

CANONICAL SECTION (section=manga):
  cache populated  -> structured store query (original language forced to ja)
  otherwise        -> live canonical client
  store error      -> live canonical client (the availability memo can be stale)
  An empty cache answer is final.

AGGREGATOR SECTION (section=webcomics):
  index populated  -> fuzzy store query
  empty / missing  -> live aggregation engine
  still empty      -> canonical client restricted to the subtype's languages

LEGACY ROUTING (no section):
  subtype other than manga, or language ko/zh -> aggregator section
  everything else                             -> canonical section

Every tier failure is logged and treated as an empty answer. A fully
exhausted waterfall returns an empty page with source "none".
================================================================================
"""

import logging
from dataclasses import replace
from typing import List, Optional

from sources import ProviderRegistry
from sources.base import SearchRequest, SourceKind, TitleListResponse, WEBCOMIC_TYPES

from .aggregator import AggregationEngine
from .availability import CacheAvailabilityChecker
from .store import CatalogStore

logger = logging.getLogger(__name__)

SECTION_MANGA = 'manga'
SECTION_WEBCOMICS = 'webcomics'
SECTIONS = (SECTION_MANGA, SECTION_WEBCOMICS)

SUBTYPE_LANGUAGES = {
    'manhwa': ['ko'],
    'webtoon': ['ko'],
    'manhua': ['zh'],
}
WEBCOMIC_LANGUAGES = ['ko', 'zh']


def webcomic_subtype(request: SearchRequest) -> Optional[str]:
    if request.webcomic_type in WEBCOMIC_TYPES:
        return request.webcomic_type
    if request.content_type in WEBCOMIC_TYPES:
        return request.content_type
    return None


def section_for(request: SearchRequest) -> str:
    """Explicit section, else the legacy type/language routing."""
    if request.section in SECTIONS:
        return request.section
    subtype = request.webcomic_type or request.content_type
    if subtype and subtype != SECTION_MANGA:
        return SECTION_WEBCOMICS
    if any(lang in WEBCOMIC_LANGUAGES for lang in request.languages):
        return SECTION_WEBCOMICS
    return SECTION_MANGA


def fallback_languages(subtype: Optional[str]) -> List[str]:
    return list(SUBTYPE_LANGUAGES.get(subtype or '', WEBCOMIC_LANGUAGES))


class SearchRouter:
    """
    Fallback waterfall over cache, index, live aggregation and canonical.

    Usage:
        router = SearchRouter(registry, store, availability, engine)
        response = router.resolve(SearchRequest(query="solo", section="webcomics"))
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        store: CatalogStore,
        availability: CacheAvailabilityChecker,
        engine: AggregationEngine
    ):
        self.registry = registry
        self.store = store
        self.availability = availability
        self.engine = engine

    def resolve(self, request: SearchRequest) -> TitleListResponse:
        section = section_for(request)
        if section == SECTION_MANGA:
            return self._resolve_canonical(request)
        return self._resolve_webcomics(request)

    # =========================================================================
    # SECTIONS
    # =========================================================================

    def _resolve_canonical(self, request: SearchRequest) -> TitleListResponse:
        request = replace(request, section=SECTION_MANGA, languages=['ja'])

        if self.availability.is_populated(SourceKind.CANONICAL.value):
            try:
                items, total = self.store.structured_search(request, SourceKind.CANONICAL.value)
                return self._page(request, items, total, 'cache')
            except Exception as e:
                logger.error(f"Cache query failed, going live: {e}")
                return self._live_canonical(request, 'canonical')

        return self._live_canonical(request, 'canonical')

    def _resolve_webcomics(self, request: SearchRequest) -> TitleListResponse:
        subtype = webcomic_subtype(request)
        request = replace(request, section=SECTION_WEBCOMICS, webcomic_type=subtype)

        if self.availability.is_populated(SourceKind.AGGREGATOR.value):
            try:
                items, total = self.store.fuzzy_search(request)
                if total > 0:
                    return self._page(request, items, total, 'index')
                logger.info(f"Index empty for '{request.text}', trying live aggregation")
            except Exception as e:
                logger.error(f"Index query failed: {e}")

        try:
            result = self.engine.aggregate(request)
            if not result.is_empty:
                return result.to_response('aggregator')
            logger.info(f"Live aggregation empty for '{request.text}', trying canonical")
        except Exception as e:
            logger.error(f"Live aggregation failed: {e}")

        fallback = replace(request, languages=fallback_languages(subtype))
        response = self._live_canonical(fallback, 'canonical-fallback')
        if not response.items:
            return self._empty(request)
        return response

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _live_canonical(self, request: SearchRequest, source: str) -> TitleListResponse:
        try:
            response = self.registry.canonical.search(request)
        except Exception as e:
            logger.error(f"Canonical search failed: {e}")
            return self._empty(request)
        response.source = source
        return response

    @staticmethod
    def _page(request: SearchRequest, items, total: int, source: str) -> TitleListResponse:
        return TitleListResponse(
            items=items,
            total=total,
            limit=request.limit,
            offset=request.offset,
            source=source
        )

    @staticmethod
    def _empty(request: SearchRequest) -> TitleListResponse:
        return TitleListResponse(limit=request.limit, offset=request.offset, source='none')

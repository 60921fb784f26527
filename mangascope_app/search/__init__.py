"""
================================================================================
MangaScope v1.0 - Search Package
================================================================================
Request-time catalog search.

Components:
  - aggregator.py   - Parallel multi-provider pagination, dedup, paging
  - availability.py - TTL-memoized "is the cache populated?" probe
  - store.py        - Structured and trigram queries over the local index
  - router.py       - Cache -> index -> live aggregation -> canonical waterfall
================================================================================
"""

from .aggregator import AggregationEngine, AggregationResult, deduplicate
from .availability import CacheAvailabilityChecker
from .router import SearchRouter, section_for
from .store import CatalogStore

__all__ = [
    'AggregationEngine', 'AggregationResult', 'deduplicate',
    'CacheAvailabilityChecker', 'CatalogStore', 'SearchRouter', 'section_for',
]

"""
================================================================================
MangaScope v1.0 - Webcomic Indexer
================================================================================
Crawls the aggregator providers into the local index so webcomic searches
can be answered from the fuzzy index instead of a live fan-out.

STRATEGY:
  For each provider in ALL_PROVIDERS, for each alphabet query (a-z, 0-9):
    - page the provider until it runs dry (5 pages per batch, 30 pages max,
      500ms between batches)
    - dedup on provider:id, upsert, save a checkpoint (provider, query)
  A failing query is logged and skipped.

RESUME:
  Without --full/--provider/--query, a run skips providers before the saved
  provider and starts at the query after the saved query. A run that
  finishes clears the checkpoint.
================================================================================
"""

import string
import time
from typing import Callable, List, Optional, Sequence, Tuple

from sources.consumet import ALL_PROVIDERS, create_http_client

from ..database import get_db_session
from ..log import log
from ..search.aggregator import AggregationEngine, deduplicate
from .catalog import SyncProgress, SyncReport
from .state import SyncStateStore, utcnow
from .upsert import upsert_titles


ALPHABET_QUERIES = list(string.ascii_lowercase) + list(string.digits)

INDEX_BATCH_PAGES = 5
INDEX_MAX_PAGES = 30
INDEX_DELAY_MS = 500
INDEX_TIMEOUT = 15.0

KIND = 'aggregator'

Plan = List[Tuple[str, List[str]]]


def indexer_engine(registry) -> AggregationEngine:
    """Aggregation engine tuned for crawling rather than live search."""
    return AggregationEngine(
        registry,
        batch_size=INDEX_BATCH_PAGES,
        max_pages=INDEX_MAX_PAGES,
        page_timeout=INDEX_TIMEOUT,
        client_factory=lambda: create_http_client(timeout=INDEX_TIMEOUT)
    )


class WebcomicIndexer:
    """Checkpointed alphabet crawl of every aggregator provider."""

    def __init__(
        self,
        engine: AggregationEngine,
        state: Optional[SyncStateStore] = None,
        session_scope=get_db_session,
        sleep: Callable[[float], None] = time.sleep,
        providers: Sequence[str] = ALL_PROVIDERS,
        on_progress: Optional[Callable[[SyncProgress], None]] = None
    ):
        self.engine = engine
        self.session_scope = session_scope
        self.state = state or SyncStateStore(session_scope)
        self.sleep = sleep
        self.providers = list(providers)
        self.on_progress = on_progress

    # =========================================================================
    # PLANNING
    # =========================================================================

    def plan(self, provider: Optional[str] = None, query: Optional[str] = None, full: bool = False) -> Plan:
        """Work list of (provider, queries) honoring the saved checkpoint."""
        providers = [provider] if provider else list(self.providers)

        resume_provider = resume_query = None
        if not full and not provider and not query:
            checkpoint = self.state.get(KIND)
            if checkpoint['lastProvider'] in providers and checkpoint['lastQuery']:
                resume_provider = checkpoint['lastProvider']
                resume_query = checkpoint['lastQuery']
                log(f"📍 Resuming from: {resume_provider} / \"{resume_query}\"")

        plan: Plan = []
        found = resume_provider is None
        for name in providers:
            if not found:
                if name != resume_provider:
                    log(f"⏭️  Skipping provider: {name}")
                    continue
                found = True

            queries = ALPHABET_QUERIES
            if query and query in ALPHABET_QUERIES:
                queries = ALPHABET_QUERIES[ALPHABET_QUERIES.index(query):]
            elif name == resume_provider and resume_query in ALPHABET_QUERIES:
                queries = ALPHABET_QUERIES[ALPHABET_QUERIES.index(resume_query) + 1:]
                resume_provider = None

            plan.append((name, list(queries)))
        return plan

    # =========================================================================
    # CRAWL
    # =========================================================================

    def index_query(self, provider: str, query: str) -> int:
        results = self.engine.fetch_provider(
            provider, query,
            batch_size=INDEX_BATCH_PAGES,
            max_pages=INDEX_MAX_PAGES,
            batch_delay=INDEX_DELAY_MS / 1000
        )
        if not results:
            log("      No results")
            return 0

        unique = deduplicate(results)
        log(f"      Found {len(unique)} unique items")
        return upsert_titles(unique, self.session_scope)

    def index_provider(self, provider: str, queries: List[str], running_total: int) -> int:
        log(f"\n📦 Indexing provider: {provider}")
        log(f"   Queries to process: {len(queries)}")
        start = time.time()
        indexed = 0

        for query in queries:
            log(f"   🔍 Query: \"{query}\"")
            try:
                upserted = self.index_query(provider, query)
                indexed += upserted
                if upserted:
                    log(f"      ✅ Upserted {upserted} items (total: {running_total + indexed})")
                self.state.checkpoint(KIND, provider, query, running_total + indexed)
                if self.on_progress:
                    self.on_progress(SyncProgress('syncing', running_total + indexed, -1, 0))
            except Exception as e:
                log(f"      ❌ Error on {provider}/\"{query}\": {e}")

            self.sleep(INDEX_DELAY_MS / 1000)

        log(f"   ⏱️  Provider {provider} completed in {time.time() - start:.1f}s ({indexed} indexed)")
        return indexed

    def run(self, provider: Optional[str] = None, query: Optional[str] = None, full: bool = False) -> SyncReport:
        """Run the crawl. The caller has already claimed the aggregator row."""
        log("🚀 Webcomic indexer starting...")
        start = time.time()
        total = 0

        try:
            for name, queries in self.plan(provider, query, full):
                total += self.index_provider(name, queries, total)

            self.state.complete(
                KIND,
                last_full_sync=utcnow(),
                total_indexed_count=total,
                last_provider=None,
                last_query=None
            )
            log(f"🎉 Indexing complete: {total} indexed this run")
            return SyncReport(KIND, 'webcomics', True, total, duration=time.time() - start)

        except Exception as e:
            message = str(e) or e.__class__.__name__
            log(f"❌ Indexing failed: {message}")
            self.state.fail(KIND, message)
            return SyncReport(KIND, 'webcomics', False, total, error=message, duration=time.time() - start)

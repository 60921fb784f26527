"""
================================================================================
MangaScope v1.0 - Canonical Catalog Sync
================================================================================
Copies the MangaDex catalog into the local index.

FULL SYNC:
  1. Probe the upstream total with limit=1
  2. Page through /manga ordered by updatedAt desc, BATCH_SIZE at a time,
     all four content ratings included
  3. Enrich each batch with /statistics/manga (exact chapter totals, follows)
  4. Upsert, report progress, sleep RATE_LIMIT_MS

INCREMENTAL SYNC:
  Same loop with updatedAtSince = last successful sync (default: 24h ago).
  Stops at the first short batch or at MAX_OFFSET.

RETRIES:
  Transient failures: up to MAX_RETRIES attempts, linear backoff
  RETRY_DELAY_MS x attempt. A 429 waits 2 x RETRY_DELAY_MS and retries the
  same page without spending an attempt (at most MAX_RATE_LIMIT_WAITS times).

Each batch is committed before the next is fetched, so a failure part-way
leaves every earlier batch in place.
================================================================================
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from sources.base import CONTENT_RATINGS, NormalizedTitle
from sources.errors import CatalogError, RateLimited, SyncFatal
from sources.mangadex import MangaDexClient
from sources.normalize import cover_art_id_of, normalize_canonical_title

from ..database import get_db_session
from ..log import log
from .state import SyncStateStore, utcnow
from .upsert import upsert_titles


BATCH_SIZE = 100
RATE_LIMIT_MS = 200
MAX_RETRIES = 3
RETRY_DELAY_MS = 1000
MAX_RATE_LIMIT_WAITS = 10
MAX_OFFSET = 10000
DEFAULT_INCREMENTAL_WINDOW = timedelta(hours=24)

KIND = 'canonical'


def format_since(value: datetime) -> str:
    """MangaDex wants YYYY-MM-DDTHH:MM:SS in UTC, no offset, no fraction."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S')


# =============================================================================
# PROGRESS / REPORT
# =============================================================================

@dataclass
class SyncProgress:
    status: str
    total_processed: int
    total_to_process: int  # -1 when unknown (incremental)
    current_offset: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status,
            'totalProcessed': self.total_processed,
            'totalToProcess': self.total_to_process,
            'currentOffset': self.current_offset,
        }


@dataclass
class SyncReport:
    kind: str
    sync_type: str
    success: bool
    total_processed: int = 0
    error: Optional[str] = None
    duration: float = 0.0
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'type': self.sync_type,
            'success': self.success,
            'totalProcessed': self.total_processed,
            'error': self.error,
            'duration': round(self.duration, 2),
            **self.details,
        }


ProgressCallback = Callable[[SyncProgress], None]


# =============================================================================
# ENGINE
# =============================================================================

class CatalogSyncEngine:
    """
    Full and incremental MangaDex -> index sync.

    The caller claims the sync row first (SyncSupervisor does); this engine
    only records the terminal state.
    """

    def __init__(
        self,
        client: MangaDexClient,
        state: Optional[SyncStateStore] = None,
        session_scope=get_db_session,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Optional[ProgressCallback] = None,
        batch_size: int = BATCH_SIZE
    ):
        self.client = client
        self.session_scope = session_scope
        self.state = state or SyncStateStore(session_scope)
        self.sleep = sleep
        self.on_progress = on_progress
        self.batch_size = batch_size

    # =========================================================================
    # FETCH WITH RETRY
    # =========================================================================

    def fetch_batch(
        self,
        offset: int,
        limit: Optional[int] = None,
        updated_since: Optional[str] = None
    ) -> Tuple[List[Dict[str, Any]], int]:
        limit = limit or self.batch_size
        attempt = 0
        rate_limit_waits = 0
        last_error: Optional[Exception] = None

        while attempt < MAX_RETRIES:
            try:
                return self.client.list_titles(
                    limit=limit,
                    offset=offset,
                    content_ratings=CONTENT_RATINGS,
                    updated_since=updated_since,
                    order={'updatedAt': 'desc'}
                )
            except RateLimited as e:
                rate_limit_waits += 1
                if rate_limit_waits > MAX_RATE_LIMIT_WAITS:
                    raise SyncFatal(f"rate limited {MAX_RATE_LIMIT_WAITS} times at offset {offset}") from e
                log(f"⏳ Rate limited at offset {offset}, waiting {RETRY_DELAY_MS * 2}ms...")
                self.sleep(RETRY_DELAY_MS * 2 / 1000)
            except CatalogError as e:
                last_error = e
                log(f"⚠️ Fetch attempt {attempt + 1} at offset {offset} failed: {e}")
                if attempt < MAX_RETRIES - 1:
                    self.sleep(RETRY_DELAY_MS * (attempt + 1) / 1000)
                attempt += 1

        raise SyncFatal(f"giving up at offset {offset} after {MAX_RETRIES} attempts: {last_error}")

    # =========================================================================
    # TRANSFORM / STORE
    # =========================================================================

    def transform(self, docs: List[Dict[str, Any]]) -> Tuple[List[NormalizedTitle], Dict[str, str]]:
        ids = [str(doc.get('id')) for doc in docs if doc.get('id')]
        try:
            statistics = self.client.get_statistics(ids)
        except CatalogError as e:
            # Chapter totals fall back to lastChapter estimates
            log(f"⚠️ Statistics unavailable for batch: {e}")
            statistics = {}

        titles = [normalize_canonical_title(doc, statistics) for doc in docs if doc.get('id')]
        cover_ids = {
            str(doc['id']): cover_art_id_of(doc)
            for doc in docs if doc.get('id') and cover_art_id_of(doc)
        }
        return titles, cover_ids

    def store_batch(self, docs: List[Dict[str, Any]]) -> int:
        titles, cover_ids = self.transform(docs)
        return upsert_titles(titles, self.session_scope, cover_art_ids=cover_ids)

    def _report(self, progress: SyncProgress) -> None:
        if self.on_progress:
            self.on_progress(progress)

    # =========================================================================
    # RUNS
    # =========================================================================

    def run_full(self) -> SyncReport:
        log("🔄 Starting full sync from MangaDex...")
        start = time.time()
        processed = 0

        try:
            _, total = self.fetch_batch(0, limit=1)
            log(f"📚 Total manga to sync: {total}")

            offset = 0
            while offset < total:
                docs, _ = self.fetch_batch(offset)
                if not docs:
                    break

                processed += self.store_batch(docs)
                offset += self.batch_size

                self._report(SyncProgress('syncing', processed, total, offset))
                log(f"📈 Progress: {processed}/{total} ({processed / total * 100:.1f}%)")
                self.sleep(RATE_LIMIT_MS / 1000)

            count = self.state.stored_count(KIND)
            self.state.complete(KIND, last_full_sync=utcnow(), total_indexed_count=count)
            log(f"✅ Full sync completed. Total manga in database: {count}")
            return SyncReport(KIND, 'full', True, processed, duration=time.time() - start)

        except Exception as e:
            return self._failed('full', e, processed, start)

    def run_incremental(self) -> SyncReport:
        log("🔄 Starting incremental sync from MangaDex...")
        start = time.time()
        processed = 0

        try:
            since = self.state.last_synced_at(KIND) or (utcnow() - DEFAULT_INCREMENTAL_WINDOW)
            updated_since = format_since(since)
            log(f"🕒 Fetching manga updated since: {updated_since}")

            offset = 0
            while offset < MAX_OFFSET:
                docs, _ = self.fetch_batch(offset, updated_since=updated_since)
                if not docs:
                    break

                processed += self.store_batch(docs)
                offset += self.batch_size
                self._report(SyncProgress('syncing', processed, -1, offset))

                if len(docs) < self.batch_size:
                    break
                self.sleep(RATE_LIMIT_MS / 1000)

            count = self.state.stored_count(KIND)
            self.state.complete(KIND, last_incremental_sync=utcnow(), total_indexed_count=count)
            log(f"✅ Incremental sync completed. Updated {processed} manga.")
            return SyncReport(KIND, 'incremental', True, processed, duration=time.time() - start)

        except Exception as e:
            return self._failed('incremental', e, processed, start)

    def run(self, sync_type: str) -> SyncReport:
        if sync_type == 'full':
            return self.run_full()
        return self.run_incremental()

    def _failed(self, sync_type: str, error: Exception, processed: int, start: float) -> SyncReport:
        message = str(error) or error.__class__.__name__
        log(f"❌ {sync_type.capitalize()} sync failed: {message}")
        self.state.fail(KIND, message)
        return SyncReport(KIND, sync_type, False, processed, error=message, duration=time.time() - start)

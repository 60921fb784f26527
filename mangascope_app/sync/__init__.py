"""
================================================================================
MangaScope v1.0 - Synchronization Package
================================================================================
Keeps the local index warm.

Components:
  - state.py      - SyncMetadata state machine (atomic claim, terminal states)
  - upsert.py     - Tag + title upsert in per-chunk transactions
  - catalog.py    - Canonical full / incremental sync with retry policy
  - webcomics.py  - Checkpointed aggregator crawl
  - supervisor.py - Fire-and-forget triggers (Celery or daemon thread)
================================================================================
"""

from .catalog import CatalogSyncEngine, SyncProgress, SyncReport
from .state import SOURCE_KINDS, SyncStateStore
from .supervisor import SYNC_TYPES, SyncHandle, SyncSupervisor
from .upsert import storage_id, upsert_titles
from .webcomics import WebcomicIndexer

__all__ = [
    'SOURCE_KINDS', 'SYNC_TYPES', 'CatalogSyncEngine', 'SyncProgress', 'SyncReport', 'SyncStateStore',
    'SyncHandle', 'SyncSupervisor', 'storage_id', 'upsert_titles',
    'WebcomicIndexer',
]

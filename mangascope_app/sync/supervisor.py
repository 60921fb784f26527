"""
================================================================================
MangaScope v1.0 - Sync Supervisor
================================================================================
Starts sync runs without blocking the caller.

  trigger()     claim the row (atomic), hand the run to a Celery worker when
                Redis is reachable, else to a daemon thread; return a
                SyncHandle immediately
  run_claimed() the runner body: build the engine for the kind, run it,
                make sure the row leaves SYNCING whatever happens
  run_inline()  claim + run in the current thread (CLI)

Kinds and types:
  canonical  + full | incremental  -> CatalogSyncEngine
  aggregator + full | incremental  -> WebcomicIndexer (full ignores the
                                      resume checkpoint)
================================================================================
"""

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from sources import ProviderRegistry

from ..celery_app import is_celery_available
from ..database import get_db_session
from ..log import log
from .catalog import CatalogSyncEngine, SyncProgress, SyncReport
from .state import SOURCE_KINDS, SyncStateStore, utcnow
from .webcomics import WebcomicIndexer, indexer_engine

SYNC_TYPES = ('full', 'incremental')


@dataclass
class SyncHandle:
    """What a trigger hands back: enough to find the run again."""
    kind: str
    sync_type: str
    runner: str
    started_at: str
    task_id: Optional[str] = None
    thread: Optional[threading.Thread] = field(default=None, repr=False)
    report: Optional[SyncReport] = field(default=None, repr=False)

    def wait(self, timeout: Optional[float] = None) -> Optional[SyncReport]:
        """Join a thread runner (tests, CLI). Celery runs are not awaited."""
        if self.thread is not None:
            self.thread.join(timeout)
        return self.report

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind,
            'type': self.sync_type,
            'runner': self.runner,
            'startedAt': self.started_at,
            'taskId': self.task_id,
        }


class SyncSupervisor:
    """
    Owns the sync state machine transitions for every source kind.

    Usage:
        supervisor = SyncSupervisor(registry)
        handle = supervisor.trigger('canonical', 'incremental')   # 202
        supervisor.trigger('canonical', 'full')                   # ConcurrentSyncConflict
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        state: Optional[SyncStateStore] = None,
        session_scope=get_db_session,
        use_celery: Optional[bool] = None,
        on_finished: Optional[Callable[[SyncReport], None]] = None,
        on_progress: Optional[Callable[[SyncProgress], None]] = None
    ):
        self.registry = registry
        self.session_scope = session_scope
        self.state = state or SyncStateStore(session_scope)
        self._use_celery = use_celery
        self.on_finished = on_finished
        self.on_progress = on_progress

    @property
    def use_celery(self) -> bool:
        if self._use_celery is None:
            return is_celery_available()
        return self._use_celery

    # =========================================================================
    # TRIGGER
    # =========================================================================

    def trigger(self, kind: str = 'canonical', sync_type: str = 'incremental', **options) -> SyncHandle:
        """
        Claim and start a run. Raises ValueError for unknown kind/type and
        ConcurrentSyncConflict when the kind is already syncing.
        """
        validate(kind, sync_type)
        self.state.claim(kind)

        handle = SyncHandle(kind=kind, sync_type=sync_type, runner='thread', started_at=utcnow().isoformat())
        try:
            if self.use_celery:
                handle.runner = 'celery'
                handle.task_id = self._dispatch_celery(kind, sync_type, options)
            else:
                def runner():
                    handle.report = self.run_claimed(kind, sync_type, **options)

                thread = threading.Thread(
                    target=runner,
                    name=f"sync-{kind}-{uuid.uuid4().hex[:6]}",
                    daemon=True
                )
                handle.thread = thread
                thread.start()
        except Exception as e:
            # Nothing will ever finish this run; release the row.
            self.state.fail(kind, f"could not start {sync_type} run: {e}")
            raise

        log(f"🚀 Started {kind} {sync_type} sync ({handle.runner})")
        return handle

    def _dispatch_celery(self, kind: str, sync_type: str, options: Dict[str, Any]) -> str:
        from ..tasks.sync import run_catalog_sync_task, run_webcomic_index_task

        if kind == 'canonical':
            result = run_catalog_sync_task.delay(sync_type)
        else:
            result = run_webcomic_index_task.delay(
                options.get('provider'), options.get('query'), sync_type == 'full'
            )
        return result.id

    # =========================================================================
    # RUN
    # =========================================================================

    def run_claimed(self, kind: str, sync_type: str, **options) -> SyncReport:
        """Run an already-claimed sync to a terminal state."""
        try:
            if kind == 'canonical':
                engine = CatalogSyncEngine(self.registry.canonical, self.state, self.session_scope,
                                           on_progress=self.on_progress)
                report = engine.run(sync_type)
            else:
                indexer = WebcomicIndexer(indexer_engine(self.registry), self.state, self.session_scope,
                                          on_progress=self.on_progress)
                report = indexer.run(
                    provider=options.get('provider'),
                    query=options.get('query'),
                    full=sync_type == 'full'
                )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            log(f"❌ {kind} {sync_type} runner crashed: {message}")
            self.state.fail(kind, message)
            report = SyncReport(kind, sync_type, False, error=message)

        if self.on_finished:
            self.on_finished(report)
        return report

    def run_inline(self, kind: str, sync_type: str, **options) -> SyncReport:
        validate(kind, sync_type)
        self.state.claim(kind)
        return self.run_claimed(kind, sync_type, **options)

    # =========================================================================
    # STATUS
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        status = {}
        for kind in SOURCE_KINDS:
            entry = self.state.get(kind)
            entry['storedCount'] = self.state.stored_count(kind)
            status[kind] = entry
        return status


def validate(kind: str, sync_type: str) -> None:
    if kind not in SOURCE_KINDS:
        raise ValueError(f"Unknown source kind: {kind}")
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"Invalid sync type: {sync_type}")

"""
Sync state machine persistence.

One SyncMetadata row per source kind:

    IDLE ──claim──> SYNCING ──complete──> IDLE
                       └─────fail──────> ERROR ──claim──> SYNCING

The claim is a single conditional UPDATE, so two racing claims can never
both win. Rows are created on first read.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, ContextManager, Dict, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from sources.errors import ConcurrentSyncConflict

from ..database import get_db_session
from ..models import SyncMetadata, SyncStatus, Title

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]

SOURCE_KINDS = ('canonical', 'aggregator')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps read back from the store as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SyncStateStore:
    """Reads and transitions SyncMetadata rows."""

    def __init__(self, session_scope: SessionScope = get_db_session):
        self.session_scope = session_scope

    def ensure(self, kind: str) -> None:
        try:
            with self.session_scope() as session:
                if session.get(SyncMetadata, kind) is None:
                    session.add(SyncMetadata(kind=kind, status=SyncStatus.IDLE, total_indexed_count=0))
        except IntegrityError:
            # A concurrent creator won; its row is just as good.
            logger.debug(f"sync_metadata row for {kind} created concurrently")

    def get(self, kind: str) -> Dict[str, Any]:
        self.ensure(kind)
        with self.session_scope() as session:
            return session.get(SyncMetadata, kind).to_dict()

    def last_synced_at(self, kind: str) -> Optional[datetime]:
        """Later of the last incremental and last full sync, as aware UTC."""
        self.ensure(kind)
        with self.session_scope() as session:
            row = session.get(SyncMetadata, kind)
            stamps = [as_utc(s) for s in (row.last_incremental_sync, row.last_full_sync) if s]
        return max(stamps) if stamps else None

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def claim(self, kind: str) -> None:
        """IDLE/ERROR -> SYNCING, atomically. Raises ConcurrentSyncConflict."""
        self.ensure(kind)
        with self.session_scope() as session:
            result = session.execute(
                update(SyncMetadata)
                .where(SyncMetadata.kind == kind)
                .where(SyncMetadata.status != SyncStatus.SYNCING)
                .values(status=SyncStatus.SYNCING, last_error=None, updated_at=utcnow())
            )
            claimed = result.rowcount == 1
        if not claimed:
            raise ConcurrentSyncConflict(kind)
        logger.info(f"🔒 Claimed {kind} sync")

    def complete(self, kind: str, **fields) -> None:
        """SYNCING -> IDLE, recording the success timestamps/counters given."""
        with self.session_scope() as session:
            session.execute(
                update(SyncMetadata)
                .where(SyncMetadata.kind == kind)
                .values(status=SyncStatus.IDLE, last_error=None, updated_at=utcnow(), **fields)
            )

    def fail(self, kind: str, message: str) -> None:
        """SYNCING -> ERROR with the failure message."""
        with self.session_scope() as session:
            session.execute(
                update(SyncMetadata)
                .where(SyncMetadata.kind == kind)
                .values(status=SyncStatus.ERROR, last_error=message[:2000], updated_at=utcnow())
            )

    def checkpoint(self, kind: str, provider: str, query: str, total: int) -> None:
        with self.session_scope() as session:
            session.execute(
                update(SyncMetadata)
                .where(SyncMetadata.kind == kind)
                .values(last_provider=provider, last_query=query, total_indexed_count=total, updated_at=utcnow())
            )

    def stored_count(self, kind: str) -> int:
        with self.session_scope() as session:
            return session.execute(
                select(func.count(Title.id)).where(Title.source_kind == kind)
            ).scalar_one()

"""
================================================================================
MangaScope v1.0 - Database Models (Catalog Index)
================================================================================
SQLAlchemy models for the local searchable catalog.

TABLES:
  - Title: One discovered work. Canonical rows are keyed by the MangaDex
    UUID; aggregator rows by a storage key derived from (provider, id), so
    the same work under two providers is two rows.
  - Tag: Interned tags shared across titles, created lazily during sync.
  - title_tags: Title <-> Tag association (replaced wholesale on upsert).
  - SyncMetadata: One row per source kind holding the sync state machine
    (idle / syncing / error) plus the aggregator resume checkpoint.

POSTGRES EXTRAS (migration only):
  - pg_trgm extension + GIN trigram index on titles.title for the fuzzy
    similarity query. SQLite has neither; the store degrades gracefully.
================================================================================
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, JSON, Table,
    UniqueConstraint, Index
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import relationship, declarative_base, declared_attr

# Alternative titles: JSON on SQLite, text[] on PostgreSQL so that
# `:q = ANY(alt_titles)` works in the fuzzy query
AltTitlesType = JSON().with_variant(ARRAY(String), 'postgresql')

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# MIXINS
# =============================================================================

class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""
    @declared_attr
    def created_at(cls):
        return Column(DateTime, default=utcnow, nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# =============================================================================
# SYNC STATE
# =============================================================================

class SyncStatus:
    IDLE = 'idle'
    SYNCING = 'syncing'
    ERROR = 'error'


# =============================================================================
# CATALOG
# =============================================================================

title_tags = Table(
    'title_tags',
    Base.metadata,
    Column('title_id', String(255), ForeignKey('titles.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', String(255), ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
)


class Tag(Base):
    """Interned tag (genre, theme, format or content warning)."""
    __tablename__ = 'tags'

    id = Column(String(255), primary_key=True)
    name = Column(String(255), nullable=False)
    group = Column(String(50), nullable=False, default='genre')

    def to_dict(self):
        return {'id': self.id, 'name': self.name, 'group': self.group}


class Title(Base, TimestampMixin):
    """
    One cached catalog entry.

    `source_id` is the upstream id; `id` is the storage key. For canonical rows
    they are equal.
    """
    __tablename__ = 'titles'

    id = Column(String(255), primary_key=True)
    source_kind = Column(String(20), nullable=False, index=True)
    provider_name = Column(String(50), nullable=True, index=True)
    source_id = Column(String(255), nullable=False)

    title = Column(String(500), nullable=False, index=True)
    alt_titles = Column(AltTitlesType, default=list)
    description = Column(Text)

    status = Column(String(20), default='unknown', index=True)
    content_rating = Column(String(20), default='safe', index=True)
    demographic = Column(String(20), nullable=True)
    original_language = Column(String(10), default='ja', index=True)
    content_type = Column(String(20), default='manga', index=True)
    year = Column(Integer, nullable=True)

    last_chapter = Column(String(50), nullable=True)
    total_chapters = Column(Integer, nullable=True)
    chapter_count_confidence = Column(String(20), default='unknown')

    cover_art_id = Column(String(255), nullable=True)
    cover_image = Column(String(1000), nullable=True)
    followed_count = Column(Integer, default=0, index=True)
    source_updated_at = Column(DateTime, nullable=True, index=True)

    tags = relationship('Tag', secondary=title_tags, lazy='selectin')

    __table_args__ = (
        UniqueConstraint('source_kind', 'provider_name', 'source_id', name='uix_title_source'),
        Index('idx_title_kind_type', 'source_kind', 'content_type'),
    )

    def __repr__(self):
        return f"<Title(id={self.id!r}, title={self.title!r}, kind={self.source_kind})>"


class SyncMetadata(Base):
    """Sync state for one source kind ('canonical' or 'aggregator')."""
    __tablename__ = 'sync_metadata'

    kind = Column(String(20), primary_key=True)
    status = Column(String(20), nullable=False, default=SyncStatus.IDLE)
    last_full_sync = Column(DateTime, nullable=True)
    last_incremental_sync = Column(DateTime, nullable=True)
    total_indexed_count = Column(Integer, default=0)
    last_error = Column(Text, nullable=True)

    # Aggregator indexer resume checkpoint
    last_provider = Column(String(50), nullable=True)
    last_query = Column(String(50), nullable=True)

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self):
        return {
            'kind': self.kind,
            'status': self.status,
            'lastFullSync': self.last_full_sync.isoformat() if self.last_full_sync else None,
            'lastIncrementalSync': self.last_incremental_sync.isoformat() if self.last_incremental_sync else None,
            'totalIndexedCount': self.total_indexed_count or 0,
            'lastError': self.last_error,
            'lastProvider': self.last_provider,
            'lastQuery': self.last_query,
        }

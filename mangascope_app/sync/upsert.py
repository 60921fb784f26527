"""
Title upsert into the local index.

Order of operations for a batch:
  1. Every distinct tag in the batch is upserted in one transaction
  2. Titles are upserted in chunks of UPSERT_CHUNK, one transaction per chunk
  3. Each title's tag relations are replaced wholesale

A failing chunk rolls back only its own transaction; chunks already
committed stay committed and the error propagates to the sync engine.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, ContextManager, Dict, List, Optional, Sequence
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.orm import Session

from sources.base import NormalizedTitle, SourceKind

from ..database import get_db_session
from ..models import Tag as TagRow, Title

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]

UPSERT_CHUNK = 50


def storage_id(title: NormalizedTitle) -> str:
    """Primary key for a title row; aggregator ids are provider-scoped."""
    if title.source_kind == SourceKind.CANONICAL:
        return title.id
    safe_id = quote(title.id).replace('%', '_')
    return f"consumet-{title.provider_name or 'unknown'}-{safe_id}"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """ISO-8601 string -> naive UTC datetime (what the columns store)."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _apply(row: Title, title: NormalizedTitle, cover_art_id: Optional[str]) -> None:
    row.source_kind = title.source_kind.value
    row.provider_name = title.provider_name
    row.source_id = title.id
    row.title = title.title[:500]
    row.alt_titles = list(title.alt_titles)
    row.description = title.description or None
    row.status = title.status
    row.content_rating = title.content_rating
    row.demographic = title.demographic
    row.original_language = title.original_language
    row.content_type = title.content_type
    row.year = title.year
    row.last_chapter = title.last_chapter
    row.total_chapters = title.total_chapters.value
    row.chapter_count_confidence = title.total_chapters.confidence.value
    row.cover_art_id = cover_art_id
    row.cover_image = title.cover_image
    row.followed_count = title.followed_count
    row.source_updated_at = parse_timestamp(title.updated_at)


def upsert_tags(titles: Sequence[NormalizedTitle], session_scope: SessionScope = get_db_session) -> int:
    unique = {}
    for title in titles:
        for tag in title.tags:
            unique[tag.id] = tag
    if not unique:
        return 0

    with session_scope() as session:
        existing = {
            row.id: row for row in
            session.execute(select(TagRow).where(TagRow.id.in_(list(unique)))).scalars()
        }
        for tag_id, tag in unique.items():
            row = existing.get(tag_id)
            if row is None:
                session.add(TagRow(id=tag_id, name=tag.name, group=tag.group))
            else:
                row.name = tag.name
                row.group = tag.group
    return len(unique)


def upsert_titles(
    titles: Sequence[NormalizedTitle],
    session_scope: SessionScope = get_db_session,
    cover_art_ids: Optional[Dict[str, str]] = None,
    chunk_size: int = UPSERT_CHUNK
) -> int:
    """
    Insert or update titles with their tag relations.

    Args:
        titles: normalized titles (canonical or aggregator)
        cover_art_ids: canonical id -> cover art id, stored for cover lookups
        chunk_size: titles per transaction

    Returns:
        Number of titles written
    """
    if not titles:
        return 0

    cover_art_ids = cover_art_ids or {}
    upsert_tags(titles, session_scope)

    written = 0
    for start in range(0, len(titles), chunk_size):
        chunk: List[NormalizedTitle] = list(titles[start:start + chunk_size])
        keys = [storage_id(t) for t in chunk]
        tag_ids = {tag.id for t in chunk for tag in t.tags}

        with session_scope() as session:
            rows = {
                row.id: row for row in
                session.execute(select(Title).where(Title.id.in_(keys))).scalars()
            }
            tags = {
                row.id: row for row in
                session.execute(select(TagRow).where(TagRow.id.in_(list(tag_ids)))).scalars()
            } if tag_ids else {}

            for key, title in zip(keys, chunk):
                row = rows.get(key)
                if row is None:
                    row = Title(id=key)
                    session.add(row)
                    rows[key] = row
                _apply(row, title, cover_art_ids.get(title.id))
                row.tags = list({tag.id: tags[tag.id] for tag in title.tags if tag.id in tags}.values())

        written += len(chunk)

    return written

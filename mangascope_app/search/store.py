"""
================================================================================
MangaScope v1.0 - Catalog Store Accessor
================================================================================
Read side of the local index: availability counts, structured filter
queries and the trigram fuzzy query.

QUERIES:
  structured_search - AND of every filter the request carries, optional
                      case-insensitive substring over title, description and
                      alternative titles, ordered and paged.
  fuzzy_search      - PostgreSQL pg_trgm similarity ranking (aggregator rows).
                      Any other engine, or a database without the extension,
                      degrades to structured_search with a warning.

Rows are returned as NormalizedTitle so callers never see ORM objects.
================================================================================
"""

import logging
from datetime import datetime
from typing import Callable, ContextManager, Dict, List, Optional, Tuple

from sqlalchemy import String, and_, bindparam, cast, func, or_, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from sources.base import (
    ChapterConfidence, ChapterCount, NormalizedTitle, SearchRequest, SourceKind,
    Tag, DEFAULT_CONTENT_RATINGS, PLACEHOLDER_IMAGE
)
from sources.errors import IndexUnavailable

from ..database import get_db_session
from ..models import Tag as TagRow, Title

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]

FUZZY_SQL = """
    SELECT id, similarity(title, :q) AS score
    FROM titles
    WHERE source_kind = 'aggregator'
      AND (title % :q OR title ILIKE :pattern OR :q = ANY(alt_titles))
      AND content_rating IN :ratings
      {extra}
    ORDER BY score DESC, followed_count DESC
    LIMIT :limit OFFSET :offset
"""

FUZZY_COUNT_SQL = """
    SELECT COUNT(*)
    FROM titles
    WHERE source_kind = 'aggregator'
      AND (title % :q OR title ILIKE :pattern OR :q = ANY(alt_titles))
      AND content_rating IN :ratings
      {extra}
"""


# =============================================================================
# ROW CONVERSION
# =============================================================================

def to_normalized(row: Title) -> NormalizedTitle:
    """Convert a stored Title row back into the canonical record shape."""
    try:
        confidence = ChapterConfidence(row.chapter_count_confidence or 'unknown')
    except ValueError:
        confidence = ChapterConfidence.UNKNOWN
    if row.total_chapters is None:
        confidence = ChapterConfidence.UNKNOWN

    return NormalizedTitle(
        id=row.source_id,
        title=row.title,
        source_kind=SourceKind(row.source_kind),
        provider_name=row.provider_name,
        alt_titles=list(row.alt_titles or []),
        description=row.description or "",
        status=row.status or "unknown",
        content_rating=row.content_rating or "safe",
        demographic=row.demographic,
        original_language=row.original_language or "ja",
        content_type=row.content_type or "manga",
        tags=[Tag(id=t.id, name=t.name, group=t.group) for t in row.tags],
        year=row.year,
        last_chapter=row.last_chapter,
        total_chapters=ChapterCount(confidence, row.total_chapters),
        cover_image=row.cover_image or PLACEHOLDER_IMAGE,
        updated_at=_iso(row.source_updated_at),
        followed_count=row.followed_count or 0,
    )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def content_types_for(request: SearchRequest) -> List[str]:
    if request.webcomic_type:
        return [request.webcomic_type]
    return []


# =============================================================================
# ORDERING
# =============================================================================

def order_clauses(request: SearchRequest) -> list:
    """
    relevance (query)    -> followed_count desc, source_updated_at desc
    relevance (no query) -> source_updated_at desc
    popularity / latest / year -> followed_count / source_updated_at / year
    title                -> asc unless sortOrder=desc
    """
    descending = request.sort_order != 'asc'

    def direct(column):
        return column.desc().nullslast() if descending else column.asc().nullslast()

    sort_by = request.sort_by or 'relevance'
    if sort_by == 'popularity':
        clauses = [direct(Title.followed_count)]
    elif sort_by == 'latest':
        clauses = [direct(Title.source_updated_at)]
    elif sort_by == 'title':
        clauses = [Title.title.desc() if request.sort_order == 'desc' else Title.title.asc()]
    elif sort_by == 'year':
        clauses = [direct(Title.year)]
    elif request.has_query:
        clauses = [Title.followed_count.desc().nullslast(), Title.source_updated_at.desc().nullslast()]
    else:
        clauses = [Title.source_updated_at.desc().nullslast()]

    clauses.append(Title.id.asc())
    return clauses


# =============================================================================
# STORE
# =============================================================================

class CatalogStore:
    """
    Query accessor over the titles/tags tables.

    Usage:
        store = CatalogStore()
        items, total = store.structured_search(request, "canonical")
    """

    def __init__(self, session_scope: SessionScope = get_db_session):
        self.session_scope = session_scope

    # =========================================================================
    # AVAILABILITY
    # =========================================================================

    def count(self, source_kind: str) -> int:
        try:
            with self.session_scope() as session:
                return session.execute(
                    select(func.count(Title.id)).where(Title.source_kind == source_kind)
                ).scalar_one()
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"count({source_kind}) failed: {e}") from e

    # =========================================================================
    # STRUCTURED QUERY
    # =========================================================================

    def _conditions(self, request: SearchRequest, source_kind: str) -> list:
        conditions = [Title.source_kind == source_kind]

        if request.statuses:
            conditions.append(Title.status.in_(request.statuses))
        conditions.append(Title.content_rating.in_(list(request.content_ratings or DEFAULT_CONTENT_RATINGS)))
        if request.demographics:
            conditions.append(Title.demographic.in_(request.demographics))
        if request.languages:
            conditions.append(Title.original_language.in_(request.languages))
        content_types = content_types_for(request)
        if content_types:
            conditions.append(Title.content_type.in_(content_types))

        if request.min_year is not None:
            conditions.append(Title.year >= request.min_year)
        if request.max_year is not None:
            conditions.append(Title.year <= request.max_year)
        if request.min_chapters is not None:
            conditions.append(Title.total_chapters >= request.min_chapters)
        if request.max_chapters is not None:
            conditions.append(Title.total_chapters <= request.max_chapters)

        # Tags match by id or (case-insensitive) name
        for tag in request.included_tags:
            conditions.append(Title.tags.any(or_(TagRow.id == tag, func.lower(TagRow.name) == tag.lower())))
        if request.excluded_tags:
            lowered = [t.lower() for t in request.excluded_tags]
            conditions.append(~Title.tags.any(or_(
                TagRow.id.in_(request.excluded_tags),
                func.lower(TagRow.name).in_(lowered)
            )))

        if request.has_query:
            pattern = f"%{request.text}%"
            conditions.append(or_(
                Title.title.ilike(pattern),
                Title.description.ilike(pattern),
                cast(Title.alt_titles, String).ilike(pattern)
            ))

        return conditions

    def structured_search(
        self,
        request: SearchRequest,
        source_kind: str
    ) -> Tuple[List[NormalizedTitle], int]:
        """Filtered, ordered, paged query. Returns (items, total)."""
        where = and_(*self._conditions(request, source_kind))

        try:
            with self.session_scope() as session:
                total = session.execute(
                    select(func.count(Title.id)).where(where)
                ).scalar_one()
                rows = session.execute(
                    select(Title)
                    .where(where)
                    .order_by(*order_clauses(request))
                    .offset(max(request.offset, 0))
                    .limit(request.limit)
                ).scalars().all()
                items = [to_normalized(row) for row in rows]
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"structured query failed: {e}") from e

        return items, total

    # =========================================================================
    # FUZZY QUERY
    # =========================================================================

    def fuzzy_search(self, request: SearchRequest) -> Tuple[List[NormalizedTitle], int]:
        """
        Trigram-ranked query over aggregator rows.

        Without a query this is a plain structured query. A missing
        similarity operator is logged and degrades to the structured query.
        """
        if not request.has_query:
            return self.structured_search(request, SourceKind.AGGREGATOR.value)

        try:
            with self.session_scope() as session:
                dialect = session.get_bind().dialect.name
            if dialect != "postgresql":
                raise IndexUnavailable(f"{dialect} has no trigram similarity")
            with self.session_scope() as session:
                return self._fuzzy(session, request)
        except (SQLAlchemyError, IndexUnavailable) as e:
            logger.warning(f"Fuzzy index unavailable, using structured query: {e}")

        return self.structured_search(request, SourceKind.AGGREGATOR.value)

    def _fuzzy(self, session: Session, request: SearchRequest) -> Tuple[List[NormalizedTitle], int]:
        params = {
            'q': request.text,
            'pattern': f"%{request.text}%",
            'ratings': list(request.content_ratings or DEFAULT_CONTENT_RATINGS),
            'limit': request.limit,
            'offset': max(request.offset, 0),
        }
        extra = []
        expanding = [bindparam('ratings', expanding=True)]
        if request.statuses:
            extra.append("AND status IN :statuses")
            params['statuses'] = list(request.statuses)
            expanding.append(bindparam('statuses', expanding=True))
        content_types = content_types_for(request)
        if content_types:
            extra.append("AND content_type IN :content_types")
            params['content_types'] = content_types
            expanding.append(bindparam('content_types', expanding=True))

        clause = "\n      ".join(extra)
        page_sql = text(FUZZY_SQL.format(extra=clause)).bindparams(*expanding)
        count_params = {k: v for k, v in params.items() if k not in ('limit', 'offset')}
        count_sql = text(FUZZY_COUNT_SQL.format(extra=clause)).bindparams(*expanding)

        ids = [row.id for row in session.execute(page_sql, params)]
        total = session.execute(count_sql, count_params).scalar_one()
        if not ids:
            return [], total

        rows = session.execute(select(Title).where(Title.id.in_(ids))).scalars().all()
        by_id = {row.id: row for row in rows}
        items = [to_normalized(by_id[i]) for i in ids if i in by_id]
        return items, total

    # =========================================================================
    # STATS
    # =========================================================================

    def aggregator_stats(self) -> Dict[str, object]:
        """Aggregator index totals by content type and by provider."""
        kind = SourceKind.AGGREGATOR.value
        try:
            with self.session_scope() as session:
                by_type = session.execute(
                    select(Title.content_type, func.count(Title.id))
                    .where(Title.source_kind == kind)
                    .group_by(Title.content_type)
                ).all()
                by_provider = session.execute(
                    select(Title.provider_name, func.count(Title.id))
                    .where(Title.source_kind == kind)
                    .group_by(Title.provider_name)
                ).all()
        except SQLAlchemyError as e:
            raise IndexUnavailable(f"stats query failed: {e}") from e

        type_counts = {content_type or 'unknown': count for content_type, count in by_type}
        return {
            'total': sum(type_counts.values()),
            'byType': type_counts,
            'byProvider': {provider or 'unknown': count for provider, count in by_provider},
        }


"""
================================================================================
MangaScope v1.0 - Normalization Layer
================================================================================
Maps each upstream's record shape into NormalizedTitle / ChapterResult.

AGGREGATOR RECORDS:
  Scraped providers expose little structured metadata, so status, content
  type, language, rating and tag groups are inferred from free text and
  genre names.

CANONICAL RECORDS:
  MangaDex JSON:API documents carry explicit attributes; the work here is
  picking preferred localized strings and attaching chapter totals from the
  statistics endpoint when available.
================================================================================
"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional

from .base import (
    ChapterCount, ChapterResult, NormalizedTitle, SourceKind, Tag,
    CONTENT_RATINGS, DEMOGRAPHICS, PLACEHOLDER_IMAGE, PUBLICATION_STATUSES,
    WEBCOMIC_TYPES
)


# =============================================================================
# INFERENCE TABLES
# =============================================================================

MANHUA_HINTS = ("manhua", "chinese", "cultivation", "wuxia", "xianxia", "martial arts")
WEBTOON_HINTS = ("webtoon", "web comic", "full color")
MANHWA_HINTS = ("manhwa", "korean")

FORMAT_TAGS = ("webtoon", "full color", "long strip", "4-koma")
CONTENT_TAGS = ("mature", "adult", "gore", "violence", "sexual")
THEME_TAGS = (
    "isekai", "reincarnation", "time travel", "video game",
    "virtual reality", "school", "martial arts", "cultivation",
)

YEAR_PATTERN = re.compile(r"\d{4}")
WHITESPACE = re.compile(r"\s+")


def _lower_all(values: Iterable[str]) -> List[str]:
    return [str(v).lower() for v in values if v]


def _any_contains(haystack: List[str], needles: Iterable[str]) -> bool:
    return any(needle in item for item in haystack for needle in needles)


# =============================================================================
# AGGREGATOR INFERENCE
# =============================================================================

def map_status(status: Optional[str]) -> str:
    """Map free-text publication status onto the canonical enum."""
    if not status:
        return "unknown"
    normalized = str(status).lower()
    if "ongoing" in normalized or "publishing" in normalized:
        return "ongoing"
    if "completed" in normalized or "finished" in normalized:
        return "completed"
    if "hiatus" in normalized:
        return "hiatus"
    if "cancelled" in normalized or "canceled" in normalized:
        return "cancelled"
    return "unknown"


def infer_content_type(
    genres: Optional[List[str]] = None,
    title: str = "",
    requested: Optional[str] = None
) -> str:
    """Guess manhwa/manhua/webtoon. An explicitly requested subtype wins."""
    if requested in WEBCOMIC_TYPES:
        return requested

    genres_lower = _lower_all(genres or [])
    title_lower = (title or "").lower()

    if _any_contains(genres_lower, MANHUA_HINTS) or "manhua" in title_lower:
        return "manhua"
    if _any_contains(genres_lower, WEBTOON_HINTS) or "webtoon" in title_lower:
        return "webtoon"
    if _any_contains(genres_lower, MANHWA_HINTS) or "manhwa" in title_lower:
        return "manhwa"
    return "manhwa"


def infer_language(content_type: str) -> str:
    return "zh" if content_type == "manhua" else "ko"


def infer_content_rating(genres: Optional[List[str]] = None) -> str:
    genres_lower = _lower_all(genres or [])
    if _any_contains(genres_lower, ("hentai", "pornographic")):
        return "pornographic"
    if _any_contains(genres_lower, ("erotica", "smut")):
        return "erotica"
    if _any_contains(genres_lower, ("ecchi", "mature", "adult")):
        return "suggestive"
    return "safe"


def infer_tag_group(genre: str) -> str:
    genre_lower = (genre or "").lower()
    if any(f in genre_lower for f in FORMAT_TAGS):
        return "format"
    if any(c in genre_lower for c in CONTENT_TAGS):
        return "content"
    if any(t in genre_lower for t in THEME_TAGS):
        return "theme"
    return "genre"


def genre_tag(genre: str) -> Tag:
    """Build the interned tag for an aggregator genre name."""
    slug = WHITESPACE.sub("-", genre.strip().lower())
    return Tag(id=f"consumet-genre-{slug}", name=genre.strip(), group=infer_tag_group(genre))


def parse_year(value: Any) -> Optional[int]:
    """Accept plausible integer years, or the first 4-digit run of a string."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        year = int(value)
        return year if 1900 <= year <= 2100 else None
    match = YEAR_PATTERN.search(str(value))
    return int(match.group(0)) if match else None


def parse_chapter_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def estimate_from_last_chapter(last_chapter: Optional[str]) -> ChapterCount:
    """Parse a free-text last chapter ("123.5") into an estimated total."""
    number = parse_chapter_number(last_chapter)
    if number is None or number <= 0:
        return ChapterCount.unknown()
    return ChapterCount.estimated(math.floor(number))


def count_from_chapter_list(chapters: Optional[List[Dict[str, Any]]]) -> ChapterCount:
    """Highest chapter number in a full listing, else the listing length."""
    if not chapters:
        return ChapterCount.unknown()
    highest = 0.0
    for chapter in chapters:
        number = parse_chapter_number(chapter.get("chapterNumber"))
        if number is not None and number > highest:
            highest = number
    if highest > 0:
        return ChapterCount.exact(math.floor(highest))
    return ChapterCount.exact(len(chapters))


def normalize_aggregator_title(
    raw: Dict[str, Any],
    provider: str,
    requested_type: Optional[str] = None,
    updated_at: Optional[str] = None
) -> NormalizedTitle:
    """Transform one aggregator search/info record."""
    genres = [g for g in (raw.get("genres") or []) if isinstance(g, str) and g.strip()]
    title = str(raw.get("title") or "Untitled")
    content_type = infer_content_type(genres, title, requested_type)

    alt_titles = raw.get("altTitles") or []
    if isinstance(alt_titles, str):
        alt_titles = [alt_titles]

    total = count_from_chapter_list(raw.get("chapters"))

    return NormalizedTitle(
        id=str(raw.get("id", "")),
        title=title,
        source_kind=SourceKind.AGGREGATOR,
        provider_name=provider,
        alt_titles=[str(a) for a in alt_titles if a],
        description=str(raw.get("description") or ""),
        status=map_status(raw.get("status")),
        content_rating=infer_content_rating(genres),
        original_language=infer_language(content_type),
        content_type=content_type,
        tags=[genre_tag(g) for g in genres],
        year=parse_year(raw.get("releaseDate")),
        last_chapter=str(total.value) if total.is_known else None,
        total_chapters=total,
        cover_image=raw.get("image") or PLACEHOLDER_IMAGE,
        updated_at=updated_at,
    )


def normalize_aggregator_chapter(raw: Dict[str, Any]) -> ChapterResult:
    number = raw.get("chapterNumber")
    volume = raw.get("volumeNumber")
    return ChapterResult(
        id=str(raw.get("id", "")),
        chapter=str(number) if number is not None else None,
        volume=str(volume) if volume is not None else None,
        title=raw.get("title") or None,
        language="en",
        published=raw.get("releaseDate"),
    )


# =============================================================================
# CANONICAL (MANGADEX) NORMALIZATION
# =============================================================================

def preferred_text(values: Optional[Dict[str, str]], fallback: str = "") -> str:
    """Pick en, ja, ja-ro, then the first non-empty localized value."""
    if not values or not isinstance(values, dict):
        return fallback
    for key in ("en", "ja", "ja-ro"):
        if values.get(key):
            return values[key]
    return next((v for v in values.values() if v), fallback)


def content_type_for_language(language: Optional[str]) -> str:
    if language == "ko":
        return "manhwa"
    if language in ("zh", "zh-hk"):
        return "manhua"
    return "manga"


def _relationship_id(relationships: List[Dict[str, Any]], rel_type: str) -> Optional[str]:
    for rel in relationships or []:
        if rel.get("type") == rel_type:
            return rel.get("id")
    return None


def cover_reference(title_id: str, cover_art_id: Optional[str]) -> str:
    """Deferred cover reference resolved by the image layer."""
    if not cover_art_id:
        return PLACEHOLDER_IMAGE
    return f"/api/cover-image/{title_id}/{cover_art_id}"


def normalize_canonical_title(
    data: Dict[str, Any],
    statistics: Optional[Dict[str, Dict[str, Any]]] = None
) -> NormalizedTitle:
    """Transform a MangaDex manga document (with optional statistics)."""
    attrs = data.get("attributes") or {}
    title_id = str(data.get("id", ""))
    language = attrs.get("originalLanguage") or "ja"
    cover_art_id = _relationship_id(data.get("relationships") or [], "cover_art")

    alt_titles = []
    for alt in attrs.get("altTitles") or []:
        if isinstance(alt, dict) and alt:
            value = alt.get("en") or alt.get("ja") or next(iter(alt.values()), None)
            if value:
                alt_titles.append(value)

    tags = []
    for tag in attrs.get("tags") or []:
        tag_attrs = tag.get("attributes") or {}
        group = tag_attrs.get("group") or "genre"
        tags.append(Tag(
            id=str(tag.get("id", "")),
            name=preferred_text(tag_attrs.get("name"), "Unknown"),
            group=group if group in ("genre", "theme", "format", "content") else "genre",
        ))

    last_chapter = attrs.get("lastChapter")
    if isinstance(last_chapter, str) and not last_chapter.strip():
        last_chapter = None

    stats = (statistics or {}).get(title_id) or {}
    exact = stats.get("chapters")
    if exact is not None:
        total = ChapterCount.exact(exact)
    else:
        total = estimate_from_last_chapter(last_chapter)

    status = attrs.get("status") or "unknown"
    rating = attrs.get("contentRating") or "safe"
    demographic = attrs.get("publicationDemographic")

    return NormalizedTitle(
        id=title_id,
        title=preferred_text(attrs.get("title"), "Untitled"),
        source_kind=SourceKind.CANONICAL,
        alt_titles=alt_titles,
        description=preferred_text(attrs.get("description"), ""),
        status=status if status in PUBLICATION_STATUSES else "unknown",
        content_rating=rating if rating in CONTENT_RATINGS else "safe",
        demographic=demographic if demographic in DEMOGRAPHICS else None,
        original_language=language,
        content_type=content_type_for_language(language),
        tags=tags,
        year=parse_year(attrs.get("year")),
        last_chapter=last_chapter,
        total_chapters=total,
        cover_image=cover_reference(title_id, cover_art_id),
        updated_at=attrs.get("updatedAt"),
        followed_count=int(stats.get("follows") or 0),
    )


def cover_art_id_of(data: Dict[str, Any]) -> Optional[str]:
    return _relationship_id(data.get("relationships") or [], "cover_art")


def normalize_canonical_chapter(data: Dict[str, Any]) -> ChapterResult:
    attrs = data.get("attributes") or {}
    return ChapterResult(
        id=str(data.get("id", "")),
        chapter=attrs.get("chapter"),
        title=attrs.get("title"),
        volume=attrs.get("volume"),
        language=attrs.get("translatedLanguage") or "en",
        pages=int(attrs.get("pages") or 0),
        published=attrs.get("publishAt"),
        external_url=attrs.get("externalUrl"),
    )

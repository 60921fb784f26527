"""
================================================================================
MangaScope v1.0 - Provider Base Types
================================================================================
Shared record shapes and the abstract provider client.

Every upstream, whether the canonical catalog (one record per title) or an
aggregator provider (scraped, per-provider identity), is normalized into the
same NormalizedTitle structure before anything else touches it.

IDENTITY:
  - Canonical titles: `id` is globally unique within the canonical source
  - Aggregator titles: only (provider_name, id) is unique. The same work seen
    by two providers is two titles; no cross-provider merge is attempted.

RATE LIMITING:
  - Token bucket per client (sync clients only)
  - Cooldown on 429/403 responses
================================================================================
"""

from abc import ABC
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import random
import threading
import time


# =============================================================================
# LOGGING CALLBACK (avoids circular imports)
# =============================================================================

# Set by create_app() on startup
_log_callback: Optional[Callable[[str], None]] = None


def set_log_callback(callback: Optional[Callable[[str], None]]) -> None:
    """Set the logging callback function. Called by the app factory."""
    global _log_callback
    _log_callback = callback


def source_log(msg: str) -> None:
    """Log a message using the registered callback or fallback to print."""
    if _log_callback:
        _log_callback(msg)
    else:
        print(msg)


# =============================================================================
# ENUMS & CONSTANTS
# =============================================================================

class SourceKind(Enum):
    """Which class of upstream a title came from."""
    CANONICAL = "canonical"
    AGGREGATOR = "aggregator"


class SourceStatus(Enum):
    """Current operational status of a provider client."""
    ONLINE = "online"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class ChapterConfidence(Enum):
    """How much a chapter total can be trusted."""
    EXACT = "exact"
    ESTIMATED = "estimated"
    UNKNOWN = "unknown"


PUBLICATION_STATUSES = ("ongoing", "completed", "hiatus", "cancelled", "unknown")
CONTENT_RATINGS = ("safe", "suggestive", "erotica", "pornographic")
DEFAULT_CONTENT_RATINGS = ("safe", "suggestive")
DEMOGRAPHICS = ("shounen", "shoujo", "seinen", "josei")
CONTENT_TYPES = ("manga", "manhwa", "manhua", "webtoon")
WEBCOMIC_TYPES = ("manhwa", "manhua", "webtoon")
TAG_GROUPS = ("genre", "theme", "format", "content")

PLACEHOLDER_IMAGE = "https://placeholder.pics/svg/300x400/CCCCCC/FFFFFF/No%20Cover"


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Tag:
    """Interned tag shared across titles."""
    id: str
    name: str
    group: str = "genre"

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "group": self.group}


@dataclass(frozen=True)
class ChapterCount:
    """
    Chapter total with its provenance.

    EXACT comes from a statistics endpoint or a full chapter list, ESTIMATED
    from parsing a free-text "last chapter" field, UNKNOWN when neither exists.
    """
    confidence: ChapterConfidence = ChapterConfidence.UNKNOWN
    value: Optional[int] = None

    @classmethod
    def exact(cls, value: int) -> "ChapterCount":
        return cls(ChapterConfidence.EXACT, int(value))

    @classmethod
    def estimated(cls, value: int) -> "ChapterCount":
        return cls(ChapterConfidence.ESTIMATED, int(value))

    @classmethod
    def unknown(cls) -> "ChapterCount":
        return cls(ChapterConfidence.UNKNOWN, None)

    @property
    def is_known(self) -> bool:
        return self.value is not None


@dataclass
class NormalizedTitle:
    """
    One discovered work in the canonical shape.

    No matter whether it came from MangaDex JSON:API or a scraped aggregator
    provider, callers always receive this structure.
    """
    id: str
    title: str
    source_kind: SourceKind = SourceKind.CANONICAL
    provider_name: Optional[str] = None
    alt_titles: List[str] = field(default_factory=list)
    description: str = ""
    status: str = "unknown"
    content_rating: str = "safe"
    demographic: Optional[str] = None
    original_language: str = "ja"
    content_type: str = "manga"
    tags: List[Tag] = field(default_factory=list)
    year: Optional[int] = None
    last_chapter: Optional[str] = None
    total_chapters: ChapterCount = field(default_factory=ChapterCount.unknown)
    cover_image: str = PLACEHOLDER_IMAGE
    updated_at: Optional[str] = None
    followed_count: int = 0

    @property
    def dedup_key(self) -> str:
        """Composite identity: only repeats from the same provider collapse."""
        return f"{self.provider_name or 'unknown'}:{self.id}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary for API responses."""
        return {
            "id": self.id,
            "source": self.source_kind.value,
            "provider": self.provider_name,
            "title": self.title,
            "altTitles": list(self.alt_titles),
            "description": self.description,
            "status": self.status,
            "contentRating": self.content_rating,
            "demographic": self.demographic,
            "language": self.original_language,
            "contentType": self.content_type,
            "genres": [tag.to_dict() for tag in self.tags],
            "year": self.year,
            "lastChapter": self.last_chapter,
            "totalChapters": self.total_chapters.value,
            "totalChaptersConfidence": self.total_chapters.confidence.value,
            "image": self.cover_image,
            "updatedAt": self.updated_at,
            "followedCount": self.followed_count,
        }


@dataclass
class ChapterResult:
    """Standardized chapter information."""
    id: str
    chapter: Optional[str] = None
    title: Optional[str] = None
    volume: Optional[str] = None
    language: str = "en"
    pages: int = 0
    published: Optional[str] = None
    external_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "chapter": self.chapter,
            "title": self.title,
            "volume": self.volume,
            "language": self.language,
            "pages": self.pages,
            "published": self.published,
            "externalUrl": self.external_url,
        }


@dataclass
class ChapterList:
    """Readable chapters plus a tally of externally hosted ones."""
    title_id: str
    chapters: List[ChapterResult] = field(default_factory=list)
    external_count: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mangaId": self.title_id,
            "chapters": [c.to_dict() for c in self.chapters],
            "externalCount": self.external_count,
            "total": self.total,
        }


@dataclass
class SearchRequest:
    """
    A list/search request as understood by every layer.

    `content_type` is the legacy `type` parameter; `webcomic_type` selects the
    aggregator provider priority. Empty lists mean "no filter". A missing
    `sort_order` means descending for every key except title.
    """
    query: Optional[str] = None
    section: Optional[str] = None
    content_type: Optional[str] = None
    webcomic_type: Optional[str] = None
    statuses: List[str] = field(default_factory=list)
    content_ratings: List[str] = field(default_factory=list)
    demographics: List[str] = field(default_factory=list)
    included_tags: List[str] = field(default_factory=list)
    excluded_tags: List[str] = field(default_factory=list)
    languages: List[str] = field(default_factory=list)
    min_chapters: Optional[int] = None
    max_chapters: Optional[int] = None
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    limit: int = 20
    offset: int = 0
    sort_by: str = "relevance"
    sort_order: Optional[str] = None

    @property
    def text(self) -> str:
        return (self.query or "").strip()

    @property
    def has_query(self) -> bool:
        return bool(self.text)


@dataclass
class TitleListResponse:
    """One page of titles plus pagination metadata."""
    items: List[NormalizedTitle] = field(default_factory=list)
    total: int = 0
    limit: int = 20
    offset: int = 0
    source: str = "none"

    @property
    def total_pages(self) -> int:
        if not self.limit:
            return 0
        return -(-self.total // self.limit)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "totalPages": self.total_pages,
            "source": self.source,
        }


# =============================================================================
# BASE PROVIDER CLIENT
# =============================================================================

class ProviderClient(ABC):
    """
    Abstract base for upstream clients.

    VARIANTS:
        CanonicalClient  - sync requests client, one authoritative catalog
        AggregatorClient - async httpx client bound to one aggregator provider

    Both track health so the registry can report it; only sync clients use
    the token bucket below.
    """

    id: str = "base"
    name: str = "Base Provider"
    kind: SourceKind = SourceKind.CANONICAL
    base_url: str = ""

    # Rate limiting (requests per second)
    rate_limit: float = 4.0
    rate_limit_burst: int = 5
    request_timeout: float = 15

    def __init__(self):
        self._status = SourceStatus.UNKNOWN
        self._last_error: Optional[str] = None
        self._failure_count = 0
        self._cooldown_until = 0.0

        self._lock = threading.Lock()

        # Token bucket
        self._tokens = float(self.rate_limit_burst)
        self._last_request = time.time()

    # =========================================================================
    # RATE LIMITING (Token Bucket Algorithm)
    # =========================================================================

    def _wait_for_rate_limit(self) -> None:
        """Block until a token is available, honouring any active cooldown."""
        with self._lock:
            now = time.time()

            if now < self._cooldown_until:
                time.sleep(self._cooldown_until - now)
                now = time.time()

            time_passed = now - self._last_request
            self._tokens = min(
                self.rate_limit_burst,
                self._tokens + time_passed * self.rate_limit
            )

            if self._tokens < 1:
                wait_time = (1 - self._tokens) / self.rate_limit
                wait_time += random.uniform(0.05, 0.15)
                time.sleep(wait_time)
                self._tokens = 1

            self._tokens -= 1
            self._last_request = time.time()

    # =========================================================================
    # STATUS MANAGEMENT
    # =========================================================================

    def _handle_rate_limit(self, retry_after: float = 60) -> None:
        with self._lock:
            self._cooldown_until = time.time() + retry_after
            self._status = SourceStatus.RATE_LIMITED
            self._failure_count += 1

    def _handle_blocked(self) -> None:
        with self._lock:
            self._status = SourceStatus.BLOCKED
            self._cooldown_until = time.time() + 300
            self._failure_count += 1

    def _handle_success(self) -> None:
        with self._lock:
            self._status = SourceStatus.ONLINE
            self._failure_count = 0

    def _handle_error(self, error: str) -> None:
        with self._lock:
            self._last_error = error
            self._failure_count += 1
            if self._failure_count >= 5:
                self._status = SourceStatus.OFFLINE

    @property
    def status(self) -> SourceStatus:
        """Current status, accounting for cooldown expiry."""
        if self._cooldown_until > 0 and time.time() >= self._cooldown_until:
            with self._lock:
                self._status = SourceStatus.UNKNOWN
                self._cooldown_until = 0
        return self._status

    @property
    def is_available(self) -> bool:
        return self.status in (SourceStatus.ONLINE, SourceStatus.UNKNOWN)

    def get_health_info(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "status": self.status.value,
            "is_available": self.is_available,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
            "cooldown_remaining": max(0, self._cooldown_until - time.time()),
        }

    def reset(self) -> None:
        """Reset all error states."""
        with self._lock:
            self._status = SourceStatus.UNKNOWN
            self._failure_count = 0
            self._cooldown_until = 0
            self._last_error = None
            self._tokens = float(self.rate_limit_burst)

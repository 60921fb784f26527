"""
Error taxonomy shared by provider clients, the store accessor and sync jobs.

Live search paths catch these and degrade to the next fallback tier; only the
sync engine lets them terminate a run.
"""

from typing import Optional


class CatalogError(Exception):
    """Base class for every catalog engine failure."""


class UpstreamUnavailable(CatalogError):
    """Network error, timeout or non-2xx answer from an upstream."""

    def __init__(
        self,
        source: str,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None
    ):
        self.source = source
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"{source}: {message}")


class RateLimited(UpstreamUnavailable):
    """Upstream answered 429."""

    def __init__(self, source: str, retry_after: Optional[float] = None):
        super().__init__(source, "rate limited (HTTP 429)", status_code=429, retry_after=retry_after)


class MalformedUpstreamResponse(CatalogError):
    """Body was HTML, not JSON, or did not match the expected shape."""

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class IndexUnavailable(CatalogError):
    """Similarity operator missing or the store could not be reached."""


class SyncFatal(CatalogError):
    """Unrecoverable failure that aborts a sync run."""


class ConcurrentSyncConflict(CatalogError):
    """A sync of the same source kind is already running."""

    def __init__(self, source_kind: str):
        self.source_kind = source_kind
        super().__init__(f"A {source_kind} sync is already running")

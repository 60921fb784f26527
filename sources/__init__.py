"""
================================================================================
MangaScope v1.0 - Provider Registry
================================================================================
Explicit registry of every upstream client, built once at startup.

  - One canonical client (MangaDex) sharing a pooled requests session
  - One aggregator client per Consumet provider
  - Provider priority lists keyed by webcomic subtype

Routing code asks the registry for "the canonical client" or "the
aggregators for subtype X"; nothing else looks providers up by string.
================================================================================
"""

import threading
from typing import Any, Dict, Iterable, List, Optional

import requests

from .base import ProviderClient, SourceKind, set_log_callback, source_log
from .consumet import ALL_PROVIDERS, ConsumetClient
from .mangadex import MangaDexClient


PROVIDER_PRIORITIES: Dict[str, List[str]] = {
    "manhwa": ["asurascans", "reaperscans", "flamescans", "mangakakalot", "mangapark"],
    "manhua": ["mangakakalot", "mangapark", "asurascans", "reaperscans", "flamescans"],
    "webtoon": ["mangakakalot", "mangapark", "asurascans", "reaperscans", "flamescans"],
    "default": ["asurascans", "reaperscans", "flamescans", "mangakakalot", "mangapark"],
}


def create_session() -> requests.Session:
    """Shared requests session with connection pooling."""
    session = requests.Session()
    session.headers.update({
        "Accept": "application/json",
        "Accept-Encoding": "gzip, deflate"
    })
    adapter = requests.adapters.HTTPAdapter(
        pool_connections=10,
        pool_maxsize=20,
        max_retries=0
    )
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


class ProviderRegistry:
    """
    Holds the canonical client and the named aggregator clients.

    Usage:
        registry = ProviderRegistry.build()
        registry.canonical.search(request)
        for client in registry.aggregators_for("manhua"):
            ...
    """

    def __init__(self, canonical: MangaDexClient, aggregators: Iterable[ConsumetClient]):
        self._canonical = canonical
        self._aggregators: Dict[str, ConsumetClient] = {}
        for client in aggregators:
            self._aggregators[client.id] = client

    @classmethod
    def build(
        cls,
        providers: Optional[Iterable[str]] = None,
        session: Optional[requests.Session] = None,
        mangadex_api: Optional[str] = None,
        consumet_api: Optional[str] = None
    ) -> "ProviderRegistry":
        canonical = MangaDexClient(session=session or create_session(), base_url=mangadex_api)
        aggregators = [ConsumetClient(name, base_url=consumet_api) for name in (providers or ALL_PROVIDERS)]
        return cls(canonical, aggregators)

    # =========================================================================
    # ACCESS
    # =========================================================================

    @property
    def canonical(self) -> MangaDexClient:
        return self._canonical

    @property
    def aggregator_names(self) -> List[str]:
        return list(self._aggregators.keys())

    def aggregator(self, name: str) -> ConsumetClient:
        client = self._aggregators.get(name)
        if client is None:
            raise KeyError(f"Unknown aggregator provider: {name}")
        return client

    def has_aggregator(self, name: str) -> bool:
        return name in self._aggregators

    def aggregators_for(self, subtype: Optional[str] = None) -> List[ConsumetClient]:
        """Registered aggregator clients in the priority order for a subtype."""
        order = PROVIDER_PRIORITIES.get(subtype or "default") or PROVIDER_PRIORITIES["default"]
        ordered = [self._aggregators[name] for name in order if name in self._aggregators]
        # Providers registered outside the priority table still take part, last.
        ordered.extend(c for name, c in self._aggregators.items() if name not in order)
        return ordered

    def all_clients(self) -> List[ProviderClient]:
        return [self._canonical, *self._aggregators.values()]

    def get_health(self) -> List[Dict[str, Any]]:
        return [client.get_health_info() for client in self.all_clients()]


# =============================================================================
# SINGLETON
# =============================================================================

_registry: Optional[ProviderRegistry] = None
_registry_lock = threading.Lock()


def get_provider_registry() -> ProviderRegistry:
    """Get or create the process-wide registry."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ProviderRegistry.build()
            source_log(f"📚 Registered canonical client + {len(_registry.aggregator_names)} aggregator providers")
        return _registry


def reset_provider_registry() -> None:
    global _registry
    with _registry_lock:
        _registry = None


__all__ = [
    "ProviderRegistry", "PROVIDER_PRIORITIES", "get_provider_registry",
    "reset_provider_registry", "create_session", "set_log_callback",
    "source_log", "SourceKind", "ALL_PROVIDERS",
]

"""
Celery tasks for catalog synchronization.

The web process claims the sync row before dispatching, so these tasks only
run the work and record the terminal state. They are never retried: a
retry would run against a row some other trigger may have re-claimed.
"""

from typing import Any, Dict, Optional

from mangascope_app.celery_app import celery_app
from mangascope_app.log import log


def _supervisor():
    from sources import get_provider_registry
    from mangascope_app.sync import SyncSupervisor
    return SyncSupervisor(get_provider_registry(), use_celery=False)


@celery_app.task(name='mangascope.sync.catalog')
def run_catalog_sync_task(sync_type: str = 'incremental') -> Dict[str, Any]:
    """Canonical full or incremental sync (row already claimed)."""
    log(f"🧵 Worker picked up canonical {sync_type} sync")
    report = _supervisor().run_claimed('canonical', sync_type)
    return report.to_dict()


@celery_app.task(name='mangascope.sync.webcomics')
def run_webcomic_index_task(
    provider: Optional[str] = None,
    query: Optional[str] = None,
    full: bool = False
) -> Dict[str, Any]:
    """Aggregator crawl (row already claimed)."""
    log("🧵 Worker picked up webcomic index run")
    report = _supervisor().run_claimed('aggregator', 'full' if full else 'incremental',
                                       provider=provider, query=query)
    return report.to_dict()

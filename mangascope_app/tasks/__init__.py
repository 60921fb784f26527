"""
Celery tasks for MangaScope background processing.

This module contains all Celery tasks for:
- Canonical catalog sync (full / incremental)
- Webcomic index crawl

Usage:
    from mangascope_app.tasks import run_catalog_sync_task

    # Submit task (returns AsyncResult)
    result = run_catalog_sync_task.delay('full')
"""

from mangascope_app.celery_app import is_celery_available

from .sync import run_catalog_sync_task, run_webcomic_index_task

__all__ = ['run_catalog_sync_task', 'run_webcomic_index_task', 'is_celery_available']

"""
Celery Application Configuration for MangaScope.

Runs catalog syncs and the webcomic crawl in a worker process, using Redis
as the broker. It's OPTIONAL: if Redis isn't reachable, the sync supervisor
falls back to a daemon thread in the web process.

Setup:
1. Start Redis: `redis-server` or `systemctl start redis`
2. Set environment variable: `CELERY_BROKER_URL=redis://localhost:6379/0`
3. Start Celery worker: `celery -A mangascope_app.celery_app worker --loglevel=info`

Usage:
    from mangascope_app.celery_app import is_celery_available
    from mangascope_app.tasks.sync import run_catalog_sync_task

    if is_celery_available():
        result = run_catalog_sync_task.delay('incremental')
"""

import os
import redis
from celery import Celery

# Redis connection URL from environment (defaults to localhost)
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')

# Flag to track if Celery is actually usable (not just importable)
_celery_tested = False
_celery_working = False


def _test_redis_connection() -> bool:
    """Test if Redis is actually reachable."""
    try:
        client = redis.from_url(CELERY_BROKER_URL, socket_connect_timeout=2)
        client.ping()
        return True
    except (redis.RedisError, OSError):
        return False


def is_celery_available() -> bool:
    """
    Check if Celery is enabled AND Redis is reachable.
    Results are cached after first check.
    """
    global _celery_tested, _celery_working

    if _celery_tested:
        return _celery_working

    _celery_tested = True

    # Check if CELERY_ENABLED is explicitly set to false
    if os.environ.get('CELERY_ENABLED', '').lower() in ('false', '0', 'no'):
        _celery_working = False
        return False

    # Test actual Redis connection
    _celery_working = _test_redis_connection()
    return _celery_working


celery_app = Celery(
    'mangascope',
    broker=CELERY_BROKER_URL,
    backend=CELERY_RESULT_BACKEND,
    include=['mangascope_app.tasks.sync']
)

celery_app.conf.update(
    # Task settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,

    # A full canonical sync runs for hours; the crawl too
    task_acks_late=False,  # The sync row is already claimed; never redeliver
    task_time_limit=6 * 3600,
    task_soft_time_limit=6 * 3600 - 300,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,

    # Result backend settings
    result_expires=86400,

    # Retry settings
    broker_connection_retry_on_startup=True,
    broker_connection_max_retries=3,
)

# Load environment variables FIRST before any other imports
from dotenv import load_dotenv
load_dotenv()

import os
import time
import secrets
import uuid
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request, g


def create_app(config: Optional[Dict[str, Any]] = None):
    """
    Create and configure an instance of the Flask application.

    `config` is applied on top of the environment-derived settings. Tests pass
    DATABASE_URL, DISABLE_RATE_LIMITING and prebuilt SEARCH_ROUTER /
    SYNC_SUPERVISOR collaborators through it.
    """
    app = Flask(__name__, instance_relative_config=True)

    # =============================================================================
    # CONFIGURATION
    # =============================================================================
    def env_flag(name: str, default: str = 'false') -> bool:
        return os.environ.get(name, default).lower() in ('true', '1', 'yes')

    app.config.from_mapping(
        JSON_SORT_KEYS=False,
        SECRET_KEY=os.environ.get('SECRET_KEY') or secrets.token_hex(32),
        DATABASE_URL=os.environ.get('DATABASE_URL'),
        SYNC_API_SECRET=os.environ.get('SYNC_API_SECRET'),
        CACHE_AVAILABILITY_TTL=float(os.environ.get('CACHE_AVAILABILITY_TTL', '60')),
        DISABLE_RATE_LIMITING=env_flag('DISABLE_RATE_LIMITING'),
        HOST=os.environ.get('FLASK_HOST', '127.0.0.1'),
        PORT=int(os.environ.get('FLASK_PORT', '5000')),
        DEBUG=env_flag('FLASK_DEBUG'),
        SHOW_BANNER=True,
    )
    if config:
        app.config.update(config)

    # Ensure instance folder exists
    os.makedirs(app.instance_path, exist_ok=True)

    # =============================================================================
    # DATABASE
    # =============================================================================
    from .database import configure_database, init_database

    if app.config.get('DATABASE_URL'):
        configure_database(app.config['DATABASE_URL'])
    init_database()

    # =============================================================================
    # LOGGING and RATE LIMITING
    # =============================================================================
    from .log import log, debug_log_event
    from .rate_limit import init_rate_limiting

    init_rate_limiting(app)

    @app.before_request
    def assign_request_id():
        g.request_id = uuid.uuid4().hex[:12]
        g.request_start = time.time()

    @app.after_request
    def debug_request_log(response):
        try:
            duration_ms = None
            start_time = getattr(g, 'request_start', None)
            if start_time:
                duration_ms = int((time.time() - start_time) * 1000)
            debug_log_event({
                'event': 'request',
                'request_id': getattr(g, 'request_id', None),
                'method': request.method,
                'path': request.path,
                'query': request.query_string.decode('utf-8', errors='ignore'),
                'status': response.status_code,
                'duration_ms': duration_ms,
                'remote_addr': request.remote_addr,
            })
        except Exception as exc:
            log(f"⚠️ Debug log error: {exc}")
        return response

    @app.teardown_request
    def debug_exception_log(error=None):
        if not error:
            return
        try:
            debug_log_event({
                'event': 'exception',
                'request_id': getattr(g, 'request_id', None),
                'method': request.method if request else None,
                'path': request.path if request else None,
                'error_type': error.__class__.__name__,
                'error': str(error)
            })
        except Exception as exc:
            log(f"⚠️ Debug exception log error: {exc}")

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({'error': 'Not found', 'code': 'not_found'}), 404

    # =============================================================================
    # COLLABORATORS (registry, store, availability, engine, router, supervisor)
    # =============================================================================
    from sources import get_provider_registry
    from sources.base import set_log_callback
    from .search import AggregationEngine, CacheAvailabilityChecker, CatalogStore, SearchRouter
    from .sync import SyncSupervisor

    # Register logging callback for provider clients
    set_log_callback(log)

    registry = app.config.get('PROVIDER_REGISTRY') or get_provider_registry()
    store = app.config.get('CATALOG_STORE') or CatalogStore()
    availability = app.config.get('CACHE_AVAILABILITY') or CacheAvailabilityChecker(
        store, ttl=app.config['CACHE_AVAILABILITY_TTL']
    )

    def invalidate_after_sync(report):
        # A finished run changes row counts; do not wait for the TTL.
        # Only fires in this process: a Celery worker finishing a run cannot
        # reach this memo, so after a Celery sync the web process sees the
        # new counts once CACHE_AVAILABILITY_TTL expires.
        availability.invalidate(report.kind)

    app.config['PROVIDER_REGISTRY'] = registry
    app.config['CATALOG_STORE'] = store
    app.config['CACHE_AVAILABILITY'] = availability
    app.config.setdefault('SEARCH_ROUTER', None)
    app.config.setdefault('SYNC_SUPERVISOR', None)
    if app.config['SEARCH_ROUTER'] is None:
        app.config['SEARCH_ROUTER'] = SearchRouter(registry, store, availability, AggregationEngine(registry))
    if app.config['SYNC_SUPERVISOR'] is None:
        app.config['SYNC_SUPERVISOR'] = SyncSupervisor(registry, on_finished=invalidate_after_sync)

    # =============================================================================
    # BLUEPRINTS & ROUTES
    # =============================================================================
    from .routes.search_api import search_bp
    from .routes.sync_api import sync_bp

    app.register_blueprint(search_bp)
    app.register_blueprint(sync_bp)

    # =============================================================================
    # STARTUP BANNER
    # =============================================================================
    if app.config['SHOW_BANNER']:
        print("=" * 60)
        print("  MangaScope v1.0 - Catalog Aggregation Engine")
        print("=" * 60)
        print(f"\n📚 Canonical: {registry.canonical.name}")
        print(f"🧩 Aggregator providers: {', '.join(registry.aggregator_names) or 'none'}")
        print(f"\n🌐 Server: http://{app.config['HOST']}:{app.config['PORT']}")
        if app.config['DEBUG']:
            print("⚠️  Debug mode is ON - do not use in production!")
        if not app.config.get('SYNC_API_SECRET'):
            print("⚠️  SYNC_API_SECRET is not set - POST /api/sync will answer 500")
        print("=" * 60)

    return app

# App instance should be created by the caller (run.py or WSGI entrypoint)

"""Sync and health API Blueprint.

POST /api/sync is guarded by a shared secret header; the run itself goes to
the sync supervisor, which answers before the work is done.
"""
from __future__ import annotations

import hmac
from typing import Optional

from flask import Blueprint, current_app, jsonify, request

from sources.errors import ConcurrentSyncConflict, IndexUnavailable
from mangascope_app.database import check_database_connection, get_database_stats
from mangascope_app.log import log
from mangascope_app.rate_limit import limit_light, limit_medium
from mangascope_app.sync import SOURCE_KINDS, SYNC_TYPES
from .validators import validate_fields


sync_bp = Blueprint('sync_api', __name__, url_prefix='/api')

SECRET_HEADER = 'x-sync-api-secret'


def _error(message: str, detail: Optional[str] = None, code: str = 'invalid_request', status: int = 400):
    payload = {'error': message, 'code': code}
    if detail:
        payload['detail'] = detail
    return jsonify(payload), status


@sync_bp.route('/sync', methods=['POST'])
@limit_medium
def trigger_sync():
    """
    Start a sync run.

    Header: x-sync-api-secret
    Payload: {"type": "full"|"incremental", "source": "canonical"|"aggregator",
              "provider": str, "query": str}   (aggregator only for the last two)
    """
    expected = current_app.config.get('SYNC_API_SECRET')
    if not expected:
        log("❌ SYNC_API_SECRET not configured")
        return _error('Sync API not configured', code='not_configured', status=500)

    supplied = request.headers.get(SECRET_HEADER, '')
    if not hmac.compare_digest(supplied.encode('utf-8'), expected.encode('utf-8')):
        return _error('Unauthorized', code='unauthorized', status=401)

    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        return _error('Invalid payload', detail='JSON object body required')
    problem = validate_fields(data, [('type', str, 20), ('source', str, 20),
                                     ('provider', str, 50), ('query', str, 50)])
    if problem:
        return _error('Invalid payload', detail=problem)

    sync_type = data.get('type') or 'incremental'
    kind = data.get('source') or 'canonical'
    if sync_type not in SYNC_TYPES:
        return _error('Invalid sync type', detail="Use 'full' or 'incremental'")
    if kind not in SOURCE_KINDS:
        return _error('Invalid source', detail=f"Use one of: {', '.join(SOURCE_KINDS)}")

    options = {}
    if kind == 'aggregator':
        options = {'provider': data.get('provider'), 'query': data.get('query')}

    supervisor = current_app.config['SYNC_SUPERVISOR']
    try:
        handle = supervisor.trigger(kind, sync_type, **options)
    except ConcurrentSyncConflict:
        return jsonify({
            'error': 'Sync already in progress',
            'code': 'sync_in_progress',
            'status': supervisor.state.get(kind),
        }), 409
    except Exception as exc:
        log(f"❌ Could not start {kind} {sync_type} sync: {exc}")
        return _error('Failed to start sync', detail=str(exc), code='server_error', status=500)

    payload = handle.to_dict()
    payload['message'] = f"{sync_type} sync started"
    return jsonify(payload), 202


@sync_bp.route('/sync/status', methods=['GET'])
@limit_light
def sync_status():
    """Sync metadata for both source kinds plus stored row counts."""
    try:
        return jsonify(current_app.config['SYNC_SUPERVISOR'].get_status())
    except Exception as exc:
        log(f"❌ Sync status lookup failed: {exc}")
        return _error('Failed to get sync status', code='server_error', status=500)


@sync_bp.route('/sync/webcomics/stats', methods=['GET'])
@limit_light
def webcomic_stats():
    """Aggregator index totals by type and provider."""
    try:
        return jsonify(current_app.config['CATALOG_STORE'].aggregator_stats())
    except IndexUnavailable as exc:
        log(f"⚠️ Webcomic stats unavailable: {exc}")
        return _error('Index unavailable', code='index_unavailable', status=503)


@sync_bp.route('/health', methods=['GET'])
@limit_light
def health():
    """Database connectivity, stored rows per kind and the provider registry listing."""
    database_ok = check_database_connection()
    registry = current_app.config['PROVIDER_REGISTRY']
    payload = {
        'status': 'ok' if database_ok else 'degraded',
        'database': database_ok,
        'providers': registry.get_health(),
    }
    if database_ok:
        payload['catalog'] = get_database_stats()
    return jsonify(payload), 200 if database_ok else 503

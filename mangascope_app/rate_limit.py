"""
Rate limiting configuration for the MangaScope API.

Uses Flask-Limiter to protect API endpoints from abuse.

Rate Limit Tiers:
- Heavy: /api/search (cache, index, live aggregation fan-out)
- Medium: POST /api/sync (starts long background work)
- Light: /api/sync/status, /api/health (cheap reads)
"""

import os

from flask import jsonify
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Initialize limiter (will be attached to app in create_app)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=["200 per day", "50 per hour"],
    storage_uri=os.environ.get("RATELIMIT_STORAGE_URI", "memory://"),
    strategy="fixed-window",
    headers_enabled=True,  # Add X-RateLimit-* headers to responses
)


# ==============================================================================
# RATE LIMIT TIERS
# ==============================================================================

# Heavy operations - a miss can fan out to every aggregator provider
HEAVY_LIMIT = "20 per minute"

# Medium operations - sync triggers
MEDIUM_LIMIT = "10 per minute"

# Light operations - fast reads
LIGHT_LIMIT = "120 per minute"


# ==============================================================================
# RATE LIMIT DECORATORS
# ==============================================================================

def limit_heavy(f):
    """Apply heavy rate limit to expensive operations like search."""
    return limiter.limit(HEAVY_LIMIT)(f)


def limit_medium(f):
    """Apply medium rate limit to sync triggers."""
    return limiter.limit(MEDIUM_LIMIT)(f)


def limit_light(f):
    """Apply light rate limit to cheap operations."""
    return limiter.limit(LIGHT_LIMIT)(f)


# ==============================================================================
# ERROR HANDLER
# ==============================================================================

def rate_limit_exceeded_handler(e):
    """Every MangaScope route is JSON, so is the 429."""
    retry_after = e.retry_after if hasattr(e, 'retry_after') else 60
    response = jsonify({
        "error": "Rate limit exceeded",
        "code": "rate_limited",
        "detail": str(e.description),
        "retry_after": retry_after
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(retry_after)
    return response


# ==============================================================================
# INITIALIZATION
# ==============================================================================

def init_rate_limiting(app):
    """
    Initialize rate limiting for a Flask app.

    Call this in create_app() after app configuration.
    """
    # Tests and local tooling turn it off
    disabled = bool(app.config.get('DISABLE_RATE_LIMITING'))
    app.config.setdefault('RATELIMIT_ENABLED', not disabled)
    limiter.init_app(app)
    limiter.enabled = not disabled

    app.errorhandler(429)(rate_limit_exceeded_handler)

    return limiter

"""Catalog Search API Blueprint.

One endpoint over the fallback waterfall: the router picks cache, index,
live aggregation or the canonical client and the payload says which answered.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from flask import Blueprint, current_app, jsonify, request
from werkzeug.datastructures import MultiDict

from sources.base import (
    CONTENT_RATINGS, CONTENT_TYPES, DEMOGRAPHICS, PUBLICATION_STATUSES,
    WEBCOMIC_TYPES, SearchRequest,
)
from mangascope_app.log import log
from mangascope_app.rate_limit import limit_heavy
from mangascope_app.search.router import SECTIONS
from .validators import (
    ValidationError, get_list_arg, parse_int_arg, sanitize_string,
    validate_choice, validate_choices, validate_pagination,
)


search_bp = Blueprint('search_api', __name__, url_prefix='/api/search')

SORT_OPTIONS = ('relevance', 'popularity', 'latest', 'title', 'year')
SORT_ORDERS = ('asc', 'desc')
LANGUAGES = ('ja', 'ko', 'zh', 'en')

TYPE_LANGUAGES = {
    'manhwa': 'ko',
    'webtoon': 'ko',
    'manhua': 'zh',
    'manga': 'ja',
}

# Browser 1 min, CDN may serve stale for 5 while revalidating
CACHE_CONTROL = 'public, s-maxage=60, stale-while-revalidate=300'


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _error(message: str, detail: Optional[str] = None, code: str = 'invalid_request', status: int = 400):
    payload = {'error': message, 'code': code}
    if detail:
        payload['detail'] = detail
    return jsonify(payload), status


def _body_args(data: Dict[str, Any]) -> MultiDict:
    """Flatten a JSON body into the same shape as a query string."""
    pairs = []
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, list):
            pairs.extend((key, str(item)) for item in value if item is not None)
        else:
            pairs.append((key, str(value)))
    return MultiDict(pairs)


def build_search_request(args: MultiDict) -> SearchRequest:
    """
    Turn request parameters into a SearchRequest.

    `type` implies a language (manhwa/webtoon -> ko, manhua -> zh,
    manga -> ja) that wins over an explicit originalLanguage, and a
    non-manga `type` doubles as the webcomic subtype when webcomicType
    is absent. Unknown languages and the literal demographic "null" are
    dropped; every other bad value raises ValidationError.
    """
    query = sanitize_string(args.get('q') or args.get('query') or '', max_length=200).strip()

    section = validate_choice(args.get('section'), 'section', SECTIONS)
    content_type = validate_choice(args.get('type'), 'type', CONTENT_TYPES)
    webcomic_type = validate_choice(args.get('webcomicType'), 'webcomicType', WEBCOMIC_TYPES)
    if not webcomic_type and content_type and content_type != 'manga':
        webcomic_type = content_type

    sort_by = validate_choice(args.get('sortBy'), 'sortBy', SORT_OPTIONS) or 'relevance'
    # Absent means desc, except title which reads A-Z
    sort_order = validate_choice(args.get('sortOrder'), 'sortOrder', SORT_ORDERS)

    statuses = validate_choices(get_list_arg(args, 'status'), 'status', PUBLICATION_STATUSES)
    ratings = validate_choices(get_list_arg(args, 'contentRating'), 'contentRating', CONTENT_RATINGS)
    demographics = [d for d in get_list_arg(args, 'demographic') if d != 'null']
    validate_choices(demographics, 'demographic', DEMOGRAPHICS)

    if content_type:
        languages = [TYPE_LANGUAGES[content_type]]
    else:
        languages = [lang for lang in get_list_arg(args, 'originalLanguage', 'language') if lang in LANGUAGES]

    min_chapters = parse_int_arg(args, 'minChapters', minimum=0)
    max_chapters = parse_int_arg(args, 'maxChapters', minimum=0)
    min_year = parse_int_arg(args, 'minYear', minimum=0)
    max_year = parse_int_arg(args, 'maxYear', minimum=0)
    if min_year is not None and max_year is not None and min_year > max_year:
        raise ValidationError("'minYear' cannot be greater than 'maxYear'")
    if min_chapters is not None and max_chapters is not None and min_chapters > max_chapters:
        raise ValidationError("'minChapters' cannot be greater than 'maxChapters'")

    limit, offset = validate_pagination(
        parse_int_arg(args, 'limit', minimum=1),
        parse_int_arg(args, 'offset', minimum=0),
    )

    return SearchRequest(
        query=query or None,
        section=section,
        content_type=content_type,
        webcomic_type=webcomic_type,
        statuses=statuses,
        content_ratings=ratings,
        demographics=demographics,
        included_tags=get_list_arg(args, 'includedTags'),
        excluded_tags=get_list_arg(args, 'excludedTags'),
        languages=languages,
        min_chapters=min_chapters,
        max_chapters=max_chapters,
        min_year=min_year,
        max_year=max_year,
        limit=limit,
        offset=offset,
        sort_by=sort_by,
        sort_order=sort_order,
    )


def _resolve(args: MultiDict):
    try:
        search_request = build_search_request(args)
    except ValidationError as exc:
        return _error('Invalid search parameters', detail=str(exc))

    try:
        result = current_app.config['SEARCH_ROUTER'].resolve(search_request)
    except Exception as exc:
        # The router already turns tier failures into empty pages
        log(f"❌ Search failed: {exc}")
        return _error('Search failed', detail='Unexpected server error', code='server_error', status=500)

    response = jsonify(result.to_dict())
    response.headers['Cache-Control'] = CACHE_CONTROL
    return response


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@search_bp.route('', methods=['GET'])
@limit_heavy
def search():
    """
    Search the catalog.

    Query args:
        q | query, section (manga|webcomics), type, webcomicType,
        status[], contentRating[], demographic[], includedTags[],
        excludedTags[], originalLanguage[] | language[],
        minChapters, maxChapters, minYear, maxYear,
        limit (default 20, max 100), offset,
        sortBy (relevance|popularity|latest|title|year), sortOrder (asc|desc)

    Returns:
        {items, total, limit, offset, totalPages, source}
    """
    return _resolve(request.args)


@search_bp.route('', methods=['POST'])
@limit_heavy
def search_body():
    """Same as GET with the parameters in a JSON body."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return _error('Invalid payload', detail='JSON object body required')
    return _resolve(_body_args(data))

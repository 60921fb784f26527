import pytest

from sources.base import ChapterCount, NormalizedTitle, SourceKind, Tag
from mangascope_app.database import configure_database, get_db_session, init_database


@pytest.fixture
def db():
    """Fresh in-memory SQLite catalog per test."""
    configure_database("sqlite:///:memory:")
    init_database()
    yield get_db_session


def make_canonical(title_id, title, **overrides):
    fields = dict(
        id=title_id,
        title=title,
        source_kind=SourceKind.CANONICAL,
        status="ongoing",
        content_rating="safe",
        original_language="ja",
        content_type="manga",
        total_chapters=ChapterCount.exact(10),
        updated_at="2024-01-01T00:00:00+00:00",
    )
    fields.update(overrides)
    return NormalizedTitle(**fields)


def make_aggregator(title_id, title, provider="asurascans", **overrides):
    fields = dict(
        id=title_id,
        title=title,
        source_kind=SourceKind.AGGREGATOR,
        provider_name=provider,
        status="ongoing",
        content_rating="safe",
        original_language="ko",
        content_type="manhwa",
    )
    fields.update(overrides)
    return NormalizedTitle(**fields)


ACTION = Tag(id="tag-action", name="Action", group="genre")
ROMANCE = Tag(id="tag-romance", name="Romance", group="genre")
GORE = Tag(id="tag-gore", name="Gore", group="content")

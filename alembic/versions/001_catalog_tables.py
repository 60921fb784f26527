"""Create catalog index tables

Revision ID: 001_catalog_tables
Revises:
Create Date: 2026-10-18

Migration Strategy:
1. Create tags, titles, title_tags, sync_metadata
2. Seed one idle sync_metadata row per source kind
3. PostgreSQL only: enable pg_trgm and add a GIN trigram index on
   titles.title for the webcomic fuzzy search
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_catalog_tables'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _is_postgres() -> bool:
    return op.get_bind().dialect.name == 'postgresql'


def upgrade() -> None:
    """Upgrade schema - catalog index."""
    alt_titles_type = postgresql.ARRAY(sa.String()) if _is_postgres() else sa.JSON()

    # 1. Tables
    op.create_table('tags',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('group', sa.String(length=50), nullable=False, server_default='genre'),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('titles',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('source_kind', sa.String(length=20), nullable=False),
        sa.Column('provider_name', sa.String(length=50), nullable=True),
        sa.Column('source_id', sa.String(length=255), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('alt_titles', alt_titles_type, nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=True),
        sa.Column('content_rating', sa.String(length=20), nullable=True),
        sa.Column('demographic', sa.String(length=20), nullable=True),
        sa.Column('original_language', sa.String(length=10), nullable=True),
        sa.Column('content_type', sa.String(length=20), nullable=True),
        sa.Column('year', sa.Integer(), nullable=True),
        sa.Column('last_chapter', sa.String(length=50), nullable=True),
        sa.Column('total_chapters', sa.Integer(), nullable=True),
        sa.Column('chapter_count_confidence', sa.String(length=20), nullable=True),
        sa.Column('cover_art_id', sa.String(length=255), nullable=True),
        sa.Column('cover_image', sa.String(length=1000), nullable=True),
        sa.Column('followed_count', sa.Integer(), nullable=True),
        sa.Column('source_updated_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('source_kind', 'provider_name', 'source_id', name='uix_title_source')
    )
    for column in ('source_kind', 'provider_name', 'title', 'status', 'content_rating',
                   'original_language', 'content_type', 'followed_count', 'source_updated_at'):
        op.create_index(op.f(f'ix_titles_{column}'), 'titles', [column], unique=False)
    op.create_index('idx_title_kind_type', 'titles', ['source_kind', 'content_type'], unique=False)

    op.create_table('title_tags',
        sa.Column('title_id', sa.String(length=255), nullable=False),
        sa.Column('tag_id', sa.String(length=255), nullable=False),
        sa.ForeignKeyConstraint(['title_id'], ['titles.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tag_id'], ['tags.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('title_id', 'tag_id')
    )

    op.create_table('sync_metadata',
        sa.Column('kind', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='idle'),
        sa.Column('last_full_sync', sa.DateTime(), nullable=True),
        sa.Column('last_incremental_sync', sa.DateTime(), nullable=True),
        sa.Column('total_indexed_count', sa.Integer(), nullable=True, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_provider', sa.String(length=50), nullable=True),
        sa.Column('last_query', sa.String(length=50), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('kind')
    )

    # 2. Seed sync rows
    op.execute("INSERT INTO sync_metadata (kind, status, total_indexed_count) VALUES ('canonical', 'idle', 0)")
    op.execute("INSERT INTO sync_metadata (kind, status, total_indexed_count) VALUES ('aggregator', 'idle', 0)")

    # 3. Trigram search (PostgreSQL only)
    if _is_postgres():
        op.execute("CREATE EXTENSION IF NOT EXISTS pg_trgm")
        op.execute(
            "CREATE INDEX IF NOT EXISTS idx_titles_title_trgm "
            "ON titles USING gin (title gin_trgm_ops)"
        )


def downgrade() -> None:
    """Downgrade schema - drop catalog index."""
    if _is_postgres():
        op.execute("DROP INDEX IF EXISTS idx_titles_title_trgm")
    op.drop_table('sync_metadata')
    op.drop_table('title_tags')
    op.drop_index('idx_title_kind_type', table_name='titles')
    for column in ('source_kind', 'provider_name', 'title', 'status', 'content_rating',
                   'original_language', 'content_type', 'followed_count', 'source_updated_at'):
        op.drop_index(op.f(f'ix_titles_{column}'), table_name='titles')
    op.drop_table('titles')
    op.drop_table('tags')

"""search_vector triggers and vector indexes for hybrid retrieval

Revision ID: 0002_search_vector_triggers
Revises: 0001_baseline
Create Date: 2026-10-17 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_search_vector_triggers"
down_revision: Union[str, Sequence[str], None] = "0001_baseline"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _create_triggers() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION products_search_vector_update() RETURNS trigger AS $$
        BEGIN
            NEW.search_vector :=
                setweight(to_tsvector('simple', COALESCE(NEW.name, '')), 'A') ||
                setweight(to_tsvector('simple', COALESCE(NEW.description, '')), 'B');
            RETURN NEW;
        END
        $$ LANGUAGE plpgsql
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION faqs_search_vector_update() RETURNS trigger AS $$
        BEGIN
            NEW.search_vector :=
                setweight(to_tsvector('simple', COALESCE(NEW.question, '')), 'A') ||
                setweight(to_tsvector('simple', COALESCE(NEW.answer, '')), 'B');
            RETURN NEW;
        END
        $$ LANGUAGE plpgsql
        """
    )
    op.execute("DROP TRIGGER IF EXISTS products_search_vector_trigger ON products")
    op.execute(
        """
        CREATE TRIGGER products_search_vector_trigger
        BEFORE INSERT OR UPDATE OF name, description ON products
        FOR EACH ROW EXECUTE FUNCTION products_search_vector_update()
        """
    )
    op.execute("DROP TRIGGER IF EXISTS faqs_search_vector_trigger ON faqs")
    op.execute(
        """
        CREATE TRIGGER faqs_search_vector_trigger
        BEFORE INSERT OR UPDATE OF question, answer ON faqs
        FOR EACH ROW EXECUTE FUNCTION faqs_search_vector_update()
        """
    )


def _create_indexes() -> None:
    ctx = op.get_context()
    with ctx.autocommit_block():
        op.execute(
            """
            CREATE INDEX CONCURRENTLY IF NOT EXISTS ix_products_embedding_hnsw
            ON products USING hnsw (embedding vector_cosine_ops)
            """
        )
        op.execute(
            """
            CREATE INDEX CONCURRENTLY IF NOT EXISTS ix_faqs_embedding_hnsw
            ON faqs USING hnsw (embedding vector_cosine_ops)
            """
        )


def upgrade() -> None:
    _create_triggers()
    # Backfill rows written before the triggers existed.
    op.execute(
        sa.text(
            """
            UPDATE products
            SET search_vector =
                setweight(to_tsvector('simple', COALESCE(name, '')), 'A') ||
                setweight(to_tsvector('simple', COALESCE(description, '')), 'B')
            WHERE search_vector IS NULL
            """
        )
    )
    op.execute(
        sa.text(
            """
            UPDATE faqs
            SET search_vector =
                setweight(to_tsvector('simple', COALESCE(question, '')), 'A') ||
                setweight(to_tsvector('simple', COALESCE(answer, '')), 'B')
            WHERE search_vector IS NULL
            """
        )
    )
    _create_indexes()


def downgrade() -> None:
    ctx = op.get_context()
    with ctx.autocommit_block():
        op.execute("DROP INDEX CONCURRENTLY IF EXISTS ix_faqs_embedding_hnsw")
        op.execute("DROP INDEX CONCURRENTLY IF EXISTS ix_products_embedding_hnsw")
    op.execute("DROP TRIGGER IF EXISTS faqs_search_vector_trigger ON faqs")
    op.execute("DROP TRIGGER IF EXISTS products_search_vector_trigger ON products")
    op.execute("DROP FUNCTION IF EXISTS faqs_search_vector_update()")
    op.execute("DROP FUNCTION IF EXISTS products_search_vector_update()")

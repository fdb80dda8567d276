"""Initial schema: books, highlights, tags and Reader documents.

Revision ID: 20250129120011
Revises:
Create Date: 2025-01-29 12:00:11

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20250129120011"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# SQLite only aliases the rowid for a column declared exactly INTEGER PRIMARY KEY
_ID = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    """Create the cache tables."""
    op.create_table(
        "books",
        sa.Column("id", _ID, primary_key=True, autoincrement=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("author", sa.Text()),
        sa.Column("category", sa.Text(), nullable=False),
        sa.Column("num_highlights", sa.BigInteger(), nullable=False),
        sa.Column("last_highlight_at", sa.DateTime()),
        sa.Column("updated", sa.DateTime()),
        sa.Column("cover_image_url", sa.Text()),
        sa.Column("highlights_url", sa.Text()),
        sa.Column("source_url", sa.Text()),
        sa.Column("asin", sa.Text()),
    )
    op.create_table(
        "highlights",
        sa.Column("id", _ID, primary_key=True, autoincrement=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("note", sa.Text(), nullable=False),
        sa.Column("location", sa.BigInteger(), nullable=False),
        sa.Column("location_type", sa.Text(), nullable=False),
        sa.Column("highlighted_at", sa.DateTime()),
        sa.Column("url", sa.Text()),
        sa.Column("color", sa.Text(), nullable=False),
        sa.Column("updated", sa.DateTime(), nullable=False),
        sa.Column("book_id", _ID, sa.ForeignKey("books.id"), nullable=False),
    )
    op.create_table(
        "tags",
        sa.Column("id", _ID, primary_key=True, autoincrement=False),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
    )
    op.create_table(
        "book_tags",
        sa.Column("book_id", _ID, sa.ForeignKey("books.id"), nullable=False),
        sa.Column("tag_id", _ID, sa.ForeignKey("tags.id"), nullable=False),
        sa.PrimaryKeyConstraint("book_id", "tag_id"),
    )
    op.create_table(
        "highlight_tags",
        sa.Column("highlight_id", _ID, sa.ForeignKey("highlights.id"), nullable=False),
        sa.Column("tag_id", _ID, sa.ForeignKey("tags.id"), nullable=False),
        sa.PrimaryKeyConstraint("highlight_id", "tag_id"),
    )
    op.create_table(
        "documents",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("title", sa.Text()),
        sa.Column("author", sa.Text()),
        sa.Column("source", sa.Text()),
        sa.Column("category", sa.Text()),
        sa.Column("location", sa.Text()),
        sa.Column("site_name", sa.Text()),
        sa.Column("word_count", sa.BigInteger()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("published_date", sa.DateTime()),
        sa.Column("summary", sa.Text()),
        sa.Column("image_url", sa.Text()),
        sa.Column("content", sa.Text()),
        sa.Column("source_url", sa.Text()),
        sa.Column("notes", sa.Text()),
        sa.Column("parent_id", sa.Text()),
        sa.Column("reading_progress", sa.Float(), nullable=False),
        sa.Column("first_opened_at", sa.DateTime()),
        sa.Column("last_opened_at", sa.DateTime()),
        sa.Column("saved_at", sa.DateTime(), nullable=False),
        sa.Column("last_moved_at", sa.DateTime(), nullable=False),
    )
    op.create_index("idx_highlights_book_id", "highlights", ["book_id"])
    op.create_index("idx_book_tags_book_id", "book_tags", ["book_id"])
    op.create_index("idx_highlight_tags_highlight_id", "highlight_tags", ["highlight_id"])


def downgrade() -> None:
    """Drop the cache tables."""
    op.drop_index("idx_highlight_tags_highlight_id", table_name="highlight_tags")
    op.drop_index("idx_book_tags_book_id", table_name="book_tags")
    op.drop_index("idx_highlights_book_id", table_name="highlights")
    for table in ("documents", "highlight_tags", "book_tags", "tags", "highlights", "books"):
        op.drop_table(table)

"""Table definitions used to build queries against the cache.

The tables themselves are created by the Alembic revisions in
``marginalia/migrations/versions/``; these definitions must match them.
"""

from datetime import datetime, timezone
from typing import Optional

import sqlalchemy as sa


class UTCDateTime(sa.types.TypeDecorator):
    """Store aware datetimes as naive UTC, hand them back as aware UTC."""

    impl = sa.DateTime
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


metadata = sa.MetaData()

books = sa.Table(
    "books",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("title", sa.Text, nullable=False),
    sa.Column("author", sa.Text),
    sa.Column("category", sa.Text, nullable=False),
    sa.Column("num_highlights", sa.BigInteger, nullable=False),
    sa.Column("last_highlight_at", UTCDateTime),
    sa.Column("updated", UTCDateTime),
    sa.Column("cover_image_url", sa.Text),
    sa.Column("highlights_url", sa.Text),
    sa.Column("source_url", sa.Text),
    sa.Column("asin", sa.Text),
)

highlights = sa.Table(
    "highlights",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("text", sa.Text, nullable=False),
    sa.Column("note", sa.Text, nullable=False),
    sa.Column("location", sa.BigInteger, nullable=False),
    sa.Column("location_type", sa.Text, nullable=False),
    sa.Column("highlighted_at", UTCDateTime),
    sa.Column("url", sa.Text),
    sa.Column("color", sa.Text, nullable=False),
    sa.Column("updated", UTCDateTime, nullable=False),
    sa.Column("book_id", sa.BigInteger, sa.ForeignKey("books.id"), nullable=False),
)

tags = sa.Table(
    "tags",
    metadata,
    sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=False),
    sa.Column("name", sa.Text, nullable=False, unique=True),
)

book_tags = sa.Table(
    "book_tags",
    metadata,
    sa.Column("book_id", sa.BigInteger, sa.ForeignKey("books.id"), primary_key=True),
    sa.Column("tag_id", sa.BigInteger, sa.ForeignKey("tags.id"), primary_key=True),
)

highlight_tags = sa.Table(
    "highlight_tags",
    metadata,
    sa.Column("highlight_id", sa.BigInteger, sa.ForeignKey("highlights.id"), primary_key=True),
    sa.Column("tag_id", sa.BigInteger, sa.ForeignKey("tags.id"), primary_key=True),
)

documents = sa.Table(
    "documents",
    metadata,
    sa.Column("id", sa.Text, primary_key=True),
    sa.Column("url", sa.Text, nullable=False),
    sa.Column("title", sa.Text),
    sa.Column("author", sa.Text),
    sa.Column("source", sa.Text),
    sa.Column("category", sa.Text),
    sa.Column("location", sa.Text),
    sa.Column("site_name", sa.Text),
    sa.Column("word_count", sa.BigInteger),
    sa.Column("created_at", UTCDateTime, nullable=False),
    sa.Column("updated_at", UTCDateTime, nullable=False),
    sa.Column("published_date", UTCDateTime),
    sa.Column("summary", sa.Text),
    sa.Column("image_url", sa.Text),
    sa.Column("content", sa.Text),
    sa.Column("source_url", sa.Text),
    sa.Column("notes", sa.Text),
    sa.Column("parent_id", sa.Text),
    sa.Column("reading_progress", sa.Float, nullable=False),
    sa.Column("first_opened_at", UTCDateTime),
    sa.Column("last_opened_at", UTCDateTime),
    sa.Column("saved_at", UTCDateTime, nullable=False),
    sa.Column("last_moved_at", UTCDateTime, nullable=False),
)

sync_state = sa.Table(
    "sync_state",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=False),
    sa.Column("last_books_sync", UTCDateTime),
    sa.Column("last_highlights_sync", UTCDateTime),
    sa.Column("last_documents_sync", UTCDateTime),
)

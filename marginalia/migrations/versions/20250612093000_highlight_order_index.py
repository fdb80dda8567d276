"""Indexes for the orders export reads in.

Revision ID: 20250612093000
Revises: 20250525142938
Create Date: 2025-06-12 09:30:00

"""

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20250612093000"
down_revision: str | None = "20250525142938"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Highlights per book by (location, id); documents by saved_at."""
    op.create_index("idx_highlights_book_location", "highlights", ["book_id", "location", "id"])
    op.create_index("idx_documents_saved_at", "documents", ["saved_at", "id"])


def downgrade() -> None:
    """Drop the ordering indexes."""
    op.drop_index("idx_documents_saved_at", table_name="documents")
    op.drop_index("idx_highlights_book_location", table_name="highlights")

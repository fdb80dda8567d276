"""Per-kind sync cursors in a single-row table.

Revision ID: 20250525142938
Revises: 20250129120011
Create Date: 2025-05-25 14:29:38

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20250525142938"
down_revision: str | None = "20250129120011"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create sync_state and seed its only row."""
    sync_state = op.create_table(
        "sync_state",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False,
                  server_default=sa.text("1")),
        sa.Column("last_books_sync", sa.DateTime()),
        sa.Column("last_highlights_sync", sa.DateTime()),
        sa.Column("last_documents_sync", sa.DateTime()),
        sa.CheckConstraint("id = 1", name="ck_sync_state_singleton"),
    )
    op.bulk_insert(sync_state, [{"id": 1}])


def downgrade() -> None:
    """Drop sync_state."""
    op.drop_table("sync_state")

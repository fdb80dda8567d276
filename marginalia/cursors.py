"""Per-kind sync cursors kept in the cache's single-row ``sync_state`` table.

A cursor is the newest remote "updated" timestamp that has been committed to
the cache for that kind. Cursors only ever move forward.
"""

import logging
from datetime import datetime
from typing import Dict, Optional

import sqlalchemy as sa

from marginalia import schema
from marginalia.models import Kind
from marginalia.store import CacheStore

log = logging.getLogger(__name__)

_STATE_ID = 1

_COLUMNS = {
    Kind.BOOKS: schema.sync_state.c.last_books_sync,
    Kind.HIGHLIGHTS: schema.sync_state.c.last_highlights_sync,
    Kind.DOCUMENTS: schema.sync_state.c.last_documents_sync,
}


class CursorStore:
    """Interface for reading and advancing sync cursors."""

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    def get_cursor(self, kind: Kind) -> Optional[datetime]:
        column = _COLUMNS[kind]
        with self._store.engine.connect() as conn:
            return conn.execute(
                sa.select(column).where(schema.sync_state.c.id == _STATE_ID)
            ).scalar_one_or_none()

    def set_cursor(self, kind: Kind, value: datetime) -> None:
        """Advance the cursor for ``kind`` to ``value``.

        Earlier values than the stored one are ignored.
        """
        column = _COLUMNS[kind]
        table = schema.sync_state
        with self._store.engine.begin() as conn:
            current = conn.execute(
                sa.select(column).where(table.c.id == _STATE_ID)
            ).one_or_none()
            if current is None:
                conn.execute(sa.insert(table).values({"id": _STATE_ID, column.name: value}))
            elif current[0] is None or value > current[0]:
                conn.execute(
                    sa.update(table).where(table.c.id == _STATE_ID).values({column.name: value})
                )
            else:
                log.debug(
                    "Not moving %s cursor back from %s to %s",
                    kind.value, current[0].isoformat(), value.isoformat(),
                )
                return
        log.info("Advanced %s cursor to %s", kind.value, value.isoformat())

    def cursors(self) -> Dict[Kind, Optional[datetime]]:
        with self._store.engine.connect() as conn:
            row = conn.execute(
                sa.select(*_COLUMNS.values()).where(schema.sync_state.c.id == _STATE_ID)
            ).one_or_none()
        if row is None:
            return {kind: None for kind in _COLUMNS}
        return dict(zip(_COLUMNS, row))

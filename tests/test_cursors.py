"""Tests for per-kind sync cursors."""

from datetime import datetime, timedelta, timezone

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class TestCursorStore:
    def test_unset_cursor_is_none(self, store):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        assert CursorStore(store).get_cursor(Kind.BOOKS) is None

    def test_set_and_get(self, store):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        cursors = CursorStore(store)
        cursors.set_cursor(Kind.HIGHLIGHTS, T0)
        assert cursors.get_cursor(Kind.HIGHLIGHTS) == T0
        assert cursors.get_cursor(Kind.BOOKS) is None

    def test_never_moves_backwards(self, store):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        cursors = CursorStore(store)
        cursors.set_cursor(Kind.DOCUMENTS, T0)
        cursors.set_cursor(Kind.DOCUMENTS, T0 - timedelta(days=1))
        assert cursors.get_cursor(Kind.DOCUMENTS) == T0

        cursors.set_cursor(Kind.DOCUMENTS, T0 + timedelta(seconds=1))
        assert cursors.get_cursor(Kind.DOCUMENTS) == T0 + timedelta(seconds=1)

    def test_survives_reopen(self, tmp_path):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind
        from marginalia.store import open_store

        url = f"sqlite:///{tmp_path / 'cache.db'}"
        with open_store(url) as s:
            CursorStore(s).set_cursor(Kind.BOOKS, T0)
        with open_store(url) as s:
            assert CursorStore(s).get_cursor(Kind.BOOKS) == T0

    def test_recreates_missing_row(self, store):
        import sqlalchemy as sa

        from marginalia import schema
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        with store.engine.begin() as conn:
            conn.execute(sa.delete(schema.sync_state))

        cursors = CursorStore(store)
        cursors.set_cursor(Kind.BOOKS, T0)
        assert cursors.cursors()[Kind.BOOKS] == T0

    def test_non_utc_input_is_normalised(self, store):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        plus_two = timezone(timedelta(hours=2))
        CursorStore(store).set_cursor(Kind.BOOKS, datetime(2024, 5, 1, 14, 0, tzinfo=plus_two))
        assert CursorStore(store).get_cursor(Kind.BOOKS) == T0

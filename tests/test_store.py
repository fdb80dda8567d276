"""Tests for the relational cache: migrations, upserts, tags, queries."""

from datetime import datetime, timedelta, timezone

import pytest

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _book(id, title=None, category="books", updated=T0, tags=(), asin=None):
    from marginalia.models import Book

    return Book(
        id=id, title=title or f"Book {id}", category=category,
        updated=updated, tags=list(tags), asin=asin,
    )


def _highlight(id, book_id, location=0, updated=T0, text=None, tags=()):
    from marginalia.models import Highlight

    return Highlight(
        id=id, text=text or f"Highlight {id}", book_id=book_id,
        updated=updated, location=location, tags=list(tags),
    )


def _document(id, saved_at=T0, updated_at=T0, category="article", title=None):
    from marginalia.models import Document

    return Document(
        id=id, url=f"https://example.com/{id}", title=title or f"Doc {id}",
        category=category, created_at=T0, updated_at=updated_at,
        saved_at=saved_at, last_moved_at=T0,
    )


_GOOD_REVISION = '''
import sqlalchemy as sa
from alembic import op

revision = "1"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table("ok", sa.Column("id", sa.Integer, primary_key=True))
'''

_BAD_REVISION = '''
from alembic import op

revision = "2"
down_revision = "1"
branch_labels = None
depends_on = None


def upgrade():
    op.execute("CREATE TABLE broken (")
'''

_LITERAL_REVISION = '''
import sqlalchemy as sa
from alembic import op

revision = "2"
down_revision = "1"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table("notes", sa.Column("body", sa.Text))
    op.execute("INSERT INTO notes (body) VALUES ('a;b -- not a comment')")
'''


def _revisions_dir(tmp_path, **scripts):
    """A migrations folder with our env.py and the given revision scripts."""
    import shutil

    from marginalia.store import MIGRATIONS_DIR

    root = tmp_path / "migrations"
    (root / "versions").mkdir(parents=True)
    shutil.copy(MIGRATIONS_DIR / "env.py", root / "env.py")
    for name, source in scripts.items():
        (root / "versions" / f"{name}.py").write_text(source)
    return root


class TestMigrations:
    def test_fresh_database_gets_all_migrations(self, store):
        from marginalia.store import revisions

        assert store.applied_migrations() == revisions()
        assert revisions() == ["20250129120011", "20250525142938", "20250612093000"]

    def test_reopening_applies_nothing(self, tmp_path):
        from marginalia.store import open_store

        url = f"sqlite:///{tmp_path / 'cache.db'}"
        with open_store(url) as first:
            first.upsert_book(_book(1))
        with open_store(url) as second:
            assert second.migrate() == []
            assert second.counts()["books"] == 1

    def test_statements_are_not_split_on_semicolons(self, tmp_path, monkeypatch):
        import sqlalchemy as sa

        from marginalia import store as store_mod
        from marginalia.store import SqliteCacheStore

        monkeypatch.setattr(store_mod, "MIGRATIONS_DIR", _revisions_dir(
            tmp_path, r1_good=_GOOD_REVISION, r2_literal=_LITERAL_REVISION,
        ))

        s = SqliteCacheStore(f"sqlite:///{tmp_path / 'db.sqlite'}")
        assert s.migrate() == ["1", "2"]
        with s.engine.connect() as conn:
            assert conn.execute(sa.text("SELECT body FROM notes")).scalar_one() == "a;b -- not a comment"
        s.close()

    def test_failing_migration_raises_and_is_not_recorded(self, tmp_path, monkeypatch):
        from marginalia import store as store_mod
        from marginalia.store import MigrationError, SqliteCacheStore

        monkeypatch.setattr(store_mod, "MIGRATIONS_DIR", _revisions_dir(
            tmp_path, r1_good=_GOOD_REVISION, r2_bad=_BAD_REVISION,
        ))

        s = SqliteCacheStore(f"sqlite:///{tmp_path / 'db.sqlite'}")
        with pytest.raises(MigrationError, match="Migration 2 failed"):
            s.migrate()
        assert s.applied_migrations() == ["1"]
        s.close()

    def test_open_store_closes_on_migration_failure(self, tmp_path, monkeypatch):
        from marginalia import store as store_mod
        from marginalia.store import MigrationError, open_store

        monkeypatch.setattr(store_mod, "MIGRATIONS_DIR", _revisions_dir(
            tmp_path, r1_good=_GOOD_REVISION, r2_bad=_BAD_REVISION,
        ))
        with pytest.raises(MigrationError):
            open_store(f"sqlite:///{tmp_path / 'db.sqlite'}")

    def test_sync_state_is_seeded(self, store):
        from marginalia.cursors import CursorStore
        from marginalia.models import Kind

        assert CursorStore(store).cursors() == {k: None for k in Kind}

    def test_sync_state_holds_one_row(self, store):
        import sqlalchemy as sa
        from sqlalchemy.exc import IntegrityError

        with pytest.raises(IntegrityError):
            with store.engine.begin() as conn:
                conn.execute(sa.text("INSERT INTO sync_state (id) VALUES (2)"))


class TestResolveBackend:
    @pytest.mark.parametrize("url,expected", [
        ("sqlite:///tmp/x.db", "sqlite:///tmp/x.db"),
        ("sqlite://cache.db", "sqlite:///cache.db"),
        ("sqlite::memory:", "sqlite://"),
        ("/var/lib/readwise.db", "sqlite:////var/lib/readwise.db"),
    ])
    def test_sqlite(self, url, expected):
        from marginalia.store import SqliteCacheStore, resolve_backend

        assert resolve_backend(url) == (SqliteCacheStore, expected)

    @pytest.mark.parametrize("url,expected", [
        ("postgres://u:p@host/db", "postgresql://u:p@host/db"),
        ("postgresql://host/db", "postgresql://host/db"),
        ("postgresql+psycopg2://host/db", "postgresql+psycopg2://host/db"),
    ])
    def test_postgres(self, url, expected):
        from marginalia.store import PostgresCacheStore, resolve_backend

        assert resolve_backend(url) == (PostgresCacheStore, expected)

    def test_unknown_scheme(self):
        from marginalia.store import resolve_backend

        with pytest.raises(ValueError, match="mysql"):
            resolve_backend("mysql://host/db")

    def test_in_memory_store_migrates(self):
        from marginalia.store import open_store

        with open_store("sqlite::memory:") as s:
            assert s.counts()["books"] == 0


class TestUpserts:
    def test_insert_then_update(self, store):
        assert store.upsert_book(_book(1, title="Old")) is True
        assert store.upsert_book(_book(1, title="New", updated=T0 + timedelta(hours=1))) is True

        [record] = store.books_matching()
        assert record.book.title == "New"

    def test_stale_update_is_ignored(self, store):
        store.upsert_book(_book(1, title="Current", updated=T0 + timedelta(days=1)))
        assert store.upsert_book(_book(1, title="Stale", updated=T0)) is False

        [record] = store.books_matching()
        assert record.book.title == "Current"

    def test_same_timestamp_overwrites(self, store):
        store.upsert_book(_book(1, title="First"))
        assert store.upsert_book(_book(1, title="Second")) is True
        assert store.books_matching()[0].book.title == "Second"

    def test_timestamps_round_trip_as_utc(self, store):
        store.upsert_book(_book(1))
        store.upsert_highlight(_highlight(10, 1, updated=T0 + timedelta(minutes=5)))

        [record] = store.books_matching()
        assert record.book.updated == T0
        assert record.highlights[0].updated == T0 + timedelta(minutes=5)
        assert record.highlights[0].updated.tzinfo is not None

    def test_upsert_page_counts_changes(self, store):
        from marginalia.models import Kind

        written = store.upsert_page(Kind.BOOKS, [_book(1), _book(2), _book(3)])
        assert written == 3
        stale = _book(1, updated=T0 - timedelta(days=1))
        assert store.upsert_page(Kind.BOOKS, [stale, _book(4)]) == 1

    def test_page_rolls_back_on_integrity_error(self, store):
        from sqlalchemy.exc import IntegrityError

        from marginalia.models import Kind

        store.upsert_book(_book(1))
        page = [_highlight(10, 1), _highlight(11, book_id=999)]
        with pytest.raises(IntegrityError):
            store.upsert_page(Kind.HIGHLIGHTS, page)
        assert store.counts()["highlights"] == 0

    def test_documents(self, store):
        assert store.upsert_document(_document("d1")) is True
        [doc] = store.documents_matching()
        assert doc.id == "d1"
        assert doc.saved_at == T0


class TestTags:
    def test_tag_set_is_replaced(self, store):
        from marginalia.models import Tag

        a, b, c = Tag(1, "A"), Tag(2, "B"), Tag(3, "C")
        store.upsert_book(_book(1, tags=[a, b]))
        store.upsert_book(_book(1, tags=[b, c], updated=T0 + timedelta(hours=1)))

        [record] = store.books_matching()
        assert [t.name for t in record.book.tags] == ["B", "C"]
        # Tag rows themselves are kept
        assert store.counts()["tags"] == 3

    def test_duplicate_names_collapse(self, store):
        from marginalia.models import Kind, Tag

        store.upsert_book(_book(1))
        store.upsert_tags_for(1, Kind.BOOKS, [Tag(1, "x"), Tag(1, "x")])
        assert [t.name for t in store.books_matching()[0].book.tags] == ["x"]

    def test_tags_shared_between_books(self, store):
        from marginalia.models import Tag

        shared = Tag(5, "shared")
        store.upsert_book(_book(1, tags=[shared]))
        store.upsert_book(_book(2, tags=[shared]))
        assert store.counts()["tags"] == 1
        assert all(r.book.tags == [shared] for r in store.books_matching())

    def test_renamed_tag(self, store):
        from marginalia.models import Tag

        store.upsert_book(_book(1, tags=[Tag(5, "old")]))
        store.upsert_book(_book(1, tags=[Tag(5, "new")], updated=T0 + timedelta(hours=1)))
        assert store.books_matching()[0].book.tags == [Tag(5, "new")]

    def test_highlight_tags(self, store):
        from marginalia.models import Tag

        store.upsert_book(_book(1))
        store.upsert_highlight(_highlight(10, 1, tags=[Tag(9, "favorite")]))
        [record] = store.books_matching()
        assert record.highlights[0].tags == [Tag(9, "favorite")]

    def test_tags_by_name(self, store):
        from marginalia.models import Kind, Tag

        store.upsert_book(_book(1, tags=[Tag(1, "A"), Tag(2, "B")]))
        store.upsert_book(_book(2))
        store.upsert_tags_for(2, Kind.BOOKS, {"B", "A", "B"})

        books = {r.book.id: [t.name for t in r.book.tags] for r in store.books_matching()}
        assert books == {1: ["A", "B"], 2: ["A", "B"]}

    def test_unknown_tag_name_needs_an_id(self, store):
        from marginalia.models import Kind, Tag

        store.upsert_book(_book(1, tags=[Tag(1, "A")]))
        with pytest.raises(ValueError, match="no Readwise id"):
            store.upsert_tags_for(1, Kind.BOOKS, ["A", "brand new"])
        # Nothing changed
        assert [t.name for t in store.books_matching()[0].book.tags] == ["A"]

    def test_documents_have_no_tags(self, store):
        from marginalia.models import Kind

        with pytest.raises(ValueError):
            store.upsert_tags_for(1, Kind.DOCUMENTS, [])


class TestQueries:
    def test_books_ordered_by_category_then_title(self, store):
        store.upsert_book(_book(1, title="Zeta", category="books"))
        store.upsert_book(_book(2, title="Alpha", category="books"))
        store.upsert_book(_book(3, title="Beta", category="articles"))

        assert [r.book.id for r in store.books_matching()] == [3, 2, 1]

    def test_highlights_ordered_by_location_then_id(self, store):
        store.upsert_book(_book(1))
        store.upsert_highlight(_highlight(30, 1, location=5))
        store.upsert_highlight(_highlight(10, 1, location=9))
        store.upsert_highlight(_highlight(20, 1, location=5))

        [record] = store.books_matching()
        assert [h.id for h in record.highlights] == [20, 30, 10]

    def test_category_filter_is_case_insensitive(self, store):
        store.upsert_book(_book(1, category="books"))
        store.upsert_book(_book(2, category="articles"))

        assert [r.book.id for r in store.books_matching(["BOOKS"])] == [1]
        assert len(store.books_matching([])) == 2

    def test_skip_empty(self, store):
        store.upsert_book(_book(1))
        store.upsert_book(_book(2))
        store.upsert_highlight(_highlight(10, 2))

        assert [r.book.id for r in store.books_matching(skip_empty=True)] == [2]
        assert len(store.books_matching(skip_empty=False)) == 2

    def test_documents_ordered_by_saved_at(self, store):
        store.upsert_document(_document("b", saved_at=T0 + timedelta(days=1)))
        store.upsert_document(_document("a", saved_at=T0 + timedelta(days=2)))
        store.upsert_document(_document("c", saved_at=T0))

        assert [d.id for d in store.documents_matching()] == ["c", "b", "a"]

    def test_document_category_filter(self, store):
        store.upsert_document(_document("a", category="article"))
        store.upsert_document(_document("b", category="pdf"))
        assert [d.id for d in store.documents_matching(["PDF"])] == ["b"]

    def test_export_library(self, store):
        store.upsert_book(_book(1))
        store.upsert_highlight(_highlight(10, 1))
        store.upsert_document(_document("d1"))

        data = store.export_library()
        assert [b["id"] for b in data["books"]] == [1]
        assert [h["id"] for h in data["highlights"]] == [10]
        assert [d["id"] for d in data["documents"]] == ["d1"]
        assert data["books"][0]["updated"] == "2024-01-01T00:00:00+00:00"

"""Relational cache of Readwise records.

Two backends share one interface: an embedded SQLite file and a PostgreSQL
server. ``open_store`` picks one from the scheme of the connection URL and
brings the schema up to date (Alembic revisions in ``migrations/``) before
anything else touches it. Each database keeps its own version ledger in
``alembic_version``.

All writes for one fetched page happen in a single transaction, so a
failure part-way through a page leaves the cache as it was before the page.
"""

import logging
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple, Type, Union

import sqlalchemy as sa
from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from alembic.util import CommandError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool

from marginalia import schema
from marginalia.models import Book, BookRecord, Document, Entity, Highlight, Kind, Tag

log = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


class MigrationError(Exception):
    """A schema migration could not be applied. Fatal at startup."""


def _alembic_config(engine: Optional[Engine] = None) -> Config:
    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    if engine is not None:
        cfg.attributes["engine"] = engine
    return cfg


def revisions() -> List[str]:
    """Every known revision, oldest first."""
    script = ScriptDirectory.from_config(_alembic_config())
    return [s.revision for s in reversed(list(script.walk_revisions()))]


class CacheStore:
    """Backend-agnostic cache operations.

    Subclasses only supply the engine and the dialect's INSERT construct
    (which carries ON CONFLICT support); everything else is shared.
    """

    backend = ""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self.engine.dispose()

    def _insert(self, table: sa.Table):
        raise NotImplementedError

    # -- Migrations --

    def applied_migrations(self) -> List[str]:
        """Revisions this database is at or past, oldest first."""
        with self.engine.connect() as conn:
            heads = MigrationContext.configure(conn).get_current_heads()
        if not heads:
            return []
        known = revisions()
        if heads[0] not in known:
            return list(heads)
        return known[:known.index(heads[0]) + 1]

    def migrate(self) -> List[str]:
        """Apply pending revisions in order. Returns the revisions applied.

        Each revision runs in its own transaction together with its ledger
        update, so a revision is either fully applied and recorded or neither.
        """
        try:
            before = self.applied_migrations()
            pending = revisions()[len(before):]
        except (CommandError, SQLAlchemyError) as exc:
            raise MigrationError(f"Could not read the migration ledger: {exc}") from exc

        if pending:
            log.info("Applying %d %s migration(s): %s", len(pending), self.backend, ", ".join(pending))
        try:
            command.upgrade(_alembic_config(self.engine), "head")
        except (CommandError, SQLAlchemyError, OSError) as exc:
            try:
                done = len(self.applied_migrations()) - len(before)
            except SQLAlchemyError:
                done = 0
            failed = pending[done] if done < len(pending) else "head"
            raise MigrationError(f"Migration {failed} failed: {exc}") from exc

        if pending:
            log.info("Applied %d migration(s)", len(pending))
        return pending

    # -- Upserts --

    def upsert_page(self, kind: Kind, entities: Sequence[Entity]) -> int:
        """Write one fetched page in a single transaction.

        Returns how many rows were inserted or changed. Rows older than what
        the cache already holds are left alone.
        """
        written = 0
        with self.engine.begin() as conn:
            for entity in entities:
                if kind is Kind.BOOKS:
                    changed = self._write_book(conn, entity)
                elif kind is Kind.HIGHLIGHTS:
                    changed = self._write_highlight(conn, entity)
                else:
                    changed = self._write_document(conn, entity)
                written += int(changed)
        return written

    def upsert_book(self, book: Book) -> bool:
        return self.upsert_page(Kind.BOOKS, [book]) == 1

    def upsert_highlight(self, highlight: Highlight) -> bool:
        return self.upsert_page(Kind.HIGHLIGHTS, [highlight]) == 1

    def upsert_document(self, document: Document) -> bool:
        return self.upsert_page(Kind.DOCUMENTS, [document]) == 1

    def upsert_tags_for(
        self, entity_id: int, kind: Kind, tags: Iterable[Union[Tag, str]],
    ) -> None:
        """Make the entity's tag set exactly ``tags`` (deduplicated by name).

        Items are tag names or ``Tag`` records. A bare name must already be
        cached: tag ids come from Readwise, the cache never invents them.
        """
        with self.engine.begin() as conn:
            self._sync_tags(conn, entity_id, kind, tags)

    def _upsert_row(
        self, conn: Connection, table: sa.Table, values: Dict[str, Any], updated_column: str,
    ) -> bool:
        stmt = self._insert(table).values(**values)
        current = table.c[updated_column]
        incoming = stmt.excluded[updated_column]
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.id],
            set_={name: stmt.excluded[name] for name in values if name != "id"},
            where=sa.or_(current.is_(None), incoming.is_(None), incoming >= current),
        )
        return conn.execute(stmt).rowcount > 0

    def _write_book(self, conn: Connection, book: Book) -> bool:
        changed = self._upsert_row(conn, schema.books, _column_values(book), "updated")
        if changed:
            self._sync_tags(conn, book.id, Kind.BOOKS, book.tags)
        return changed

    def _write_highlight(self, conn: Connection, highlight: Highlight) -> bool:
        changed = self._upsert_row(conn, schema.highlights, _column_values(highlight), "updated")
        if changed:
            self._sync_tags(conn, highlight.id, Kind.HIGHLIGHTS, highlight.tags)
        return changed

    def _write_document(self, conn: Connection, document: Document) -> bool:
        return self._upsert_row(conn, schema.documents, _column_values(document), "updated_at")

    @staticmethod
    def _join_for(kind: Kind) -> Tuple[sa.Table, sa.Column]:
        if kind is Kind.BOOKS:
            return schema.book_tags, schema.book_tags.c.book_id
        if kind is Kind.HIGHLIGHTS:
            return schema.highlight_tags, schema.highlight_tags.c.highlight_id
        raise ValueError(f"{kind.value} do not carry tags")

    def _sync_tags(
        self, conn: Connection, entity_id: int, kind: Kind, tags: Iterable[Union[Tag, str]],
    ) -> None:
        join, owner = self._join_for(kind)
        tag_table = schema.tags

        desired: Dict[str, Optional[Tag]] = {}
        for tag in tags:
            if isinstance(tag, str):
                desired.setdefault(tag, None)
            elif desired.get(tag.name) is None:
                desired[tag.name] = tag

        ids_by_name: Dict[str, int] = {}
        if desired:
            ids_by_name = dict(
                conn.execute(
                    sa.select(tag_table.c.name, tag_table.c.id)
                    .where(tag_table.c.name.in_(list(desired)))
                ).all()
            )
            for name, tag in desired.items():
                if name in ids_by_name:
                    continue
                if tag is None:
                    raise ValueError(f"Tag {name!r} is not cached and has no Readwise id")
                stmt = self._insert(tag_table).values(id=tag.id, name=name)
                # A known id under a new name means the tag was renamed remotely
                stmt = stmt.on_conflict_do_update(
                    index_elements=[tag_table.c.id], set_={"name": stmt.excluded.name},
                )
                conn.execute(stmt)
                ids_by_name[name] = tag.id

        wanted = set(ids_by_name.values())
        current = set(
            conn.execute(sa.select(join.c.tag_id).where(owner == entity_id)).scalars()
        )

        removed = current - wanted
        added = wanted - current
        if removed:
            conn.execute(
                sa.delete(join).where(owner == entity_id, join.c.tag_id.in_(removed))
            )
        if added:
            conn.execute(
                sa.insert(join),
                [{owner.name: entity_id, "tag_id": tag_id} for tag_id in sorted(added)],
            )

    # -- Queries --

    def books_matching(
        self, categories: Optional[Iterable[str]] = None, skip_empty: bool = False,
    ) -> List[BookRecord]:
        """Return books with their highlights (location, id order) and tags.

        ``categories`` restricts to those labels (case-insensitive); None or
        empty means no restriction. ``skip_empty`` drops books that have no
        cached highlights.
        """
        books, highlights = schema.books, schema.highlights

        conditions = []
        wanted = _normalise_categories(categories)
        if wanted:
            conditions.append(sa.func.lower(books.c.category).in_(wanted))
        if skip_empty:
            conditions.append(
                sa.exists().where(highlights.c.book_id == books.c.id)
            )
        book_ids = sa.select(books.c.id).where(*conditions)

        with self.engine.connect() as conn:
            book_rows = conn.execute(
                sa.select(books).where(*conditions)
                .order_by(books.c.category, books.c.title, books.c.id)
            ).mappings().all()

            highlight_rows = conn.execute(
                sa.select(highlights)
                .where(highlights.c.book_id.in_(book_ids))
                .order_by(highlights.c.book_id, highlights.c.location, highlights.c.id)
            ).mappings().all()

            book_tags = self._tags_by_owner(
                conn, schema.book_tags.c.book_id, schema.book_tags.c.book_id.in_(book_ids),
            )
            highlight_ids = sa.select(highlights.c.id).where(highlights.c.book_id.in_(book_ids))
            highlight_tags = self._tags_by_owner(
                conn,
                schema.highlight_tags.c.highlight_id,
                schema.highlight_tags.c.highlight_id.in_(highlight_ids),
            )

        by_book: Dict[int, List[Highlight]] = {}
        for row in highlight_rows:
            highlight = Highlight(**row, tags=highlight_tags.get(row["id"], []))
            by_book.setdefault(highlight.book_id, []).append(highlight)

        return [
            BookRecord(
                book=Book(**row, tags=book_tags.get(row["id"], [])),
                highlights=by_book.get(row["id"], []),
            )
            for row in book_rows
        ]

    @staticmethod
    def _tags_by_owner(conn: Connection, owner: sa.Column, condition) -> Dict[int, List[Tag]]:
        join = owner.table
        rows = conn.execute(
            sa.select(owner, schema.tags.c.id, schema.tags.c.name)
            .join(schema.tags, schema.tags.c.id == join.c.tag_id)
            .where(condition)
            .order_by(owner, schema.tags.c.name)
        ).all()
        result: Dict[int, List[Tag]] = {}
        for owner_id, tag_id, name in rows:
            result.setdefault(owner_id, []).append(Tag(id=tag_id, name=name))
        return result

    def documents_matching(self, categories: Optional[Iterable[str]] = None) -> List[Document]:
        documents = schema.documents
        query = sa.select(documents).order_by(documents.c.saved_at, documents.c.id)
        wanted = _normalise_categories(categories)
        if wanted:
            query = query.where(sa.func.lower(documents.c.category).in_(wanted))
        with self.engine.connect() as conn:
            return [Document(**row) for row in conn.execute(query).mappings()]

    def ids(self, kind: Kind) -> Set[Any]:
        """Ids of every cached book or document."""
        table = schema.documents if kind is Kind.DOCUMENTS else schema.books
        with self.engine.connect() as conn:
            return set(conn.execute(sa.select(table.c.id)).scalars())

    def counts(self) -> Dict[str, int]:
        result = {}
        with self.engine.connect() as conn:
            for table in (schema.books, schema.highlights, schema.documents, schema.tags):
                result[table.name] = conn.execute(
                    sa.select(sa.func.count()).select_from(table)
                ).scalar_one()
        return result

    def export_library(self) -> Dict[str, Any]:
        """Dump the whole cache as JSON-serializable data."""
        records = self.books_matching()
        return {
            "books": [r.book.to_dict() for r in records],
            "highlights": [h.to_dict() for r in records for h in r.highlights],
            "documents": [d.to_dict() for d in self.documents_matching()],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }


def _column_values(entity: Entity) -> Dict[str, Any]:
    """Scalar fields of a record; tags live in join tables."""
    return {f.name: getattr(entity, f.name) for f in fields(entity) if f.name != "tags"}


def _normalise_categories(categories: Optional[Iterable[str]]) -> List[str]:
    return sorted({c.strip().lower() for c in categories or [] if c.strip()})


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class SqliteCacheStore(CacheStore):
    """Cache in a local SQLite file."""

    backend = "sqlite"

    def __init__(self, url: str) -> None:
        database = sa.engine.make_url(url).database
        if database and database != ":memory:":
            Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)
            engine = sa.create_engine(
                url,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            # In-memory databases live and die with their connection
            engine = sa.create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        sa.event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        super().__init__(engine)

    def _insert(self, table: sa.Table):
        return sqlite_insert(table)


class PostgresCacheStore(CacheStore):
    """Cache in a PostgreSQL database (psycopg2 driver)."""

    backend = "postgres"

    def __init__(self, url: str) -> None:
        engine = sa.create_engine(
            url,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,  # Verify connections before use
            pool_recycle=3600,
        )
        super().__init__(engine)

    def _insert(self, table: sa.Table):
        return pg_insert(table)


def resolve_backend(url: str) -> Tuple[Type[CacheStore], str]:
    """Map a connection descriptor to a store class and a SQLAlchemy URL.

    Accepts ``sqlite:`` URLs (``sqlite://relative.db`` and ``sqlite::memory:``
    are understood too), bare filesystem paths, and ``postgres://`` or
    ``postgresql://`` URLs.
    """
    url = url.strip()
    if "://" not in url and not url.startswith("sqlite:"):
        return SqliteCacheStore, f"sqlite:///{url}"

    scheme, _, rest = url.partition(":")
    scheme = scheme.lower()
    if scheme == "sqlite" or scheme.startswith("sqlite+"):
        if rest in ("", "//", ":memory:", "//:memory:"):
            return SqliteCacheStore, "sqlite://"
        if rest.startswith("//") and not rest.startswith("///"):
            return SqliteCacheStore, f"{scheme}:///{rest[2:]}"
        return SqliteCacheStore, url
    if scheme in ("postgres", "postgresql"):
        return PostgresCacheStore, f"postgresql:{rest}"
    if scheme.startswith("postgresql+"):
        return PostgresCacheStore, url
    raise ValueError(f"Unsupported database URL scheme: {scheme!r}")


def open_store(url: str, migrate: bool = True) -> CacheStore:
    """Open the cache named by ``url`` and apply pending migrations."""
    store_cls, sa_url = resolve_backend(url)
    log.debug(
        "Opening %s cache at %s",
        store_cls.backend, sa.engine.make_url(sa_url).render_as_string(hide_password=True),
    )
    store = store_cls(sa_url)
    if migrate:
        try:
            store.migrate()
        except MigrationError:
            store.close()
            raise
    return store

"""Build render contexts from the cache.

One unit per book (with its highlights) and one per Reader document. Filters
are applied here, before anything is rendered, and binding only reads from
the cache.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from marginalia.models import BookRecord, Document, Kind
from marginalia.store import CacheStore
from marginalia.vault import sanitize_note_name

log = logging.getLogger(__name__)

_KINDLE_URL = "https://readwise.io/to_kindle?action=open&asin={asin}&location={location}"

READER_FOLDER = "Reader"


@dataclass
class RenderUnit:
    kind: Kind
    key: str
    title: str
    path: Path
    context: Dict[str, Any]


def _category_title(category: Optional[str]) -> str:
    if not category:
        return "Uncategorized"
    return category[:1].upper() + category[1:]


def book_context(record: BookRecord) -> Dict[str, Any]:
    book = record.book.to_dict()
    highlights = []
    for highlight in record.highlights:
        item = highlight.to_dict()
        item["location_url"] = (
            _KINDLE_URL.format(asin=record.book.asin, location=highlight.location)
            if record.book.asin else None
        )
        highlights.append(item)
    return {"book": book, "highlights": highlights, "tags": book["tags"]}


def document_context(document: Document) -> Dict[str, Any]:
    return {"document": document.to_dict()}


def unit_key(kind: Kind, ident: Any) -> str:
    prefix = "document" if kind is Kind.DOCUMENTS else "book"
    return f"{prefix}:{ident}"


def _dedupe_paths(units: List[RenderUnit], fixed: Set[str]) -> None:
    """Give every unit its own file; the first unit keeps the plain name.

    Units in ``fixed`` already have a note on disk and keep its path.
    """
    seen = {str(u.path).casefold() for u in units if u.key in fixed}
    for unit in units:
        if unit.key in fixed:
            continue
        suffix = unit.key.split(":", 1)[1]
        while str(unit.path).casefold() in seen:
            unit.path = unit.path.with_name(f"{unit.path.stem} ({suffix}){unit.path.suffix}")
            log.debug("Title clash for %s, writing to %s", unit.key, unit.path.name)
        seen.add(str(unit.path).casefold())


def bind_units(
    store: CacheStore,
    base_dir: Path,
    categories: Optional[Iterable[str]] = None,
    skip_empty: bool = False,
    books: bool = True,
    documents: bool = True,
    existing: Optional[Mapping[str, Path]] = None,
) -> List[RenderUnit]:
    """Return render units for everything in scope, in a stable order.

    ``existing`` maps unit keys to notes already on disk (see
    ``vault.scan_notes``); those units are written where the note is now
    rather than at their default path.
    """
    existing = existing or {}
    units: List[RenderUnit] = []

    if books:
        for record in store.books_matching(categories, skip_empty):
            book = record.book
            units.append(RenderUnit(
                kind=Kind.BOOKS,
                key=unit_key(Kind.BOOKS, book.id),
                title=book.title,
                path=base_dir / _category_title(book.category) / f"{sanitize_note_name(book.title)}.md",
                context=book_context(record),
            ))

    if documents:
        for document in store.documents_matching(categories):
            title = document.title or document.id
            units.append(RenderUnit(
                kind=Kind.DOCUMENTS,
                key=unit_key(Kind.DOCUMENTS, document.id),
                title=title,
                path=(
                    base_dir / READER_FOLDER / _category_title(document.category)
                    / f"{sanitize_note_name(title)}.md"
                ),
                context=document_context(document),
            ))

    # Lowest id claims a contested file name, independent of query order
    units.sort(key=lambda u: (u.kind.value, _id_order(u.key)))
    fixed = set()
    for unit in units:
        if unit.key in existing:
            if existing[unit.key] != unit.path:
                log.debug("Found %s at %s", unit.key, existing[unit.key])
            unit.path = existing[unit.key]
            fixed.add(unit.key)
    _dedupe_paths(units, fixed)
    log.debug("Bound %d units", len(units))
    return units


def _id_order(key: str):
    ident = key.split(":", 1)[1]
    return (0, int(ident), "") if ident.isdigit() else (1, 0, ident)

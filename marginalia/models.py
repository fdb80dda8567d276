"""Records cached from Readwise: books, highlights, Reader documents, tags.

Each record knows how to build itself from a Readwise API payload
(``from_api``) and how to flatten itself into plain values (``to_dict``)
for templates and JSON export.
"""

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Union


class Kind(str, enum.Enum):
    """Top-level sync categories, each with its own cursor."""

    BOOKS = "books"
    HIGHLIGHTS = "highlights"
    DOCUMENTS = "documents"

    @classmethod
    def parse(cls, value: str) -> "Kind":
        value = value.strip().lower()
        aliases = {"book": "books", "highlight": "highlights", "document": "documents",
                   "reader": "documents"}
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            raise ValueError(
                f"Unknown kind {value!r} (expected one of: books, highlights, documents)"
            ) from None


def parse_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """Parse a Readwise timestamp into an aware UTC datetime.

    Accepts ISO 8601 strings (with or without ``Z``), bare ``YYYY-MM-DD``
    dates and epoch milliseconds. Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if len(text) == 10:
        d = date.fromisoformat(text)
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _required_timestamp(data: Dict[str, Any], key: str) -> datetime:
    ts = parse_timestamp(data.get(key))
    if ts is None:
        raise ValueError(f"missing required timestamp {key!r}")
    return ts


def _iso(value: Any) -> Any:
    return value.isoformat() if isinstance(value, datetime) else value


@dataclass(frozen=True)
class Tag:
    id: int
    name: str

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Tag":
        return cls(id=int(data["id"]), name=str(data["name"]))


@dataclass
class Book:
    id: int
    title: str
    category: str
    num_highlights: int = 0
    author: Optional[str] = None
    last_highlight_at: Optional[datetime] = None
    updated: Optional[datetime] = None
    cover_image_url: Optional[str] = None
    highlights_url: Optional[str] = None
    source_url: Optional[str] = None
    asin: Optional[str] = None
    tags: List[Tag] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Book":
        return cls(
            id=int(data["id"]),
            title=data["title"],
            author=data.get("author"),
            category=data["category"],
            num_highlights=int(data.get("num_highlights") or 0),
            last_highlight_at=parse_timestamp(data.get("last_highlight_at")),
            updated=parse_timestamp(data.get("updated")),
            cover_image_url=data.get("cover_image_url"),
            highlights_url=data.get("highlights_url"),
            source_url=data.get("source_url"),
            asin=data.get("asin"),
            tags=[Tag.from_api(t) for t in data.get("tags") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: _iso(v) for k, v in asdict(self).items()}


@dataclass
class Highlight:
    id: int
    text: str
    book_id: int
    updated: datetime
    note: str = ""
    location: int = 0
    location_type: str = ""
    highlighted_at: Optional[datetime] = None
    url: Optional[str] = None
    color: str = ""
    tags: List[Tag] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Highlight":
        return cls(
            id=int(data["id"]),
            text=data["text"],
            note=data.get("note") or "",
            location=int(data.get("location") or 0),
            location_type=data.get("location_type") or "",
            highlighted_at=parse_timestamp(data.get("highlighted_at")),
            url=data.get("url"),
            color=data.get("color") or "",
            updated=_required_timestamp(data, "updated"),
            book_id=int(data["book_id"]),
            tags=[Tag.from_api(t) for t in data.get("tags") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: _iso(v) for k, v in asdict(self).items()}


@dataclass
class Document:
    id: str
    url: str
    created_at: datetime
    updated_at: datetime
    saved_at: datetime
    last_moved_at: datetime
    reading_progress: float = 0.0
    title: Optional[str] = None
    author: Optional[str] = None
    source: Optional[str] = None
    category: Optional[str] = None
    location: Optional[str] = None
    site_name: Optional[str] = None
    word_count: Optional[int] = None
    published_date: Optional[datetime] = None
    summary: Optional[str] = None
    image_url: Optional[str] = None
    content: Optional[str] = None
    source_url: Optional[str] = None
    notes: Optional[str] = None
    parent_id: Optional[str] = None
    first_opened_at: Optional[datetime] = None
    last_opened_at: Optional[datetime] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Document":
        return cls(
            id=str(data["id"]),
            url=data["url"],
            title=data.get("title"),
            author=data.get("author"),
            source=data.get("source"),
            category=data.get("category"),
            location=data.get("location"),
            site_name=data.get("site_name"),
            word_count=data.get("word_count"),
            created_at=_required_timestamp(data, "created_at"),
            updated_at=_required_timestamp(data, "updated_at"),
            published_date=parse_timestamp(data.get("published_date")),
            summary=data.get("summary"),
            image_url=data.get("image_url"),
            content=data.get("content"),
            source_url=data.get("source_url"),
            notes=data.get("notes"),
            parent_id=data.get("parent_id"),
            reading_progress=float(data.get("reading_progress") or 0.0),
            first_opened_at=parse_timestamp(data.get("first_opened_at")),
            last_opened_at=parse_timestamp(data.get("last_opened_at")),
            saved_at=_required_timestamp(data, "saved_at"),
            last_moved_at=_required_timestamp(data, "last_moved_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {k: _iso(v) for k, v in asdict(self).items()}


Entity = Union[Book, Highlight, Document]


def updated_of(entity: Entity) -> Optional[datetime]:
    """Return the remote "last updated" timestamp of any record."""
    if isinstance(entity, Document):
        return entity.updated_at
    return entity.updated


@dataclass
class BookRecord:
    """A cached book together with its highlights and tags."""

    book: Book
    highlights: List[Highlight]

"""Note output (Obsidian vault or plain folder).

Writes rendered notes to disk under one of three strategies, never leaving a
half-written file behind: content is written to a temp file beside the
target and renamed over it.

Merge strategy: the generated part of a note sits between two marker lines,

    %% marginalia:begin %%
    ...generated...
    %% marginalia:end %%

Everything outside the markers belongs to the user and is kept byte for
byte, except that frontmatter keys the template writes are refreshed (other
keys are left alone). ``%% ... %%`` is an Obsidian comment, so the markers
are invisible in reading view.

Notes carry their identity in frontmatter (``note-kind`` and
``readwise_id``), so a note the user moved or renamed is still found.
"""

import enum
import logging
import os
import tempfile
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Optional, Tuple

log = logging.getLogger(__name__)

BEGIN_MARKER = "%% marginalia:begin %%"
END_MARKER = "%% marginalia:end %%"

KIND_KEY = "note-kind"
ID_KEY = "readwise_id"
STRANDED_KEY = "stranded"

# note-kind value -> prefix of the unit key
NOTE_KINDS = {"readwise-book": "book", "readwise-document": "document"}

# Identity lives in frontmatter; no need to read whole notes when scanning
_HEAD_BYTES = 64 * 1024


class Strategy(str, enum.Enum):
    REPLACE = "replace"
    SKIP_IF_EXISTS = "skip-if-exists"
    MERGE = "merge"

    @classmethod
    def parse(cls, value: str) -> "Strategy":
        value = value.strip().lower().replace("_", "-")
        aliases = {"skip": "skip-if-exists", "ignore-existing": "skip-if-exists",
                   "update": "merge"}
        try:
            return cls(aliases.get(value, value))
        except ValueError:
            raise ValueError(
                f"Unknown replacement strategy {value!r} "
                "(expected one of: replace, skip-if-exists, merge)"
            ) from None


class Outcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    STRANDED = "stranded"


class UnreadableNoteError(Exception):
    """An existing note is not UTF-8 text, so it cannot be merged."""


def managed_region(text: str) -> Optional[Tuple[int, int]]:
    """Return (start, end) offsets of the managed block, markers included.

    None when the text does not hold exactly one begin marker followed by
    exactly one end marker.
    """
    if text.count(BEGIN_MARKER) != 1 or text.count(END_MARKER) != 1:
        return None
    start = text.index(BEGIN_MARKER)
    end = text.index(END_MARKER)
    if end < start:
        return None
    return start, end + len(END_MARKER)


# -- Frontmatter --


def frontmatter_span(text: str) -> Optional[Tuple[int, int]]:
    """Return offsets of the text between the opening and closing ``---`` lines."""
    lines = text.splitlines(keepends=True)
    if not lines or lines[0].lstrip("\ufeff").rstrip("\r\n") != "---":
        return None
    offset = start = len(lines[0])
    for line in lines[1:]:
        if line.rstrip("\r\n") == "---":
            return start, offset
        offset += len(line)
    return None


def parse_frontmatter_blocks(fm_text: str) -> "OrderedDict[str, str]":
    """Parse frontmatter text into ordered blocks keyed by field name.

    Each value is the full text of that block (key line + any continuation
    lines like list items), line endings included, so joining the values
    gives back the original text. Lines before the first key go under "".
    """
    blocks: "OrderedDict[str, str]" = OrderedDict()
    current_key = ""
    current_lines = []

    for line in fm_text.splitlines(keepends=True):
        # Top-level key: starts with a non-whitespace char and contains ":"
        if line.strip() and not line[0].isspace() and ":" in line and not line.startswith("#"):
            if current_lines:
                blocks[current_key] = blocks.get(current_key, "") + "".join(current_lines)
            current_key = line.split(":", 1)[0].strip()
            current_lines = [line]
        else:
            current_lines.append(line)

    if current_lines:
        blocks[current_key] = blocks.get(current_key, "") + "".join(current_lines)
    return blocks


def _scalar(block: Optional[str]) -> Optional[str]:
    """Value of a one-line ``key: value`` block, quotes removed."""
    if not block:
        return None
    value = block.splitlines()[0].split(":", 1)[1].strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        value = value[1:-1]
    return value or None


def _merge_frontmatter(text: str, rendered: str) -> str:
    """Refresh the keys ``rendered`` writes in the frontmatter of ``text``."""
    span = frontmatter_span(text)
    new_span = frontmatter_span(rendered)
    if span is None or new_span is None:
        return text
    if BEGIN_MARKER in text[:span[1]]:
        return text

    blocks = parse_frontmatter_blocks(text[span[0]:span[1]])
    for key, block in parse_frontmatter_blocks(rendered[new_span[0]:new_span[1]]).items():
        if key:
            blocks[key] = block
    # A note that is exported again is no longer stranded
    blocks.pop(STRANDED_KEY, None)
    return text[:span[0]] + "".join(blocks.values()) + text[span[1]:]


def merge(existing: str, rendered: str, path: Optional[Path] = None) -> str:
    """Splice the managed block of ``rendered`` into ``existing``.

    Falls back to ``rendered`` as a whole when either side lacks a
    well-formed marker pair.
    """
    new_region = managed_region(rendered)
    if new_region is None:
        log.debug("Rendered note for %s has no managed region, replacing", path)
        return rendered
    old_region = managed_region(existing)
    if old_region is None:
        log.warning(
            "Existing note %s has missing or malformed %s/%s markers, replacing it",
            path, BEGIN_MARKER, END_MARKER,
        )
        return rendered
    block = rendered[new_region[0]:new_region[1]]
    merged = existing[:old_region[0]] + block + existing[old_region[1]:]
    return _merge_frontmatter(merged, rendered)


# -- Writing --


def _read_existing(path: Path) -> Optional[bytes]:
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def _decode(path: Path, data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise UnreadableNoteError(
            f"{path} is not UTF-8 text ({exc.reason} at byte {exc.start}), left untouched"
        ) from exc


def write_atomic(path: Path, content: str) -> None:
    """Write content atomically: write to temp file, then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".marginalia_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        # mkstemp creates 0600 files; keep the note's mode instead
        try:
            mode = path.stat().st_mode & 0o777
        except FileNotFoundError:
            mode = 0o644
        os.chmod(tmp, mode)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


def reconcile(path: Path, rendered: str, strategy: Strategy) -> Outcome:
    """Bring the file at ``path`` in line with freshly rendered text.

    The final content is computed before touching the disk; a file whose
    bytes would not change is not rewritten. Skip-if-exists never reads the
    existing file.
    """
    if strategy is Strategy.SKIP_IF_EXISTS and path.exists():
        log.debug("Note exists, skipping: %s", path)
        return Outcome.SKIPPED

    existing = _read_existing(path)

    if existing is None:
        write_atomic(path, rendered)
        log.info("Created note: %s", path)
        return Outcome.CREATED

    if strategy is Strategy.SKIP_IF_EXISTS:
        log.debug("Note appeared while exporting, skipping: %s", path)
        return Outcome.SKIPPED

    if strategy is Strategy.MERGE:
        content = merge(_decode(path, existing), rendered, path)
    else:
        content = rendered

    if content.encode("utf-8") == existing:
        log.debug("Note unchanged: %s", path)
        return Outcome.UNCHANGED

    write_atomic(path, content)
    log.info("Updated note: %s", path)
    return Outcome.UPDATED


# -- Finding existing notes --


def note_identity(text: str) -> Optional[str]:
    """Return the unit key (``book:12``, ``document:abc``) a note declares."""
    span = frontmatter_span(text)
    if span is None:
        return None
    blocks = parse_frontmatter_blocks(text[span[0]:span[1]])
    prefix = NOTE_KINDS.get(_scalar(blocks.get(KIND_KEY)) or "")
    ident = _scalar(blocks.get(ID_KEY))
    if prefix is None or ident is None:
        return None
    return f"{prefix}:{ident}"


def _read_head(path: Path) -> str:
    with path.open("rb") as f:
        return f.read(_HEAD_BYTES).decode("utf-8", errors="replace")


def scan_notes(root: Path) -> Dict[str, Path]:
    """Map note identities to the files that carry them, anywhere under ``root``.

    Hidden folders (``.obsidian``, ``.trash``) are not searched. When two
    files claim the same identity the first in path order wins.
    """
    found: Dict[str, Path] = {}
    if not root.is_dir():
        return found
    for path in sorted(root.rglob("*.md")):
        if any(part.startswith(".") for part in path.relative_to(root).parts):
            continue
        try:
            key = note_identity(_read_head(path))
        except OSError as exc:
            log.warning("Could not read %s while scanning: %s", path, exc)
            continue
        if key is None:
            continue
        if key in found:
            log.warning("%s and %s both claim %s, using the first", found[key], path, key)
            continue
        found[key] = path
    log.debug("Found %d existing notes under %s", len(found), root)
    return found


def mark_stranded(path: Path) -> bool:
    """Flag a note whose record is gone with ``stranded: true``.

    Returns False when the note was already flagged or has no frontmatter.
    """
    text = _decode(path, path.read_bytes())
    span = frontmatter_span(text)
    if span is None:
        return False
    blocks = parse_frontmatter_blocks(text[span[0]:span[1]])
    if _scalar(blocks.get(STRANDED_KEY)) == "true":
        return False
    blocks[STRANDED_KEY] = f"{STRANDED_KEY}: true\n"
    write_atomic(path, text[:span[0]] + "".join(blocks.values()) + text[span[1]:])
    log.info("Marked stranded: %s", path)
    return True


def sanitize_note_name(name: str) -> str:
    """Sanitize a string for use as a note filename."""
    bad_chars = '<>:"/\\|?*#^[]'
    result = name
    for c in bad_chars:
        result = result.replace(c, "")
    result = " ".join(result.split())
    # Obsidian treats anything after a dot as an extension
    result = result.replace(".", "-")
    return result[:200].strip() or "Untitled"


def escape_yaml(s: str) -> str:
    """Escape a string for use in YAML double-quoted context."""
    return s.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")

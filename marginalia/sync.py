"""One run of the pipeline.

Fetch: for each kind, stream pages from Readwise and commit each page to the
cache before asking for the next; once the stream is exhausted, advance the
kind's cursor to the newest "updated" timestamp committed.

Export: bind every unit in scope, render it and reconcile it with the file
on disk.

Failures are recorded per kind and per file in a RunReport. Only a
permanent Readwise error (bad token, malformed response) stops the run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from marginalia import bind, readwise_client, vault
from marginalia.cursors import CursorStore
from marginalia.models import Kind, updated_of
from marginalia.readwise_client import RetriesExhaustedError
from marginalia.renderer import Renderer, RenderError
from marginalia.store import CacheStore
from marginalia.vault import Outcome, Strategy, UnreadableNoteError, reconcile

log = logging.getLogger(__name__)

ALL_KINDS = (Kind.BOOKS, Kind.HIGHLIGHTS, Kind.DOCUMENTS)


@dataclass
class RunOptions:
    base_dir: Path
    renderer: Optional[Renderer]
    kinds: Sequence[Kind] = ALL_KINDS
    fetch: bool = True
    export: bool = True
    refetch: bool = False
    strategy: Strategy = Strategy.MERGE
    categories: List[str] = field(default_factory=list)
    skip_empty: bool = True
    # Where to look for notes the user moved; defaults to base_dir
    vault_root: Optional[Path] = None
    mark_stranded: bool = False
    fetch_concurrency: int = 2
    render_concurrency: int = 8


@dataclass
class RunReport:
    fetched: Dict[str, int] = field(default_factory=dict)
    outcomes: Dict[str, str] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def count(self, outcome: Outcome) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome.value)

    def summary(self) -> str:
        fetched = ", ".join(f"{n} {kind}" for kind, n in self.fetched.items()) or "nothing"
        notes = ", ".join(
            f"{self.count(o)} {o.value}" for o in Outcome if self.count(o)
        ) or "no notes"
        text = f"Fetched {fetched}; {notes}"
        if self.failures:
            text += f"; {len(self.failures)} failed"
        return text


# -- Fetch --


async def fetch_kind(
    store: CacheStore, cursors: CursorStore, kind: Kind, refetch: bool, report: RunReport,
) -> None:
    """Sync one kind. Transient and storage failures are recorded, not raised."""
    since = None if refetch else await asyncio.to_thread(cursors.get_cursor, kind)
    pages = readwise_client.iter_pages(kind, since)
    newest: Optional[datetime] = None
    count = 0

    try:
        while True:
            page = await asyncio.to_thread(next, pages, None)
            if page is None:
                break
            if page:
                written = await asyncio.to_thread(store.upsert_page, kind, page)
                log.info("Committed %d %s (%d changed)", len(page), kind.value, written)
            count += len(page)
            for entity in page:
                ts = updated_of(entity)
                if ts is not None and (newest is None or ts > newest):
                    newest = ts
    except RetriesExhaustedError as exc:
        log.error("Giving up on %s for this run: %s", kind.value, exc)
        report.failures[f"fetch:{kind.value}"] = str(exc)
        return
    except SQLAlchemyError as exc:
        log.error("Could not cache %s page, rolled back: %s", kind.value, exc)
        report.failures[f"fetch:{kind.value}"] = f"storage: {exc}"
        return
    finally:
        report.fetched[kind.value] = count

    if newest is not None:
        await asyncio.to_thread(cursors.set_cursor, kind, newest)
    log.info("Finished %s: %d fetched", kind.value, count)


async def fetch_all(
    store: CacheStore,
    cursors: CursorStore,
    kinds: Iterable[Kind],
    refetch: bool,
    report: RunReport,
    concurrency: int = 2,
) -> None:
    """Fetch kinds concurrently. Highlights wait for books so owners exist."""
    kinds = set(kinds)
    semaphore = asyncio.Semaphore(max(concurrency, 1))

    async def chain(sequence: List[Kind]) -> None:
        for kind in sequence:
            async with semaphore:
                await fetch_kind(store, cursors, kind, refetch, report)

    chains = []
    library = [k for k in (Kind.BOOKS, Kind.HIGHLIGHTS) if k in kinds]
    if library:
        chains.append(library)
    if Kind.DOCUMENTS in kinds:
        chains.append([Kind.DOCUMENTS])

    tasks = [asyncio.create_task(chain(sequence)) for sequence in chains]
    try:
        await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


# -- Export --


def _render_and_reconcile(renderer: Renderer, unit: bind.RenderUnit, strategy: Strategy) -> Outcome:
    text = renderer.render_unit(unit.kind, unit.context)
    return reconcile(unit.path, text, strategy)


async def export_units(
    store: CacheStore, options: RunOptions, report: RunReport,
) -> None:
    kinds = set(options.kinds)
    books = bool(kinds & {Kind.BOOKS, Kind.HIGHLIGHTS})
    documents = Kind.DOCUMENTS in kinds
    try:
        existing = await asyncio.to_thread(vault.scan_notes, options.vault_root or options.base_dir)
    except OSError as exc:
        log.warning("Could not scan for existing notes, using default paths: %s", exc)
        existing = {}
    try:
        units = await asyncio.to_thread(
            bind.bind_units,
            store,
            options.base_dir,
            categories=options.categories,
            skip_empty=options.skip_empty,
            books=books,
            documents=documents,
            existing=existing,
        )
    except SQLAlchemyError as exc:
        log.error("Could not read the cache for export: %s", exc)
        report.failures["export"] = f"storage: {exc}"
        return

    semaphore = asyncio.Semaphore(max(options.render_concurrency, 1))

    async def export_one(unit: bind.RenderUnit) -> None:
        async with semaphore:
            try:
                outcome = await asyncio.to_thread(
                    _render_and_reconcile, options.renderer, unit, options.strategy,
                )
            except RenderError as exc:
                log.error("Could not render %s (%s): %s", unit.title, unit.key, exc)
                report.failures[str(unit.path)] = f"render: {exc}"
            except UnreadableNoteError as exc:
                log.error("Could not merge %s: %s", unit.path, exc)
                report.failures[str(unit.path)] = f"read: {exc}"
            except OSError as exc:
                log.error("Could not write %s: %s", unit.path, exc)
                report.failures[str(unit.path)] = f"write: {exc}"
            except Exception as exc:
                log.exception("Failed to export %s, skipping", unit.path)
                report.failures[str(unit.path)] = f"export: {exc!r}"
            else:
                report.outcomes[str(unit.path)] = outcome.value

    await asyncio.gather(*(export_one(unit) for unit in units))

    if options.mark_stranded:
        await mark_stranded(store, existing, books, documents, report)


async def mark_stranded(
    store: CacheStore,
    existing: Dict[str, Path],
    books: bool,
    documents: bool,
    report: RunReport,
) -> None:
    """Flag notes whose book or document is no longer in the cache."""
    live = set()
    try:
        if books:
            ids = await asyncio.to_thread(store.ids, Kind.BOOKS)
            live.update(bind.unit_key(Kind.BOOKS, i) for i in ids)
        if documents:
            ids = await asyncio.to_thread(store.ids, Kind.DOCUMENTS)
            live.update(bind.unit_key(Kind.DOCUMENTS, i) for i in ids)
    except SQLAlchemyError as exc:
        log.error("Could not read the cache to find stranded notes: %s", exc)
        report.failures["stranded"] = f"storage: {exc}"
        return

    in_scope = {"book"} if books else set()
    if documents:
        in_scope.add("document")
    for key, path in sorted(existing.items()):
        if key in live or key.split(":", 1)[0] not in in_scope:
            continue
        try:
            if await asyncio.to_thread(vault.mark_stranded, path):
                report.outcomes[str(path)] = Outcome.STRANDED.value
        except (UnreadableNoteError, OSError) as exc:
            log.error("Could not mark %s as stranded: %s", path, exc)
            report.failures[str(path)] = f"stranded: {exc}"


async def run(store: CacheStore, options: RunOptions) -> RunReport:
    """Fetch then export, as configured. Returns what happened."""
    report = RunReport()
    if options.fetch:
        cursors = CursorStore(store)
        await fetch_all(
            store, cursors, options.kinds, options.refetch, report,
            concurrency=options.fetch_concurrency,
        )
    if options.export:
        await export_units(store, options, report)
    log.info(report.summary())
    return report

"""Marginalia entry point.

One-shot script: pulls new Readwise data into the cache, renders notes, then
exits. Designed to be run on a schedule via cron or launchd.
"""

import asyncio
import json
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import requests

log = logging.getLogger("marginalia")

_VERSION = "0.3.0"

_HELP = """\
Usage: marginalia [options]

  marginalia                    Fetch from Readwise, then write notes
  marginalia --fetch-only       Update the cache, write no notes
  marginalia --export-only      Write notes from the cache, no network
  marginalia --status           Show cache contents and sync cursors

Options:
  --refetch                     Ignore sync cursors for this run
  --kind KIND                   books, highlights or documents (repeatable)
  --category NAME               Only export this category (repeatable)
  --strategy NAME               replace, skip-if-exists or merge
  --include-empty               Also export books without highlights
  --mark-stranded               Flag notes whose book or document is gone
  --export-json PATH            Dump the cache to a JSON file and exit
  -h, --help                    Show this help
  -V, --version                 Show version

Configuration is read from ~/.config/marginalia/.env (see README).
"""


def _values(flag: str, argv: List[str]) -> List[str]:
    """Return the values following each occurrence of ``flag``."""
    values = []
    for i, arg in enumerate(argv):
        if arg == flag:
            if i + 1 >= len(argv) or argv[i + 1].startswith("--"):
                print(f"Error: {flag} needs a value")
                sys.exit(2)
            values.append(argv[i + 1])
    return values


def _value(flag: str, argv: List[str]) -> Optional[str]:
    values = _values(flag, argv)
    return values[-1] if values else None


def _status() -> None:
    """Print a quick status overview to the terminal."""
    from marginalia import config, readwise_client
    from marginalia.cursors import CursorStore
    from marginalia.store import open_store

    config.setup_logging()

    with open_store(config.DATABASE_URL) as store:
        counts = store.counts()
        cursors = CursorStore(store).cursors()
        backend = store.backend
        migrations = store.applied_migrations()

    print()
    print("  Marginalia")
    print("  " + "─" * 40)
    print(f"  Cache:      {backend} ({len(migrations)} migrations applied)")
    for table in ("books", "highlights", "documents", "tags"):
        print(f"  {table.capitalize() + ':':<11} {counts[table]}")
    print()
    for kind, value in cursors.items():
        when = value.strftime("%Y-%m-%d %H:%M UTC") if value else "never"
        print(f"  Last {kind.value + ' sync:':<17} {when}")

    if os.environ.get("READWISE_API_TOKEN", "").strip():
        config.ensure_loaded()
        try:
            token_ok = readwise_client.verify_token()
        except (readwise_client.FetchError, requests.exceptions.RequestException):
            token_ok = None
        label = {True: "valid", False: "rejected", None: "could not check"}[token_ok]
        print(f"  Token:      {label}")
    print()


def _export_json(path: str) -> None:
    from marginalia import config
    from marginalia.store import open_store

    config.setup_logging()
    with open_store(config.DATABASE_URL) as store:
        library = store.export_library()
    Path(path).write_text(json.dumps(library, indent=2) + "\n")
    log.info(
        "Exported %d books, %d highlights, %d documents to %s",
        len(library["books"]), len(library["highlights"]), len(library["documents"]), path,
    )


def _build_options(argv: List[str]):
    from marginalia import config, hooks
    from marginalia.models import Kind
    from marginalia.renderer import Renderer, load_template
    from marginalia.sync import ALL_KINDS, RunOptions
    from marginalia.vault import Strategy

    kind_names = _values("--kind", argv) or config.FETCH_KINDS
    kinds = tuple(Kind.parse(k) for k in kind_names) if kind_names else ALL_KINDS
    fetch = "--export-only" not in argv
    export = "--fetch-only" not in argv

    renderer = None
    base_dir = Path(".")
    vault_root = None
    if export:
        base_dir = config.output_dir()
        vault_root = config.vault_root()
        renderer = Renderer(
            book_template=load_template(config.BOOK_TEMPLATE, "book.md.j2"),
            document_template=load_template(config.DOCUMENT_TEMPLATE, "document.md.j2"),
            context_hook=hooks.load_hook(config.CONTEXT_HOOK) if config.CONTEXT_HOOK else None,
            text_hook=hooks.load_hook(config.TEXT_HOOK) if config.TEXT_HOOK else None,
            metadata_hook=hooks.load_hook(config.METADATA_HOOK) if config.METADATA_HOOK else None,
        )

    return RunOptions(
        base_dir=base_dir,
        renderer=renderer,
        kinds=kinds,
        fetch=fetch,
        export=export,
        refetch="--refetch" in argv,
        strategy=Strategy.parse(_value("--strategy", argv) or config.REPLACEMENT_STRATEGY),
        categories=_values("--category", argv) or config.FILTER_CATEGORY,
        skip_empty=config.SKIP_EMPTY and "--include-empty" not in argv,
        vault_root=vault_root,
        mark_stranded=config.MARK_STRANDED or "--mark-stranded" in argv,
        fetch_concurrency=config.FETCH_CONCURRENCY,
        render_concurrency=config.RENDER_CONCURRENCY,
    )


def main():
    argv = sys.argv[1:]

    if "--help" in argv or "-h" in argv:
        print(_HELP)
        return

    if "--version" in argv or "-V" in argv:
        print(f"marginalia {_VERSION}")
        return

    from marginalia import config
    from marginalia.store import MigrationError

    if "--status" in argv:
        _status()
        return

    export_json = _value("--export-json", argv)
    if export_json:
        _export_json(export_json)
        return

    from marginalia import sync
    from marginalia.lock import acquire_lock, release_lock
    from marginalia.readwise_client import PermanentFetchError
    from marginalia.store import open_store

    config.setup_logging()

    try:
        options = _build_options(argv)
    except (ValueError, OSError) as e:
        print(f"\n  {e}\n")
        sys.exit(2)

    if options.fetch:
        config.ensure_loaded()

    # Prevent overlapping runs
    if not acquire_lock():
        log.warning("Another instance is running (lock held), exiting")
        return

    try:
        with open_store(config.DATABASE_URL) as store:
            report = asyncio.run(sync.run(store, options))
    except MigrationError as e:
        print(f"\n  Could not prepare the cache database:\n  {e}\n")
        sys.exit(1)
    except PermanentFetchError as e:
        if e.status_code in (401, 403):
            print(
                "\n  Readwise rejected the API token."
                "\n  Check READWISE_API_TOKEN in your config"
                "\n  (get one at https://readwise.io/access_token).\n"
            )
        else:
            print(f"\n  Readwise sent a response we could not use:\n  {e}\n")
        sys.exit(1)
    except requests.exceptions.RequestException:
        print(
            "\n  Could not connect to Readwise."
            "\n  Check your network connection and try again.\n"
        )
        sys.exit(1)
    except Exception:
        log.exception("Unexpected error")
        raise
    finally:
        release_lock()

    for name, reason in sorted(report.failures.items()):
        log.warning("Failed: %s (%s)", name, reason)
    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()

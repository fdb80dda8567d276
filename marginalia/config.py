import logging
import os
import sys
from pathlib import Path
from typing import List

from dotenv import load_dotenv

# Config directory: respects XDG_CONFIG_HOME, overridable with MARGINALIA_CONFIG_DIR
CONFIG_DIR = Path(
    os.environ.get("MARGINALIA_CONFIG_DIR", "")
    or (
        Path(os.environ.get("XDG_CONFIG_HOME", "") or Path.home() / ".config")
        / "marginalia"
    )
)
CONFIG_DIR.mkdir(parents=True, exist_ok=True)

# .env file: prefer config dir, fall back to CWD (for dev checkouts)
ENV_PATH = CONFIG_DIR / ".env"
if not ENV_PATH.exists() and (Path.cwd() / ".env").exists():
    ENV_PATH = Path.cwd() / ".env"

load_dotenv(ENV_PATH)


def _require(var: str) -> str:
    value = os.environ.get(var, "").strip()
    if not value or value.startswith("your_"):
        if not ENV_PATH.exists():
            print(f"Error: No config found. Create {CONFIG_DIR / '.env'} and set {var}.")
        else:
            print(f"Error: {var} is not set. Fill it in {ENV_PATH}")
        sys.exit(1)
    return value


def _flag(var: str, default: str) -> bool:
    return os.environ.get(var, default).strip().lower() in ("true", "1", "yes")


def _list(var: str) -> List[str]:
    raw = os.environ.get(var, "")
    return [part.strip() for part in raw.split(",") if part.strip()]


# Required for fetching, loaded lazily via ensure_loaded()
READWISE_API_TOKEN: str = ""

DATABASE_URL: str = (
    os.environ.get("DATABASE_URL", "").strip()
    or f"sqlite:///{CONFIG_DIR / 'readwise.db'}"
)

# Output: an Obsidian vault subfolder, or a plain folder
VAULT_PATH: str = os.environ.get("VAULT_PATH", "").strip()
BASE_FOLDER: str = os.environ.get("BASE_FOLDER", "Readwise").strip()
OUTPUT_PATH: str = os.environ.get("OUTPUT_PATH", "").strip()

BOOK_TEMPLATE: str = os.environ.get("BOOK_TEMPLATE", "").strip()
DOCUMENT_TEMPLATE: str = os.environ.get("DOCUMENT_TEMPLATE", "").strip()
CONTEXT_HOOK: str = os.environ.get("CONTEXT_HOOK", "").strip()
TEXT_HOOK: str = os.environ.get("TEXT_HOOK", "").strip()
# Returns extra frontmatter keys for a note
METADATA_HOOK: str = os.environ.get("METADATA_HOOK", "").strip()

REPLACEMENT_STRATEGY: str = os.environ.get("REPLACEMENT_STRATEGY", "merge").strip().lower()
SKIP_EMPTY: bool = _flag("SKIP_EMPTY", "true")
FILTER_CATEGORY: List[str] = _list("FILTER_CATEGORY")
FETCH_KINDS: List[str] = _list("FETCH_KINDS")
MARK_STRANDED: bool = _flag("MARK_STRANDED", "false")

FETCH_CONCURRENCY: int = int(os.environ.get("FETCH_CONCURRENCY", "2"))
RENDER_CONCURRENCY: int = int(os.environ.get("RENDER_CONCURRENCY", "8"))
PAGE_SIZE: int = int(os.environ.get("PAGE_SIZE", "1000"))
MAX_RETRIES: int = int(os.environ.get("MAX_RETRIES", "5"))
HTTP_TIMEOUT: int = int(os.environ.get("HTTP_TIMEOUT", "30"))
LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO").strip().upper()


_loaded = False


def ensure_loaded() -> None:
    """Validate required config vars. Call before any fetch."""
    global _loaded, READWISE_API_TOKEN
    if _loaded:
        return
    _loaded = True
    READWISE_API_TOKEN = _require("READWISE_API_TOKEN")


def vault_root() -> Path:
    """Return the folder searched for notes the user moved."""
    return Path(VAULT_PATH) if VAULT_PATH else output_dir()


def output_dir() -> Path:
    """Return the directory notes are written under.

    VAULT_PATH/BASE_FOLDER when a vault is configured, otherwise OUTPUT_PATH.
    Exits with a message when neither is set.
    """
    if VAULT_PATH:
        return Path(VAULT_PATH) / BASE_FOLDER
    if OUTPUT_PATH:
        return Path(OUTPUT_PATH)
    print(f"Error: Neither VAULT_PATH nor OUTPUT_PATH is set. Fill one in {ENV_PATH}")
    sys.exit(1)


def setup_logging() -> None:
    """Configure logging for the tool. Call once at each entry point."""
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

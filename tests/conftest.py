"""Shared fixtures. Keeps every test away from the real config directory."""

import os
import tempfile

# Must happen before marginalia.config is first imported
os.environ["MARGINALIA_CONFIG_DIR"] = tempfile.mkdtemp(prefix="marginalia-tests-")
for _var in ("DATABASE_URL", "VAULT_PATH", "OUTPUT_PATH", "BOOK_TEMPLATE", "DOCUMENT_TEMPLATE",
             "CONTEXT_HOOK", "TEXT_HOOK", "METADATA_HOOK", "FILTER_CATEGORY", "FETCH_KINDS",
             "MARK_STRANDED"):
    os.environ.pop(_var, None)

import pytest  # noqa: E402


@pytest.fixture
def store(tmp_path):
    """A migrated SQLite cache in a temp directory."""
    from marginalia.store import open_store

    s = open_store(f"sqlite:///{tmp_path / 'cache.db'}")
    yield s
    s.close()


@pytest.fixture
def api_token(monkeypatch):
    from marginalia import config

    monkeypatch.setattr(config, "READWISE_API_TOKEN", "test-token")
    monkeypatch.setattr(config, "MAX_RETRIES", 3)
    monkeypatch.setattr(config, "PAGE_SIZE", 100)
    return "test-token"

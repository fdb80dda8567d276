"""Readwise API client.

Streams books and highlights (API v2) and Reader documents (API v3) page by
page, optionally limited to records updated after a given timestamp.
"""

import logging
import random
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional

import requests

from marginalia import config
from marginalia.models import Book, Document, Entity, Highlight, Kind

log = logging.getLogger(__name__)

_V2_BASE = "https://readwise.io/api/v2"
_V3_BASE = "https://readwise.io/api/v3"

_RETRY_DELAY_BASE = 2  # seconds; exponential: 2, 4, 8, ... plus jitter
_RETRY_JITTER = 1.0
_RETRYABLE_STATUS = {429, 500, 502, 503, 504}
# Network failures, including a connection dropped while the body streams
_RETRYABLE_ERRORS = (
    requests.exceptions.ConnectionError,
    requests.exceptions.Timeout,
    requests.exceptions.ChunkedEncodingError,
    requests.exceptions.ContentDecodingError,
)
_READER_PAGE_DELAY = 3  # Reader list endpoint allows 20 requests/minute


class FetchError(Exception):
    """Base class for failures talking to Readwise."""


class RetriesExhaustedError(FetchError):
    """A transient failure (rate limit, 5xx, network) outlasted the retries."""


class PermanentFetchError(FetchError):
    """Auth failure or malformed response. Retrying will not help."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _headers() -> dict:
    return {"Authorization": f"Token {config.READWISE_API_TOKEN}"}


def _retry_delay(attempt: int, resp: Optional[requests.Response] = None) -> float:
    if resp is not None:
        retry_after = resp.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                log.debug("Ignoring unparseable Retry-After header: %r", retry_after)
    return _RETRY_DELAY_BASE * (2 ** attempt) + random.uniform(0, _RETRY_JITTER)


def _request_with_retry(method: str, url: str, **kwargs) -> requests.Response:
    """HTTP request with retry on transient failures.

    Retries on network errors and 5xx/429 with exponential backoff
    and jitter, honouring Retry-After. Other 4xx responses raise
    PermanentFetchError immediately; running out of retries raises
    RetriesExhaustedError.
    """
    max_retries = config.MAX_RETRIES
    attempt = 0
    while True:
        try:
            resp = requests.request(method, url, timeout=config.HTTP_TIMEOUT, **kwargs)
        except _RETRYABLE_ERRORS as exc:
            if attempt >= max_retries:
                raise RetriesExhaustedError(
                    f"{method} {url} failed after {max_retries} retries: {exc}"
                ) from exc
            delay = _retry_delay(attempt)
            log.warning(
                "Readwise request failed (%s), retrying in %.1fs (%d/%d)",
                type(exc).__name__, delay, attempt + 1, max_retries,
            )
            time.sleep(delay)
            attempt += 1
            continue

        if resp.status_code in _RETRYABLE_STATUS:
            if attempt >= max_retries:
                raise RetriesExhaustedError(
                    f"Readwise returned {resp.status_code} for {url} "
                    f"after {max_retries} retries"
                )
            delay = _retry_delay(attempt, resp)
            log.warning(
                "Readwise returned %d, retrying in %.1fs (%d/%d)",
                resp.status_code, delay, attempt + 1, max_retries,
            )
            time.sleep(delay)
            attempt += 1
            continue

        if resp.status_code >= 400:
            raise PermanentFetchError(
                f"Readwise returned {resp.status_code} for {url}: {resp.text[:200]}",
                status_code=resp.status_code,
            )
        return resp


def _json(resp: requests.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError as exc:
        raise PermanentFetchError(f"Readwise returned invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise PermanentFetchError("Readwise returned a non-object JSON payload")
    return payload


def _parse_results(
    payload: Dict[str, Any], parse: Callable[[Dict[str, Any]], Entity], kind: Kind,
) -> List[Entity]:
    try:
        return [parse(item) for item in payload["results"]]
    except (KeyError, TypeError, ValueError) as exc:
        raise PermanentFetchError(f"Malformed {kind.value} page: {exc!r}") from exc


# -- Streaming --


def iter_pages(kind: Kind, since: Optional[datetime] = None) -> Iterator[List[Entity]]:
    """Yield parsed pages of records of one kind, oldest cursor first.

    ``since`` limits the stream to records updated after that moment; None
    fetches everything. Pages are requested one at a time, and the next page
    is only requested once the caller asks for it.
    """
    log.info(
        "Fetching %s from Readwise, since %s",
        kind.value, since.isoformat() if since else "[all]",
    )
    if kind is Kind.DOCUMENTS:
        yield from _iter_documents(since)
    else:
        yield from _iter_v2(kind, since)


def _iter_v2(kind: Kind, since: Optional[datetime]) -> Iterator[List[Entity]]:
    parse = Book.from_api if kind is Kind.BOOKS else Highlight.from_api
    url: Optional[str] = f"{_V2_BASE}/{kind.value}/"
    params: Optional[Dict[str, str]] = {"page_size": str(config.PAGE_SIZE)}
    if since is not None:
        params["updated__gt"] = since.isoformat()

    while url:
        resp = _request_with_retry("GET", url, headers=_headers(), params=params)
        payload = _json(resp)
        results = _parse_results(payload, parse, kind)
        log.debug(
            "Received %s page: count=%s, results=%d, next=%s",
            kind.value, payload.get("count"), len(results), payload.get("next"),
        )
        yield results
        url = payload.get("next")
        # The next URL already carries the query string
        params = None


def _iter_documents(since: Optional[datetime]) -> Iterator[List[Entity]]:
    url = f"{_V3_BASE}/list/"
    params: Dict[str, str] = {}
    if since is not None:
        params["updatedAfter"] = since.isoformat()

    while True:
        resp = _request_with_retry("GET", url, headers=_headers(), params=dict(params))
        payload = _json(resp)
        results = _parse_results(payload, Document.from_api, Kind.DOCUMENTS)
        cursor = payload.get("nextPageCursor")
        log.debug("Received documents page: results=%d, next_cursor=%s", len(results), cursor)
        yield results
        if not cursor:
            return
        params["pageCursor"] = cursor
        time.sleep(_READER_PAGE_DELAY)


# -- Auth --


def verify_token() -> bool:
    """Return True if the configured token is accepted by Readwise."""
    try:
        resp = _request_with_retry("GET", f"{_V2_BASE}/auth/", headers=_headers())
    except PermanentFetchError as exc:
        if exc.status_code in (401, 403):
            return False
        raise
    return resp.status_code == 204

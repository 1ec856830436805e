"""Paginated access to the channel preview."""

from __future__ import annotations

import time

import requests

from log_utils import get_logger

from . import BASE_URL, DELAY, HTTP_TIMEOUT, MAX_PAGES, MAX_RETRIES, RETRY_DELAY
from .parse import parse_messages
from .record import SourceRecord

log = get_logger().bind(module=__name__)

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}


class FetchError(RuntimeError):
    """A page could not be retrieved within the retry budget."""


def page_url(before_id: int | None = None) -> str:
    """Return the preview URL listing messages older than ``before_id``."""
    if before_id is None:
        return BASE_URL
    return f"{BASE_URL}?before={before_id}"


def fetch_page(before_id: int | None = None) -> str:
    """Return raw HTML of one preview page.

    Timeouts, connection errors and non-2xx answers are retried
    ``MAX_RETRIES`` times with a fixed pause.  Running out of attempts raises
    :class:`FetchError`.
    """
    url = page_url(before_id)
    last_exc: Exception | None = None
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            resp = requests.get(url, headers=HEADERS, timeout=HTTP_TIMEOUT)
            resp.raise_for_status()
            log.debug("Fetched page", url=url, attempt=attempt, size=len(resp.text))
            return resp.text
        except requests.RequestException as exc:
            last_exc = exc
            log.warning("Page fetch failed", url=url, attempt=attempt, error=str(exc))
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_DELAY)
    raise FetchError(f"Failed to fetch {url} after {MAX_RETRIES} attempts") from last_exc


def scrape_all(max_pages: int = MAX_PAGES) -> list[SourceRecord]:
    """Walk the channel from the newest page backwards and return all messages.

    The walk ends on an empty page, on a page that adds nothing new, when the
    ``before`` cursor stops moving, or after ``max_pages`` pages.  Records are
    returned sorted by id; the first copy of an id wins.
    """
    seen: dict[int, SourceRecord] = {}
    before: int | None = None
    pages = 0
    while pages < max_pages:
        if pages:
            time.sleep(DELAY)
        html = fetch_page(before)
        pages += 1
        records = parse_messages(html)
        if not records:
            log.info("No more messages found", page=pages)
            break
        new_count = 0
        for rec in records:
            if rec.id not in seen:
                seen[rec.id] = rec
                new_count += 1
        min_id = min(rec.id for rec in records)
        log.info(
            "Scraped page", page=pages, count=len(records), new=new_count, min_id=min_id
        )
        if new_count == 0:
            break
        if before is not None and min_id >= before:
            log.warning("Pagination stalled", before=before, min_id=min_id)
            break
        before = min_id
    else:
        log.warning("Page limit reached", max_pages=max_pages)
    result = sorted(seen.values(), key=lambda r: r.id)
    log.info("Scrape complete", messages=len(result), pages=pages)
    return result

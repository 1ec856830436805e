"""Second-fetch check that catches truncated message text."""

from __future__ import annotations

import time

from log_utils import get_logger

from . import DELAY, TEXT_MISMATCH_THRESHOLD
from . import fetch
from .parse import parse_messages
from .record import SourceRecord

log = get_logger().bind(module=__name__)


def length_diff(a: str, b: str) -> float:
    """Return the relative length difference of ``a`` and ``b`` in ``[0, 1]``."""
    longest = max(len(a), len(b))
    if longest == 0:
        return 0.0
    return abs(len(a) - len(b)) / longest


def pick_text(
    original: SourceRecord,
    refetched: SourceRecord,
    threshold: float = TEXT_MISMATCH_THRESHOLD,
) -> SourceRecord:
    """Choose between two extractions of the same message.

    A difference up to and including ``threshold`` is rendering noise and the
    original wins.  Above it the longer text wins because truncation is the
    failure we actually see on first load.
    """
    diff = length_diff(original.text, refetched.text)
    if diff <= threshold:
        log.info("Text verified", id=original.id, chars=original.char_count, diff=round(diff, 3))
        return original
    chosen = refetched if refetched.char_count > original.char_count else original
    log.warning(
        "Text mismatch",
        id=original.id,
        original=original.char_count,
        refetched=refetched.char_count,
        diff=round(diff, 3),
        kept="refetched" if chosen is refetched else "original",
    )
    return chosen


def verify_text(record: SourceRecord) -> SourceRecord:
    """Re-fetch the page window holding ``record`` and return the better copy."""
    time.sleep(DELAY)
    try:
        html = fetch.fetch_page(record.id + 1)
    except fetch.FetchError:
        log.warning("Re-fetch failed, keeping original", id=record.id)
        return record
    again = next((r for r in parse_messages(html) if r.id == record.id), None)
    if again is None:
        log.warning("Message missing from re-fetch, keeping original", id=record.id)
        return record
    return pick_text(record, again)

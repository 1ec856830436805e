from __future__ import annotations

"""Scraper for the public web preview of a Telegram channel."""

import argparse

from config_utils import load_config, repo_path
from log_utils import get_logger, install_excepthook

log = get_logger().bind(module=__name__)

cfg = load_config()
CHANNEL = getattr(cfg, "CHANNEL", "simon_rabbit_hole")
BASE_URL = f"https://t.me/s/{CHANNEL}"

DELAY = getattr(cfg, "DELAY", 1.2)
RETRY_DELAY = getattr(cfg, "RETRY_DELAY", 3)
MAX_RETRIES = getattr(cfg, "MAX_RETRIES", 3)
MAX_PAGES = getattr(cfg, "MAX_PAGES", 25)
HTTP_TIMEOUT = getattr(cfg, "HTTP_TIMEOUT", 30)
TEXT_MISMATCH_THRESHOLD = getattr(cfg, "TEXT_MISMATCH_THRESHOLD", 0.1)
MEDIA_MIN_SIZE = getattr(cfg, "MEDIA_MIN_SIZE", 5 * 1024)
MEDIA_URL_PREFIX = getattr(cfg, "MEDIA_URL_PREFIX", "/media/")
MEDIA_DELAY = 0.5
MAX_REDIRECTS = 5
SCRAPED_PATH = repo_path(getattr(cfg, "SCRAPED_PATH", "data/scraped-posts.json"))

# import submodules after globals so they can reuse them
from .record import SourceRecord
from .parse import parse_messages
from .fetch import FetchError, fetch_page, scrape_all
from .verify import length_diff, verify_text
from .media import download_all, download_media

__all__ = [
    "SourceRecord",
    "parse_messages",
    "FetchError",
    "fetch_page",
    "scrape_all",
    "length_diff",
    "verify_text",
    "download_all",
    "download_media",
    "save_snapshot",
]


def save_snapshot(records: list[SourceRecord], path=None) -> None:
    """Store scraped records as JSON for later backfills and debugging."""
    from serde_utils import write_json

    target = path or SCRAPED_PATH
    write_json(target, [r.to_dict() for r in records])
    log.info("Saved scrape snapshot", path=str(target), count=len(records))


def main(argv: list[str] | None = None) -> None:
    """Scrape the whole channel and write the snapshot file."""
    parser = argparse.ArgumentParser(description="Scrape the channel web preview")
    parser.add_argument("--max-pages", type=int, default=MAX_PAGES)
    parser.add_argument("--output", help="snapshot path", default=str(SCRAPED_PATH))
    args = parser.parse_args(argv)
    install_excepthook(log)

    records = scrape_all(max_pages=args.max_pages)
    save_snapshot(records, repo_path(args.output))
    for rec in records:
        log.info("Scraped message", id=rec.id, title=rec.title[:50], chars=rec.char_count)

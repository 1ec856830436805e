"""Download message images and videos into the site's media folder."""

from __future__ import annotations

import time
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import requests

from log_utils import get_logger

from . import (
    HTTP_TIMEOUT,
    MAX_REDIRECTS,
    MAX_RETRIES,
    MEDIA_DELAY,
    MEDIA_MIN_SIZE,
    MEDIA_URL_PREFIX,
    RETRY_DELAY,
)
from .fetch import HEADERS
from .record import SourceRecord

log = get_logger().bind(module=__name__)

# Pause after a download that produced a placeholder-sized file.
SMALL_FILE_DELAY = 2


def media_filename(url: str, msg_id: int, index, is_video: bool = False) -> str:
    """Return ``msg-<id>-<index><ext>`` with the extension taken from ``url``."""
    ext = PurePosixPath(urlparse(url).path).suffix.lower()
    if not ext or len(ext) > 5:
        ext = ".mp4" if is_video else ".jpg"
    return f"msg-{msg_id}-{index}{ext}"


def download_file(url: str, dest: Path) -> int:
    """Stream ``url`` into ``dest`` and return the number of bytes written."""
    with requests.Session() as session:
        session.max_redirects = MAX_REDIRECTS
        headers = dict(HEADERS, Referer="https://t.me/")
        with session.get(url, headers=headers, timeout=HTTP_TIMEOUT, stream=True) as resp:
            resp.raise_for_status()
            size = 0
            with dest.open("wb") as fh:
                for chunk in resp.iter_content(chunk_size=64 * 1024):
                    if chunk:
                        fh.write(chunk)
                        size += len(chunk)
    return size


def download_media(
    url: str,
    msg_id: int,
    index,
    media_dir: Path,
    is_video: bool = False,
) -> str | None:
    """Download one asset and return its public URL or ``None`` on failure.

    Files below ``MEDIA_MIN_SIZE`` are Telegram placeholders and count as
    failed attempts.  Failures never raise; callers decide on a fallback.
    """
    media_dir.mkdir(parents=True, exist_ok=True)
    filename = media_filename(url, msg_id, index, is_video)
    dest = media_dir / filename
    public = MEDIA_URL_PREFIX + filename

    if dest.exists() and dest.stat().st_size >= MEDIA_MIN_SIZE:
        log.info("Media already present", file=filename, size=dest.stat().st_size)
        return public

    for attempt in range(1, MAX_RETRIES + 1):
        log.info("Downloading media", file=filename, attempt=attempt, video=is_video)
        try:
            size = download_file(url, dest)
        except (requests.RequestException, OSError) as exc:
            log.warning("Download failed", file=filename, attempt=attempt, error=str(exc))
            if dest.exists():
                dest.unlink()
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_DELAY)
            continue
        if size < MEDIA_MIN_SIZE:
            log.warning("Downloaded file too small", file=filename, size=size, attempt=attempt)
            if dest.exists():
                dest.unlink()
            if attempt < MAX_RETRIES:
                time.sleep(SMALL_FILE_DELAY)
            continue
        log.info("Downloaded media", file=filename, size=size)
        return public

    log.error("Giving up on media", url=url, attempts=MAX_RETRIES)
    return None


def download_all(record: SourceRecord, media_dir: Path) -> tuple[list[str], list[str]]:
    """Localise every image and video of ``record`` one after another.

    Assets that could not be downloaded keep their remote URL so the post
    still shows something.
    """
    images: list[str] = []
    videos: list[str] = []
    for i, url in enumerate(record.image_urls):
        local = download_media(url, record.id, i, media_dir)
        images.append(local or url)
        time.sleep(MEDIA_DELAY)
    for i, url in enumerate(record.video_urls):
        local = download_media(url, record.id, f"v{i}", media_dir, is_video=True)
        videos.append(local or url)
        time.sleep(MEDIA_DELAY)
    return images, videos

"""Retrofit published posts with data from the channel.

``media`` downloads images and videos for posts that were published before
media localisation existed.  ``content`` re-reads the message body of posts
whose text was stored truncated.  Both passes go through the in-place update
path of the store, so every other field stays as edited.

Usage::

    python src/backfill.py media [--slug SLUG] [--dry-run] [--from-snapshot]
    python src/backfill.py content [--slug SLUG] [--dry-run] [--from-snapshot]
"""

from __future__ import annotations

import argparse
import sys

import progressbar

import git_utils
import post_store
from channel import SCRAPED_PATH, SourceRecord, download_all, scrape_all, verify_text
from config_utils import REPO_ROOT, load_config, repo_path
from log_utils import get_logger, install_excepthook
from serde_utils import load_json

log = get_logger().bind(script=__file__)

cfg = load_config()
POSTS_PATH = repo_path(getattr(cfg, "POSTS_PATH", "data/posts.json"))
MEDIA_DIR = repo_path(getattr(cfg, "MEDIA_DIR", "public/media"))
GIT_PUSH = getattr(cfg, "GIT_PUSH", True)
GIT_REMOTE = getattr(cfg, "GIT_REMOTE", "origin")
GIT_BRANCH = getattr(cfg, "GIT_BRANCH", "main")


def load_records(from_snapshot: bool = False) -> dict[int, SourceRecord]:
    """Return channel messages keyed by id, scraped live or from the snapshot."""
    if from_snapshot:
        data = load_json(SCRAPED_PATH) or []
        records = [SourceRecord.from_dict(d) for d in data]
        log.info("Loaded scrape snapshot", count=len(records))
    else:
        records = scrape_all()
    return {r.id: r for r in records}


def _targets(src: str, slug: str | None) -> list[post_store.Entry]:
    entries = [e for e in post_store.iter_entries(src) if isinstance(e.data.get("telegramMsgId"), int)]
    if slug:
        entries = [e for e in entries if e.slug == slug]
        if not entries:
            log.warning("No post with a telegramMsgId matches", slug=slug)
    return entries


def _progress(label: str, total: int):
    widgets = [
        f"{label} ",
        progressbar.Bar(marker="#", left="[", right="]"),
        " ",
        progressbar.ETA(),
    ]
    return progressbar.ProgressBar(max_value=total, widgets=widgets)


def backfill_media(src: str, records: dict[int, SourceRecord], slug: str | None = None) -> tuple[str, list[str]]:
    """Download media for posts without ``mediaUrls``/``videoUrls``."""
    todo = [e for e in _targets(src, slug) if not e.data.get("mediaUrls") and not e.data.get("videoUrls")]
    log.info("Posts without media", count=len(todo))
    updated: list[str] = []
    if not todo:
        return src, updated
    bar = _progress("media", len(todo))
    bar.start()
    for i, entry in enumerate(todo):
        rec = records.get(entry.data["telegramMsgId"])
        if rec is None:
            log.warning("Message not found in channel", slug=entry.slug, id=entry.data["telegramMsgId"])
        elif rec.image_urls or rec.video_urls:
            images, videos = download_all(rec, MEDIA_DIR)
            fields = {}
            if images:
                fields["mediaUrls"] = images
            if videos:
                fields["videoUrls"] = videos
            src = post_store.patch_fields(src, entry.slug, fields)
            updated.append(entry.slug)
            log.info("Media attached", slug=entry.slug, images=len(images), videos=len(videos))
        bar.update(i + 1)
    bar.finish()
    return src, updated


def backfill_content(src: str, records: dict[int, SourceRecord], slug: str | None = None) -> tuple[str, list[str]]:
    """Replace stored bodies with the verified message text where it is longer."""
    todo = _targets(src, slug)
    updated: list[str] = []
    if not todo:
        return src, updated
    bar = _progress("content", len(todo))
    bar.start()
    for i, entry in enumerate(todo):
        rec = records.get(entry.data["telegramMsgId"])
        if rec is None:
            log.warning("Message not found in channel", slug=entry.slug, id=entry.data["telegramMsgId"])
        else:
            rec = verify_text(rec)
            content = rec.content or rec.text
            stored = entry.data.get("content") or ""
            # only a strictly longer scrape replaces the stored body
            if len(content) > len(stored):
                src = post_store.patch_fields(src, entry.slug, {"content": content})
                updated.append(entry.slug)
                log.info("Content refreshed", slug=entry.slug, old=len(stored), new=len(content))
            else:
                log.info(
                    "Content kept",
                    slug=entry.slug,
                    reason="scraped not longer",
                    stored=len(stored),
                    scraped=len(content),
                )
        bar.update(i + 1)
    bar.finish()
    return src, updated


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Backfill published posts from the channel")
    parser.add_argument("mode", choices=["media", "content"])
    parser.add_argument("--slug", help="only this post")
    parser.add_argument("--dry-run", action="store_true", help="do not write files")
    parser.add_argument("--from-snapshot", action="store_true", help="use data/scraped-posts.json instead of scraping")
    args = parser.parse_args(argv)
    install_excepthook(log)

    records = load_records(args.from_snapshot)
    src = post_store.load_store(POSTS_PATH)
    if args.mode == "media":
        src, updated = backfill_media(src, records, args.slug)
    else:
        src, updated = backfill_content(src, records, args.slug)
    log.info("Backfill finished", mode=args.mode, updated=len(updated), dry_run=args.dry_run)
    if not updated or args.dry_run:
        return 0

    post_store.write_store(POSTS_PATH, src)
    problems = post_store.verify_store(POSTS_PATH, updated if args.mode == "content" else [])
    for problem in problems:
        log.error("Store verification failed", problem=problem)
    if problems:
        return 1
    if GIT_PUSH:
        message = f"backfill {args.mode}: {len(updated)} posts ({', '.join(updated[:5])})"
        try:
            git_utils.commit_and_push(
                [POSTS_PATH, MEDIA_DIR], message, REPO_ROOT, remote=GIT_REMOTE, branch=GIT_BRANCH
            )
        except git_utils.GitError:
            log.exception("Git push failed")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

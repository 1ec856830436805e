"""Mirror new channel messages into the content store.

One run scrapes the channel preview, picks messages that were never handled,
double-checks their text, localises media, asks the model for metadata and
inserts finished records into ``data/posts.json``.  Reaction counts of the
most recent posts are refreshed on the way.  Afterwards the store and the run
state are committed and pushed, and a JSON report of the run is written.

Usage::

    python src/auto_sync.py             # normal run
    python src/auto_sync.py --dry-run   # nothing is written except the report
    python src/auto_sync.py --force-all # ignore processed/skipped bookkeeping
"""

from __future__ import annotations

import argparse
import contextlib
import sys
import tempfile
import time
from datetime import date, datetime, timezone
from pathlib import Path

import git_utils
import post_store
from channel import DELAY, FetchError, SourceRecord, download_all, save_snapshot, scrape_all, verify_text
from config_utils import REPO_ROOT, load_config, repo_path
from enrich import generate_metadata, unique_slug
from log_utils import get_logger, install_excepthook
from serde_utils import write_json
from sync_state import RunState, load_state, save_state
from update_reactions import refresh_reactions

log = get_logger().bind(script=__file__)

cfg = load_config()
POSTS_PATH = repo_path(getattr(cfg, "POSTS_PATH", "data/posts.json"))
STATE_PATH = repo_path(getattr(cfg, "STATE_PATH", "data/sync-state.json"))
REPORT_PATH = repo_path(getattr(cfg, "REPORT_PATH", "data/last-sync-report.json"))
MEDIA_DIR = repo_path(getattr(cfg, "MEDIA_DIR", "public/media"))
MIN_TEXT_LENGTH = getattr(cfg, "MIN_TEXT_LENGTH", 150)
REACTION_WINDOW = getattr(cfg, "REACTION_WINDOW", 20)
GIT_PUSH = getattr(cfg, "GIT_PUSH", True)
GIT_REMOTE = getattr(cfg, "GIT_REMOTE", "origin")
GIT_BRANCH = getattr(cfg, "GIT_BRANCH", "main")


def select_new(records: list[SourceRecord], state: RunState, src: str, force: bool = False) -> list[SourceRecord]:
    """Return the records that still need to become posts.

    Messages already present in the store through ``telegramMsgId`` are
    adopted into ``state`` instead of being inserted twice.  With ``force``
    the processed/skipped sets are ignored but posts that exist in the store
    are still left alone.
    """
    stored = post_store.slugs_by_msg_id(src)
    store_slugs = {e.slug for e in post_store.iter_entries(src)}
    pending = []
    for rec in records:
        if rec.id in stored:
            if rec.id not in state.processed:
                log.info("Adopting existing post", id=rec.id, slug=stored[rec.id])
                state.mark_processed(rec.id, stored[rec.id])
            continue
        if force:
            slug = state.slug_for(rec.id)
            if slug and slug in store_slugs:
                continue
        elif state.is_handled(rec.id):
            continue
        pending.append(rec)
    return pending


def process_record(record: SourceRecord, src: str, taken: set[str], media_dir: Path) -> tuple[str, dict]:
    """Verify, localise, enrich and insert one message; return the new store text."""
    verified = verify_text(record)
    images: list[str] = []
    videos: list[str] = []
    if verified.image_urls or verified.video_urls:
        images, videos = download_all(verified, media_dir)

    meta = generate_metadata(verified)
    slug = unique_slug(meta["slug"], taken)
    if slug != meta["slug"]:
        log.info("Slug taken, using suffix", id=record.id, wanted=meta["slug"], slug=slug)
    meta["slug"] = slug

    post = post_store.build_record(verified, meta, images, videos)
    src = post_store.insert_record(src, post)
    log.info("Post added", id=record.id, slug=slug, title=post["title"], media=len(images), videos=len(videos))
    return src, post


def commit_message(new_posts: list[dict], reactions: int) -> str:
    parts = [f"auto-sync: {date.today().isoformat()}"]
    if new_posts:
        parts.append(f"+{len(new_posts)}: " + ", ".join(p["slug"] for p in new_posts))
    if reactions:
        parts.append(f"reactions {reactions}")
    return " | ".join(parts)


def summary_message(report: dict) -> str:
    lines = []
    if report["dryRun"]:
        lines.append("Dry run, nothing was written.")
    if report["newPosts"]:
        lines.append(f"{len(report['newPosts'])} new post(s):")
        lines.extend(f"  - {p['title']} ({p['slug']})" for p in report["newPosts"])
    else:
        lines.append("No new posts.")
    if report["reactionsUpdated"]:
        lines.append(f"Reactions updated on {report['reactionsUpdated']} post(s).")
    if report["skipped"]:
        lines.append(f"Skipped {len(report['skipped'])} short message(s).")
    if report["errors"]:
        lines.append(f"{len(report['errors'])} error(s):")
        lines.extend(f"  - {e}" for e in report["errors"])
    return "\n".join(lines)


def write_report(report: dict, path: Path | None = None) -> None:
    report["message"] = summary_message(report)
    write_json(path or REPORT_PATH, report)
    log.info("Report written", path=str(path or REPORT_PATH))


def _media_root(dry_run: bool):
    if dry_run:
        return tempfile.TemporaryDirectory(prefix="sync-media-")
    return contextlib.nullcontext(str(MEDIA_DIR))


def run_sync(state: RunState, dry_run: bool = False, force: bool = False) -> dict:
    """Run one synchronisation pass and return the run report.

    ``state`` is updated in place and persisted to ``STATE_PATH`` unless
    ``dry_run`` is set.  Failures of single messages are collected in the
    report; a channel that cannot be fetched at all raises ``FetchError``.
    """
    report = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "dryRun": dry_run,
        "force": force,
        "newPosts": [],
        "reactionsUpdated": 0,
        "skipped": [],
        "errors": [],
    }
    log.info("Sync started", dry_run=dry_run, force=force)

    records = scrape_all()
    if not dry_run:
        save_snapshot(records)

    src = post_store.load_store(POSTS_PATH)
    original = src
    taken = set(post_store.list_slugs(src))
    pending = select_new(records, state, src, force=force)
    log.info("Messages to process", total=len(records), pending=len(pending))

    with _media_root(dry_run) as media_root:
        media_dir = Path(media_root)
        for i, rec in enumerate(pending):
            if i:
                time.sleep(DELAY)
            if rec.char_count < MIN_TEXT_LENGTH:
                log.info("Skipping short message", id=rec.id, chars=rec.char_count)
                state.mark_skipped(rec.id)
                report["skipped"].append(rec.id)
                continue
            log.info("Processing message", id=rec.id, title=rec.title[:50], chars=rec.char_count)
            try:
                src, post = process_record(rec, src, taken, media_dir)
            except Exception as exc:
                log.exception("Failed to process message", id=rec.id)
                report["errors"].append(f"#{rec.id}: {exc}")
                continue
            taken.add(post["slug"])
            state.mark_processed(rec.id, post["slug"])
            report["newPosts"].append({"slug": post["slug"], "title": post["title"], "msgId": rec.id})

    try:
        src, changes = refresh_reactions(src, records, state, limit=REACTION_WINDOW)
        report["reactionsUpdated"] = len(changes)
    except post_store.ReconcileError as exc:
        log.exception("Reaction refresh failed")
        report["errors"].append(f"reactions: {exc}")

    changed = src != original
    if dry_run:
        log.info("Dry run, store untouched", would_add=len(report["newPosts"]), reactions=report["reactionsUpdated"])
    else:
        if changed:
            post_store.write_store(POSTS_PATH, src)
            for problem in post_store.verify_store(POSTS_PATH, [p["slug"] for p in report["newPosts"]]):
                log.error("Store verification failed", problem=problem)
                report["errors"].append(problem)
        save_state(STATE_PATH, state)
        if changed and GIT_PUSH:
            message = commit_message(report["newPosts"], report["reactionsUpdated"])
            try:
                git_utils.commit_and_push(
                    [POSTS_PATH, STATE_PATH, MEDIA_DIR],
                    message,
                    REPO_ROOT,
                    remote=GIT_REMOTE,
                    branch=GIT_BRANCH,
                )
            except git_utils.GitError as exc:
                log.exception("Git push failed")
                report["errors"].append(f"git: {exc}")

    write_report(report)
    log.info(
        "Sync finished",
        new=len(report["newPosts"]),
        reactions=report["reactionsUpdated"],
        skipped=len(report["skipped"]),
        errors=len(report["errors"]),
    )
    return report


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Sync channel messages into the content store")
    parser.add_argument("--dry-run", action="store_true", help="write nothing except the report")
    parser.add_argument(
        "--force-all",
        "--force",
        dest="force",
        action="store_true",
        help="reprocess messages regardless of processed/skipped bookkeeping",
    )
    args = parser.parse_args(argv)
    install_excepthook(log)

    state = load_state(STATE_PATH)
    try:
        report = run_sync(state, dry_run=args.dry_run, force=args.force)
    except FetchError as exc:
        log.exception("Channel fetch failed, aborting")
        write_report(
            {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "dryRun": args.dry_run,
                "force": args.force,
                "newPosts": [],
                "reactionsUpdated": 0,
                "skipped": [],
                "errors": [f"fetch: {exc}"],
            }
        )
        return 1
    return 1 if report["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())

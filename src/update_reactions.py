"""Refresh reaction counts of published posts from the channel.

Only the ``reactions`` value of each record is touched; titles, bodies and
anything edited by hand stay as they are.

Usage: ``python src/update_reactions.py [--dry-run]``
"""

from __future__ import annotations

import argparse
import sys
from datetime import date

import git_utils
import post_store
from channel import FetchError, SourceRecord, scrape_all
from config_utils import REPO_ROOT, load_config, repo_path
from log_utils import get_logger, install_excepthook
from sync_state import RunState, load_state

log = get_logger().bind(script=__file__)

cfg = load_config()
POSTS_PATH = repo_path(getattr(cfg, "POSTS_PATH", "data/posts.json"))
STATE_PATH = repo_path(getattr(cfg, "STATE_PATH", "data/sync-state.json"))
GIT_PUSH = getattr(cfg, "GIT_PUSH", True)
GIT_REMOTE = getattr(cfg, "GIT_REMOTE", "origin")
GIT_BRANCH = getattr(cfg, "GIT_BRANCH", "main")


def refresh_reactions(
    src: str,
    records: list[SourceRecord],
    state: RunState,
    limit: int | None = None,
) -> tuple[str, list[dict]]:
    """Patch reaction counts of stored posts and return ``(src, changes)``.

    Messages are matched to posts through ``state.slug_to_msg_id`` and the
    ``telegramMsgId`` field of the store.  With ``limit`` only that many of
    the newest matched messages are considered.
    """
    entries = {e.slug: e for e in post_store.iter_entries(src)}
    msg_to_slug = {mid: slug for slug, mid in state.slug_to_msg_id.items()}
    for mid, slug in post_store.slugs_by_msg_id(src).items():
        msg_to_slug.setdefault(mid, slug)

    matched = sorted(
        (r for r in records if r.id in msg_to_slug), key=lambda r: r.id, reverse=True
    )
    if limit is not None:
        matched = matched[:limit]

    changes: list[dict] = []
    for rec in matched:
        slug = msg_to_slug[rec.id]
        entry = entries.get(slug)
        if entry is None:
            log.warning("Post missing from store", slug=slug, id=rec.id)
            continue
        old = entry.data.get("reactions")
        if old == rec.reactions:
            continue
        src = post_store.patch_fields(src, slug, {"reactions": rec.reactions})
        changes.append({"slug": slug, "msgId": rec.id, "old": old, "new": rec.reactions})
        log.info("Reactions updated", slug=slug, id=rec.id, old=old, new=rec.reactions)
    return src, changes


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Refresh reaction counts of all posts")
    parser.add_argument("--dry-run", action="store_true", help="do not write files")
    args = parser.parse_args(argv)
    install_excepthook(log)

    state = load_state(STATE_PATH)
    try:
        records = scrape_all()
    except FetchError:
        log.exception("Scrape failed")
        return 1
    src = post_store.load_store(POSTS_PATH)
    src, changes = refresh_reactions(src, records, state)
    log.info("Reaction refresh finished", updated=len(changes), dry_run=args.dry_run)
    if not changes or args.dry_run:
        return 0

    post_store.write_store(POSTS_PATH, src)
    problems = post_store.verify_store(POSTS_PATH, [])
    if problems:
        for problem in problems:
            log.error("Store verification failed", problem=problem)
        return 1
    if GIT_PUSH:
        message = f"reactions: {len(changes)} posts updated ({date.today().isoformat()})"
        try:
            git_utils.commit_and_push(
                [POSTS_PATH], message, REPO_ROOT, remote=GIT_REMOTE, branch=GIT_BRANCH
            )
        except git_utils.GitError:
            log.exception("Git push failed")
            return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Commit and push pipeline outputs."""

from __future__ import annotations

import subprocess
from pathlib import Path

from log_utils import get_logger

log = get_logger().bind(module=__name__)


class GitError(RuntimeError):
    """A git command failed."""


def _git(args: list[str], cwd: Path) -> subprocess.CompletedProcess:
    log.debug("git", args=args, cwd=str(cwd))
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True
    )
    if result.returncode != 0:
        output = (result.stdout + result.stderr).strip()
        raise GitError(f"git {' '.join(args)} failed: {output[-500:]}")
    return result


def commit_and_push(
    paths: list[Path],
    message: str,
    cwd: Path,
    remote: str = "origin",
    branch: str = "main",
    push: bool = True,
) -> bool:
    """Stage ``paths``, commit and push.  Return ``False`` when nothing changed."""
    existing = [str(p) for p in paths if p.exists()]
    if not existing:
        log.info("Nothing to stage")
        return False
    _git(["add", "--", *existing], cwd)
    status = _git(["diff", "--cached", "--name-only"], cwd)
    if not status.stdout.strip():
        log.info("Nothing to commit")
        return False
    _git(["commit", "-m", message], cwd)
    log.info("Committed", message=message)
    if push:
        _git(["push", remote, branch], cwd)
        log.info("Pushed", remote=remote, branch=branch)
    return True

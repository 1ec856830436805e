from __future__ import annotations

"""Helpers for reading and writing pipeline files.

The sync run keeps its bookkeeping, scrape snapshots and reports as JSON next
to the content store.  This module centralises I/O helpers so encoding,
logging and backups are consistent everywhere.
"""

import json
import shutil
from pathlib import Path

from log_utils import get_logger

log = get_logger().bind(module=__name__)


def read_text(path: str | Path) -> str:
    """Return file contents as UTF-8 or empty string when missing."""
    p = Path(path)
    if not p.exists():
        log.debug("read_text missing", path=str(p))
        return ""
    return p.read_text(encoding="utf-8")


def write_text(path: str | Path, text: str) -> None:
    """Write ``text`` to ``path`` creating parent directories."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")
    log.debug("Wrote text", path=str(p), size=len(text))


def load_json(path: Path):
    """Return parsed JSON or ``None`` when missing or invalid."""
    if not path.exists():
        log.warning("File not found", path=str(path))
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except Exception:
        log.exception("Failed to parse JSON", file=str(path))
        return None


def dump_json(data) -> str:
    """Return ``data`` serialised with the project's standard options."""
    return json.dumps(data, ensure_ascii=False, indent=2)


def write_json(path: Path, data) -> None:
    """Serialise ``data`` to ``path`` with standard options."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dump_json(data) + "\n", encoding="utf-8")
    log.debug("Wrote JSON", path=str(path))


def backup_file(path: Path) -> Path | None:
    """Copy ``path`` to ``<path>.bak`` and return the backup location."""
    if not path.exists():
        return None
    bak = path.with_name(path.name + ".bak")
    shutil.copyfile(path, bak)
    log.info("Backup written", path=str(bak))
    return bak

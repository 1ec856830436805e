"""Read and edit the JSON content store consumed by the site.

The store is hand-edited between automated runs, so it is never rewritten
wholesale.  Records are located by their exact byte span inside the
``"posts": [`` collection and edits touch only the value spans of the fields
being changed.  New records are inserted right after the collection marker,
which keeps the newest post first.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from channel import SourceRecord
from log_utils import get_logger
from serde_utils import backup_file, read_text, write_text

log = get_logger().bind(module=__name__)

COLLECTION_RE = re.compile(r'"posts"\s*:\s*\[')
FIELD_ORDER = [
    "id",
    "slug",
    "telegramMsgId",
    "title",
    "category",
    "depth",
    "summary",
    "content",
    "date",
    "reactions",
    "tags",
    "relatedSlugs",
    "mediaUrls",
    "videoUrls",
]
OPTIONAL_EMPTY = {"mediaUrls", "videoUrls"}
RECORD_INDENT = "    "
FIELD_INDENT = RECORD_INDENT + "  "
MIN_CONTENT_LENGTH = 50

_decoder = json.JSONDecoder()
_WS = " \t\r\n"


class ReconcileError(RuntimeError):
    """The store could not be edited as requested."""


@dataclass
class Entry:
    """One record of the store with its position in the file."""

    slug: str
    start: int
    end: int
    data: dict


def empty_store() -> str:
    return '{\n  "posts": []\n}\n'


def load_store(path: Path) -> str:
    """Return the store text, or an empty collection when the file is missing."""
    if not path.exists():
        log.warning("Store missing, starting empty", path=str(path))
        return empty_store()
    return read_text(path)


def _skip_ws(src: str, pos: int) -> int:
    while pos < len(src) and src[pos] in _WS:
        pos += 1
    return pos


def _collection_start(src: str) -> int:
    m = COLLECTION_RE.search(src)
    if not m:
        raise ReconcileError('Collection marker "posts": [ not found in store')
    return m.end()


def iter_entries(src: str) -> list[Entry]:
    """Return every record in file order with its byte span."""
    pos = _skip_ws(src, _collection_start(src))
    entries: list[Entry] = []
    while pos < len(src) and src[pos] != "]":
        try:
            obj, end = _decoder.raw_decode(src, pos)
        except json.JSONDecodeError as exc:
            raise ReconcileError(f"Malformed record at offset {pos}: {exc.msg}") from exc
        if not isinstance(obj, dict):
            raise ReconcileError(f"Record at offset {pos} is not an object")
        entries.append(Entry(slug=str(obj.get("slug") or obj.get("id") or ""), start=pos, end=end, data=obj))
        pos = _skip_ws(src, end)
        if pos < len(src) and src[pos] == ",":
            pos = _skip_ws(src, pos + 1)
    if pos >= len(src):
        raise ReconcileError("Unterminated posts collection")
    return entries


def list_slugs(src: str) -> list[str]:
    return [e.slug for e in iter_entries(src)]


def find_entry(src: str, slug: str) -> Entry | None:
    for entry in iter_entries(src):
        if entry.slug == slug:
            return entry
    return None


def slugs_by_msg_id(src: str) -> dict[int, str]:
    """Map ``telegramMsgId`` to slug for records that carry one."""
    result: dict[int, str] = {}
    for entry in iter_entries(src):
        msg_id = entry.data.get("telegramMsgId")
        if isinstance(msg_id, int):
            result[msg_id] = entry.slug
    return result


def _encode(value) -> str:
    return json.dumps(value, ensure_ascii=False)


def build_record(
    record: SourceRecord,
    meta: dict,
    image_urls: list[str],
    video_urls: list[str],
) -> dict:
    """Combine a verified message and its metadata into a store record."""
    return {
        "id": meta["slug"],
        "slug": meta["slug"],
        "telegramMsgId": record.id,
        "title": meta["title"],
        "category": meta["category"],
        "depth": meta["depth"],
        "summary": meta["summary"],
        "content": record.content or record.text,
        "date": record.date or date.today().isoformat(),
        "reactions": record.reactions or 0,
        "tags": list(meta.get("tags") or []),
        "relatedSlugs": [],
        "mediaUrls": list(image_urls),
        "videoUrls": list(video_urls),
    }


def format_record(record: dict) -> str:
    """Serialise ``record`` as an indented block with one field per line.

    Keys follow ``FIELD_ORDER`` with unknown keys appended in their original
    order; empty media lists are omitted.  Formatting the same record twice
    yields the same text.
    """
    keys = [k for k in FIELD_ORDER if k in record]
    keys += [k for k in record if k not in FIELD_ORDER]
    lines = []
    for key in keys:
        value = record[key]
        if key in OPTIONAL_EMPTY and not value:
            continue
        lines.append(f"{FIELD_INDENT}{_encode(key)}: {_encode(value)}")
    return f"{RECORD_INDENT}{{\n" + ",\n".join(lines) + f"\n{RECORD_INDENT}}}"


def insert_record(src: str, record: dict) -> str:
    """Return ``src`` with ``record`` inserted as the first collection entry."""
    slug = record.get("slug")
    if not slug:
        raise ReconcileError("Record has no slug")
    if slug in list_slugs(src):
        raise ReconcileError(f"Slug '{slug}' already in store")
    pos = _collection_start(src)
    block = format_record(record)
    rest = src[pos:]
    if rest.lstrip().startswith("]"):
        new_src = src[:pos] + "\n" + block + "\n  " + rest.lstrip()
    else:
        new_src = src[:pos] + "\n" + block + "," + rest
    if new_src == src:
        raise ReconcileError(f"Inserting '{slug}' produced no change")
    log.debug("Inserted record", slug=slug)
    return new_src


def _field_spans(src: str, start: int) -> tuple[dict[str, tuple[int, int, int]], int]:
    """Return ``key -> (key_start, value_start, value_end)`` and the closing brace."""
    spans: dict[str, tuple[int, int, int]] = {}
    pos = _skip_ws(src, start + 1)
    while src[pos] != "}":
        key_start = pos
        key, pos = _decoder.raw_decode(src, pos)
        pos = _skip_ws(src, pos)
        pos = _skip_ws(src, pos + 1)  # ':'
        value_start = pos
        _, pos = _decoder.raw_decode(src, pos)
        spans[key] = (key_start, value_start, pos)
        pos = _skip_ws(src, pos)
        if src[pos] == ",":
            pos = _skip_ws(src, pos + 1)
    return spans, pos


def _field_indent(src: str, spans: dict[str, tuple[int, int, int]]) -> str:
    if not spans:
        return FIELD_INDENT
    key_start = min(s[0] for s in spans.values())
    line_start = src.rfind("\n", 0, key_start) + 1
    indent = src[line_start:key_start]
    return indent if not indent.strip() else " "


def patch_fields(src: str, slug: str, fields: dict) -> str:
    """Return ``src`` with ``fields`` of the record ``slug`` rewritten in place.

    Only the value spans of changed fields are replaced.  Fields the record
    does not have yet are appended at the end of the same block.  Every other
    byte of the file is preserved.
    """
    entry = find_entry(src, slug)
    if entry is None:
        raise ReconcileError(f"Slug '{slug}' not found in store")
    spans, _close = _field_spans(src, entry.start)
    edits: list[tuple[int, int, str]] = []
    missing: list[str] = []
    for key, value in fields.items():
        if key in spans:
            if entry.data.get(key) == value:
                continue
            _, value_start, value_end = spans[key]
            edits.append((value_start, value_end, _encode(value)))
        else:
            missing.append(f"{_encode(key)}: {_encode(value)}")
    if missing:
        indent = _field_indent(src, spans)
        if spans:
            anchor = max(s[2] for s in spans.values())
            text = "".join(f",\n{indent}{item}" for item in missing)
        else:
            anchor = entry.start + 1
            text = ",".join(f"\n{indent}{item}" for item in missing) + "\n" + RECORD_INDENT
        edits.append((anchor, anchor, text))
    for start, end, text in sorted(edits, reverse=True):
        src = src[:start] + text + src[end:]
    if edits:
        log.debug("Patched record", slug=slug, fields=sorted(fields))
    return src


def write_store(path: Path, src: str) -> None:
    """Back up the current store and write ``src``."""
    backup_file(path)
    write_text(path, src)
    log.info("Store written", path=str(path))


def verify_store(path: Path, new_slugs: list[str]) -> list[str]:
    """Re-read the written store and return a list of problems found."""
    src = read_text(path)
    try:
        json.loads(src)
    except ValueError as exc:
        return [f"Store is not valid JSON: {exc}"]
    try:
        entries = iter_entries(src)
    except ReconcileError as exc:
        return [str(exc)]
    errors: list[str] = []
    by_slug: dict[str, Entry] = {}
    for entry in entries:
        if entry.slug in by_slug:
            errors.append(f"Duplicate slug '{entry.slug}' in store")
        by_slug[entry.slug] = entry
    for slug in new_slugs:
        entry = by_slug.get(slug)
        if entry is None:
            errors.append(f"Slug '{slug}' not found in store after sync")
            continue
        content = str(entry.data.get("content") or "").strip()
        if len(content) < MIN_CONTENT_LENGTH:
            errors.append(f"Content for '{slug}' seems too short ({len(content)} chars)")
    return errors

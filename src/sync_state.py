"""Bookkeeping of which channel messages were already handled."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from log_utils import get_logger
from serde_utils import load_json, write_json

log = get_logger().bind(module=__name__)


@dataclass
class RunState:
    """State carried between sync runs.

    ``processed`` holds ids that became posts, ``skipped`` ids judged not to
    be articles.  The two sets never overlap.
    """

    last_synced_at: str | None = None
    last_msg_id: int = 0
    processed: set[int] = field(default_factory=set)
    skipped: set[int] = field(default_factory=set)
    slug_to_msg_id: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict) -> "RunState":
        processed = {int(x) for x in data.get("processedMsgIds") or []}
        skipped = {int(x) for x in data.get("skippedMsgIds") or []}
        overlap = processed & skipped
        if overlap:
            log.warning("Ids both processed and skipped, keeping them skipped", ids=sorted(overlap))
            processed -= overlap
        return cls(
            last_synced_at=data.get("lastSyncedAt"),
            last_msg_id=int(data.get("lastMsgId") or 0),
            processed=processed,
            skipped=skipped,
            slug_to_msg_id={str(k): int(v) for k, v in (data.get("slugToMsgId") or {}).items()},
        )

    def to_dict(self) -> dict:
        return {
            "lastSyncedAt": self.last_synced_at,
            "lastMsgId": self.last_msg_id,
            "processedMsgIds": sorted(self.processed),
            "skippedMsgIds": sorted(self.skipped),
            "slugToMsgId": dict(self.slug_to_msg_id),
        }

    def is_handled(self, msg_id: int) -> bool:
        return msg_id in self.processed or msg_id in self.skipped

    def slug_for(self, msg_id: int) -> str | None:
        for slug, mid in self.slug_to_msg_id.items():
            if mid == msg_id:
                return slug
        return None

    def mark_processed(self, msg_id: int, slug: str) -> None:
        self.skipped.discard(msg_id)
        self.processed.add(msg_id)
        for stale in [s for s, m in self.slug_to_msg_id.items() if m == msg_id and s != slug]:
            del self.slug_to_msg_id[stale]
        self.slug_to_msg_id[slug] = msg_id
        self.last_msg_id = max(self.last_msg_id, msg_id)

    def mark_skipped(self, msg_id: int) -> None:
        self.processed.discard(msg_id)
        self.skipped.add(msg_id)
        self.last_msg_id = max(self.last_msg_id, msg_id)


def load_state(path: Path) -> RunState:
    """Return the stored state or a fresh one when the file is absent."""
    if not path.exists():
        log.info("No sync state yet", path=str(path))
        return RunState()
    data = load_json(path)
    if not isinstance(data, dict):
        raise ValueError(f"Invalid sync state in {path}")
    state = RunState.from_dict(data)
    log.info(
        "Loaded sync state",
        processed=len(state.processed),
        skipped=len(state.skipped),
        last_msg_id=state.last_msg_id,
    )
    return state


def save_state(path: Path, state: RunState) -> None:
    """Stamp ``state`` with the current time and write it to ``path``."""
    state.last_synced_at = datetime.now(timezone.utc).isoformat()
    write_json(path, state.to_dict())
    log.info("Saved sync state", path=str(path))

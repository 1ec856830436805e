"""Message records extracted from the channel preview."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field


@dataclass
class SourceRecord:
    """A single channel message before enrichment.

    ``id`` is assigned by Telegram and only ever grows, so it doubles as the
    ordering key and the idempotency key of the sync.
    """

    id: int
    post_id: str = ""
    text: str = ""
    title: str = ""
    content: str = ""
    date: str | None = None
    reactions: int = 0
    views: int = 0
    image_urls: list[str] = field(default_factory=list)
    video_urls: list[str] = field(default_factory=list)

    @property
    def char_count(self) -> int:
        return len(self.text)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["char_count"] = self.char_count
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SourceRecord":
        return cls(
            id=int(data["id"]),
            post_id=data.get("post_id") or "",
            text=data.get("text") or "",
            title=data.get("title") or "",
            content=data.get("content") or "",
            date=data.get("date"),
            reactions=int(data.get("reactions") or 0),
            views=int(data.get("views") or 0),
            image_urls=list(data.get("image_urls") or []),
            video_urls=list(data.get("video_urls") or []),
        )

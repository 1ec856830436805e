import json
import sys
import time

from channel_test_utils import fake_channel, make_text, message_html

import backfill
import post_store
import update_reactions
from channel import fetch, media
from channel.record import SourceRecord
from sync_state import RunState

STORE = """{
  "posts": [
    {"id": "b", "slug": "b", "telegramMsgId": 2, "title": "B", "content": "truncated", "reactions": 1},
    {"id": "a", "slug": "a", "telegramMsgId": 1, "title": "A", "content": "A body", "reactions": 7, "mediaUrls": ["/media/old.jpg"]},
    {"id": "manual", "slug": "manual", "title": "Hand made", "content": "no message behind this one"}
  ]
}
"""


def _records():
    return {
        1: SourceRecord(id=1, text="A\nA body", title="A", content="A body", reactions=9, image_urls=["https://cdn/a.jpg"]),
        2: SourceRecord(id=2, text=make_text(300, "B"), title="B", content="a" * 298, reactions=1, image_urls=["https://cdn/b.jpg"]),
    }


def test_refresh_reactions_by_state_and_store():
    state = RunState(processed={1}, slug_to_msg_id={"a": 1})
    src, changes = update_reactions.refresh_reactions(STORE, list(_records().values()), state)
    assert changes == [{"slug": "a", "msgId": 1, "old": 7, "new": 9}]
    assert src == STORE.replace('"reactions": 7', '"reactions": 9')


def test_refresh_reactions_limit_and_missing_slug():
    state = RunState(processed={1, 2, 3}, slug_to_msg_id={"a": 1, "gone": 3})
    records = list(_records().values()) + [SourceRecord(id=3, reactions=4)]
    src, changes = update_reactions.refresh_reactions(STORE, records, state, limit=1)
    # id 3 is the newest but its post was deleted from the store
    assert changes == []
    assert src == STORE


def test_backfill_media_only_fills_empty_posts(tmp_path, monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    monkeypatch.setattr(backfill, "MEDIA_DIR", tmp_path)

    def fake_download(url, dest):
        dest.write_bytes(b"x" * 10_000)
        return 10_000

    monkeypatch.setattr(media, "download_file", fake_download)
    src, updated = backfill.backfill_media(STORE, _records())
    assert updated == ["b"]
    data = json.loads(src)["posts"]
    assert data[0]["mediaUrls"] == ["/media/msg-2-0.jpg"]
    assert data[1]["mediaUrls"] == ["/media/old.jpg"]
    assert (tmp_path / "msg-2-0.jpg").exists()


def test_backfill_content_uses_verified_text(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    full = make_text(600, "B")
    monkeypatch.setattr(fetch, "fetch_page", fake_channel({1: message_html(1, "A\nA body"), 2: message_html(2, full)}))
    src, updated = backfill.backfill_content(STORE, _records(), slug="b")
    assert updated == ["b"]
    assert json.loads(src)["posts"][0]["content"] == full.split("\n", 1)[1]


def test_backfill_content_keeps_longer_hand_edit(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    full = make_text(600, "B")
    scraped_body = full.split("\n", 1)[1]
    edited = scraped_body + "\n\nAddendum written by hand after publishing."
    store = post_store.patch_fields(STORE, "b", {"content": edited})
    monkeypatch.setattr(fetch, "fetch_page", fake_channel({1: message_html(1, "A\nA body"), 2: message_html(2, full)}))

    src, updated = backfill.backfill_content(store, _records())
    assert updated == []
    assert src == store
    assert post_store.find_entry(src, "b").data["content"] == edited


def test_backfill_main_from_snapshot(tmp_path, monkeypatch):
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(time, "sleep", lambda s: None)
    posts = tmp_path / "posts.json"
    posts.write_text(STORE, encoding="utf-8")
    snapshot = tmp_path / "scraped.json"
    snapshot.write_text(json.dumps([r.to_dict() for r in _records().values()]), encoding="utf-8")
    monkeypatch.setattr(backfill, "POSTS_PATH", posts)
    monkeypatch.setattr(backfill, "MEDIA_DIR", tmp_path / "media")
    monkeypatch.setattr(backfill, "SCRAPED_PATH", snapshot)
    monkeypatch.setattr(backfill, "GIT_PUSH", False)
    monkeypatch.setattr(media, "download_file", lambda url, dest: dest.write_bytes(b"x" * 9000))

    assert backfill.main(["media", "--from-snapshot", "--dry-run"]) == 0
    assert posts.read_text(encoding="utf-8") == STORE

    assert backfill.main(["media", "--from-snapshot"]) == 0
    assert post_store.find_entry(posts.read_text(encoding="utf-8"), "b").data["mediaUrls"] == ["/media/msg-2-0.jpg"]

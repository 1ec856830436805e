import json
import sys
import time
from datetime import date
from pathlib import Path

import pytest

from channel_test_utils import fake_channel, make_text, message_html

import auto_sync
import channel
import llm_utils
import post_store
from channel import fetch, media
from sync_state import load_state


@pytest.fixture
def env(tmp_path, monkeypatch):
    """Point every file of the pipeline into ``tmp_path`` and silence delays."""
    monkeypatch.setattr(time, "sleep", lambda s: None)
    monkeypatch.setattr(auto_sync, "POSTS_PATH", tmp_path / "posts.json")
    monkeypatch.setattr(auto_sync, "STATE_PATH", tmp_path / "state.json")
    monkeypatch.setattr(auto_sync, "REPORT_PATH", tmp_path / "report.json")
    monkeypatch.setattr(auto_sync, "MEDIA_DIR", tmp_path / "media")
    monkeypatch.setattr(auto_sync, "GIT_PUSH", False)
    monkeypatch.setattr(channel, "SCRAPED_PATH", tmp_path / "scraped.json")
    monkeypatch.setattr(llm_utils, "has_credentials", lambda: False)
    (tmp_path / "posts.json").write_text(post_store.empty_store(), encoding="utf-8")
    return tmp_path


def _serve(monkeypatch, messages: dict[int, str]):
    monkeypatch.setattr(fetch, "fetch_page", fake_channel(messages))


def _run(env: Path, **kwargs) -> dict:
    state = load_state(env / "state.json")
    return auto_sync.run_sync(state, **kwargs)


def _posts(env: Path) -> list[dict]:
    return json.loads((env / "posts.json").read_text(encoding="utf-8"))["posts"]


def test_short_mid_and_deep_messages(env, monkeypatch):
    _serve(
        monkeypatch,
        {
            10: message_html(10, make_text(40)),
            11: message_html(11, make_text(600), reactions=(3,)),
            12: message_html(12, make_text(2500)),
        },
    )
    report = _run(env)

    posts = _posts(env)
    assert [p["slug"] for p in posts] == ["post-12", "post-11"]
    assert [p["depth"] for p in posts] == ["deep", "mid"]
    assert posts[1]["reactions"] == 3
    assert posts[1]["telegramMsgId"] == 11
    assert posts[1]["tags"] == []

    state = json.loads((env / "state.json").read_text())
    assert state["processedMsgIds"] == [11, 12]
    assert state["skippedMsgIds"] == [10]
    assert state["slugToMsgId"] == {"post-11": 11, "post-12": 12}

    assert report["errors"] == []
    assert report["skipped"] == [10]
    assert [p["msgId"] for p in report["newPosts"]] == [11, 12]
    saved = json.loads((env / "report.json").read_text())
    assert saved["dryRun"] is False
    assert "2 new post(s)" in saved["message"]
    assert (env / "scraped.json").exists()
    assert (env / "posts.json.bak").exists()


def test_unreachable_model_uses_fallback(env, monkeypatch):
    monkeypatch.setattr(llm_utils, "has_credentials", lambda: True)

    def down(messages, **params):
        raise ConnectionError("no route to host")

    monkeypatch.setattr(llm_utils, "chat_completion", down)
    _serve(monkeypatch, {20: message_html(20, make_text(700))})
    report = _run(env)
    assert report["errors"] == []
    [post] = _posts(env)
    assert post["slug"] == "post-20"
    assert post["depth"] == "mid"
    assert post["tags"] == []


def test_processed_ids_are_not_appended_again(env, monkeypatch):
    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    _run(env)
    before = (env / "posts.json").read_text(encoding="utf-8")

    report = _run(env)
    assert report["newPosts"] == []
    assert (env / "posts.json").read_text(encoding="utf-8") == before


def test_reaction_refresh_touches_only_counts(env, monkeypatch):
    _serve(
        monkeypatch,
        {11: message_html(11, make_text(600), reactions=(1,)), 12: message_html(12, make_text(600, "Other"), reactions=(2,))},
    )
    _run(env)
    before = (env / "posts.json").read_text(encoding="utf-8")

    _serve(
        monkeypatch,
        {11: message_html(11, make_text(600), reactions=(5,)), 12: message_html(12, make_text(600, "Other"), reactions=(2,))},
    )
    report = _run(env)
    after = (env / "posts.json").read_text(encoding="utf-8")
    assert report["reactionsUpdated"] == 1
    assert after == before.replace('"reactions": 1', '"reactions": 5')


def test_dry_run_writes_only_report(env, monkeypatch):
    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    store_before = (env / "posts.json").read_text(encoding="utf-8")

    first = _run(env, dry_run=True)
    second = _run(env, dry_run=True)

    assert [p["slug"] for p in first["newPosts"]] == ["post-11"]
    assert first["newPosts"] == second["newPosts"]
    assert (env / "posts.json").read_text(encoding="utf-8") == store_before
    assert not (env / "state.json").exists()
    assert not (env / "scraped.json").exists()
    assert json.loads((env / "report.json").read_text())["dryRun"] is True


def test_failed_record_stays_unprocessed(env, monkeypatch):
    _serve(
        monkeypatch,
        {11: message_html(11, make_text(600)), 12: message_html(12, make_text(600, "Other"))},
    )
    real = auto_sync.generate_metadata

    def flaky(record):
        if record.id == 11:
            raise RuntimeError("broken record")
        return real(record)

    monkeypatch.setattr(auto_sync, "generate_metadata", flaky)
    report = _run(env)
    assert report["errors"] == ["#11: broken record"]
    assert [p["slug"] for p in _posts(env)] == ["post-12"]
    assert load_state(env / "state.json").processed == {12}

    monkeypatch.setattr(auto_sync, "generate_metadata", real)
    report = _run(env)
    assert [p["slug"] for p in report["newPosts"]] == ["post-11"]


def test_slug_collision_gets_suffix(env, monkeypatch):
    store = post_store.insert_record(
        post_store.empty_store(),
        {"id": "post-11", "slug": "post-11", "title": "Hand written", "content": "x" * 60},
    )
    (env / "posts.json").write_text(store, encoding="utf-8")
    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    report = _run(env)
    assert [p["slug"] for p in report["newPosts"]] == ["post-11-1"]
    assert [p["slug"] for p in _posts(env)] == ["post-11-1", "post-11"]


def test_force_reprocesses_but_never_duplicates(env, monkeypatch):
    _serve(monkeypatch, {10: message_html(10, make_text(40)), 11: message_html(11, make_text(600))})
    _run(env)
    assert [p["slug"] for p in _posts(env)] == ["post-11"]

    report = _run(env, force=True)
    # the short one is judged again, the published one is left alone
    assert report["skipped"] == [10]
    assert report["newPosts"] == []
    assert [p["slug"] for p in _posts(env)] == ["post-11"]


def test_existing_post_is_adopted(env, monkeypatch):
    store = post_store.insert_record(
        post_store.empty_store(),
        {"id": "manual", "slug": "manual", "telegramMsgId": 11, "title": "Manual", "content": "x" * 60},
    )
    (env / "posts.json").write_text(store, encoding="utf-8")
    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    report = _run(env)
    assert report["newPosts"] == []
    assert load_state(env / "state.json").slug_to_msg_id == {"manual": 11}


def test_undated_message_gets_todays_date(env, monkeypatch):
    _serve(monkeypatch, {11: message_html(11, make_text(600), date=None)})
    report = _run(env)
    assert report["errors"] == []
    [post] = _posts(env)
    assert post["date"] == date.today().isoformat()


def test_media_failure_falls_back_to_remote(env, monkeypatch):
    def tiny(url, dest):
        dest.write_bytes(b"x")
        return 1

    monkeypatch.setattr(media, "download_file", tiny)
    url = "https://cdn4.telesco.pe/file/photo.jpg"
    _serve(monkeypatch, {11: message_html(11, make_text(600), images=(url,))})
    report = _run(env)
    assert report["errors"] == []
    assert _posts(env)[0]["mediaUrls"] == [url]


def test_commit_message(env, monkeypatch):
    monkeypatch.setattr(auto_sync, "GIT_PUSH", True)
    commits = []

    def fake_commit(paths, message, cwd, **kwargs):
        commits.append((paths, message))
        return True

    monkeypatch.setattr(auto_sync.git_utils, "commit_and_push", fake_commit)
    _serve(monkeypatch, {11: message_html(11, make_text(600), reactions=(2,))})
    _run(env)
    [(paths, message)] = commits
    assert message.startswith("auto-sync: ")
    assert message.endswith("| +1: post-11")
    assert env / "posts.json" in paths


def test_git_failure_is_reported(env, monkeypatch):
    monkeypatch.setattr(auto_sync, "GIT_PUSH", True)

    def fail(*_a, **_k):
        raise auto_sync.git_utils.GitError("push rejected")

    monkeypatch.setattr(auto_sync.git_utils, "commit_and_push", fail)
    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    report = _run(env)
    assert report["errors"] == ["git: push rejected"]
    assert [p["slug"] for p in _posts(env)] == ["post-11"]


def test_main_exit_codes(env, monkeypatch):
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    def down(before_id=None):
        raise fetch.FetchError("offline")

    monkeypatch.setattr(fetch, "fetch_page", down)
    assert auto_sync.main([]) == 1
    assert json.loads((env / "report.json").read_text())["errors"] == ["fetch: offline"]

    _serve(monkeypatch, {11: message_html(11, make_text(600))})
    assert auto_sync.main(["--dry-run"]) == 0

import time

from channel_test_utils import CHANNEL

import channel
from channel import media
from channel.record import SourceRecord


def _writer(sizes: list[int], calls: list[str]):
    def fake_download(url, dest):
        calls.append(url)
        size = sizes.pop(0) if sizes else 0
        dest.write_bytes(b"x" * size)
        return size

    return fake_download


def test_media_filename():
    assert media.media_filename("https://cdn/x/photo.JPG?a=1", 5, 0) == "msg-5-0.jpg"
    assert media.media_filename("https://cdn/x/noext", 5, 1) == "msg-5-1.jpg"
    assert media.media_filename("https://cdn/x/noext", 5, "v0", is_video=True) == "msg-5-v0.mp4"


def test_download_media_success(tmp_path, monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    calls = []
    monkeypatch.setattr(media, "download_file", _writer([channel.MEDIA_MIN_SIZE], calls))
    url = media.download_media("https://cdn/p.png", 8, 0, tmp_path)
    assert url == channel.MEDIA_URL_PREFIX + "msg-8-0.png"
    assert (tmp_path / "msg-8-0.png").stat().st_size == channel.MEDIA_MIN_SIZE


def test_download_media_retries_small_files(tmp_path, monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    calls = []
    monkeypatch.setattr(media, "download_file", _writer([100, 20_000], calls))
    url = media.download_media("https://cdn/p.jpg", 8, 0, tmp_path)
    assert url.endswith("msg-8-0.jpg")
    assert len(calls) == 2


def test_download_media_gives_up(tmp_path, monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    calls = []
    monkeypatch.setattr(media, "download_file", _writer([10, 10, 10], calls))
    assert media.download_media("https://cdn/p.jpg", 8, 0, tmp_path) is None
    assert len(calls) == channel.MAX_RETRIES
    assert not (tmp_path / "msg-8-0.jpg").exists()


def test_download_media_reuses_existing(tmp_path, monkeypatch):
    existing = tmp_path / "msg-8-0.jpg"
    existing.write_bytes(b"x" * channel.MEDIA_MIN_SIZE)

    def fail(*_a, **_k):
        raise AssertionError("should not download")

    monkeypatch.setattr(media, "download_file", fail)
    assert media.download_media("https://cdn/p.jpg", 8, 0, tmp_path) == channel.MEDIA_URL_PREFIX + "msg-8-0.jpg"


def test_download_all_falls_back_to_remote(tmp_path, monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda s: None)
    calls = []
    # first image fine, every later attempt undersized
    monkeypatch.setattr(media, "download_file", _writer([50_000], calls))
    rec = SourceRecord(
        id=12,
        post_id=f"{CHANNEL}/12",
        image_urls=["https://cdn/a.jpg", "https://cdn/b.jpg"],
        video_urls=["https://cdn/c.mp4"],
    )
    images, videos = media.download_all(rec, tmp_path)
    assert images == [channel.MEDIA_URL_PREFIX + "msg-12-0.jpg", "https://cdn/b.jpg"]
    assert videos == ["https://cdn/c.mp4"]

"""Extract messages from the ``t.me/s/<channel>`` preview markup.

The preview is plain server-rendered HTML.  Every message is a block carrying
``data-post="<channel>/<id>"``; text, date, reactions and media live in
child elements identified by ``tgme_widget_message_*`` classes.  Parsing is
best effort: a missing optional element yields an empty value instead of an
error, and fragments without a numeric id are ignored.
"""

from __future__ import annotations

import re

from bs4 import BeautifulSoup, Comment, NavigableString, Tag

from log_utils import get_logger

from .record import SourceRecord

log = get_logger().bind(module=__name__)

# Telegram UI assets that look like media but are chrome.
UI_ASSET_MARKERS = ("/img/emoji/", "/img/tg/")
# Subtrees whose images or text belong to something other than the message.
FOREIGN_CONTAINERS = {
    "tgme_widget_message_user",
    "tgme_widget_message_author",
    "tgme_widget_message_reply",
    "tgme_widget_message_reactions",
}
# Preview frames of a video; the video itself is collected separately.
THUMB_CLASSES = {"tgme_widget_message_video_thumb", "tgme_widget_message_roundvideo_thumb"}

BG_URL_RE = re.compile(r"background-image:\s*url\(\s*['\"]?([^'\")]+)['\"]?\s*\)")
COUNT_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*([KkMm]?)\s*$")
CDN_IMAGE_RE = re.compile(r"(cdn\d*\.cdn-telegram|cdn\d*\.telegram).*\.(jpe?g|png|webp)", re.I)


def _classes(el: Tag) -> set[str]:
    return set(el.get("class") or [])


def _inside(el: Tag, names: set[str]) -> bool:
    """Return ``True`` when ``el`` or one of its parents has a class in ``names``."""
    node = el
    while isinstance(node, Tag):
        if _classes(node) & names:
            return True
        node = node.parent
    return False


def _wrap(inner: str, mark: str) -> str:
    """Wrap the non-blank core of ``inner`` with ``mark`` keeping outer spaces."""
    core = inner.strip()
    if not core:
        return inner
    lead = inner[: len(inner) - len(inner.lstrip())]
    trail = inner[len(inner.rstrip()):]
    return f"{lead}{mark}{core}{mark}{trail}"


def _render(node: Tag) -> str:
    """Convert message markup into text with a tiny markdown subset."""
    parts: list[str] = []
    for child in node.children:
        if isinstance(child, Comment):
            continue
        if isinstance(child, NavigableString):
            parts.append(str(child))
            continue
        if not isinstance(child, Tag):
            continue
        name = child.name
        if name == "br":
            parts.append("\n")
        elif name == "i" and "emoji" in _classes(child):
            parts.append(child.get_text())
        elif name in ("b", "strong"):
            parts.append(_wrap(_render(child), "**"))
        elif name in ("i", "em"):
            parts.append(_wrap(_render(child), "*"))
        elif name == "a" and child.get("href"):
            inner = _render(child)
            parts.append(f"[{inner}]({child['href']})" if inner.strip() else inner)
        elif name == "p":
            parts.append(_render(child) + "\n\n")
        else:
            parts.append(_render(child))
    return "".join(parts)


def normalize_text(node: Tag | None) -> str:
    """Return cleaned message text for the ``tgme_widget_message_text`` node."""
    if node is None:
        return ""
    text = _render(node).replace("\r\n", "\n")
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def parse_count(value: str | None) -> int:
    """Return ``value`` like ``"1.2K"`` or ``"17"`` as an integer."""
    if not value:
        return 0
    m = COUNT_RE.search(value.strip())
    if not m:
        return 0
    number = float(m.group(1).replace(",", "."))
    suffix = m.group(2).upper()
    if suffix == "K":
        number *= 1000
    elif suffix == "M":
        number *= 1_000_000
    return int(round(number))


def absolute_url(url: str) -> str:
    url = url.strip()
    if url.startswith("//"):
        return "https:" + url
    return url


def _is_ui_asset(url: str) -> bool:
    return any(marker in url for marker in UI_ASSET_MARKERS)


def _message_text_node(msg: Tag) -> Tag | None:
    for node in msg.select(".tgme_widget_message_text"):
        if not _inside(node, {"tgme_widget_message_reply"}):
            return node
    return None


def _reactions(msg: Tag) -> int:
    box = msg.select_one(".tgme_widget_message_reactions")
    if box is None:
        return 0
    items = box.select(".tgme_reaction") or [
        c for c in box.children if isinstance(c, Tag)
    ]
    return sum(parse_count(item.get_text()) for item in items)


def _date(msg: Tag) -> str | None:
    node = msg.select_one("time[datetime]")
    if node is None:
        return None
    value = node.get("datetime", "").strip()
    return value.split("T")[0] or None


def _images(msg: Tag) -> list[str]:
    urls: list[str] = []
    for el in msg.select("[style*=background-image]"):
        if _inside(el, FOREIGN_CONTAINERS) or _classes(el) & THUMB_CLASSES:
            continue
        m = BG_URL_RE.search(el.get("style", ""))
        if not m:
            continue
        urls.append(absolute_url(m.group(1)))
    for el in msg.select("img[src]"):
        if _inside(el, FOREIGN_CONTAINERS):
            continue
        src = el["src"]
        if CDN_IMAGE_RE.search(src):
            urls.append(absolute_url(src))
    return [u for u in dict.fromkeys(urls) if not _is_ui_asset(u)]


def _videos(msg: Tag) -> list[str]:
    urls: list[str] = []
    for el in msg.select("video[src]"):
        if not _inside(el, FOREIGN_CONTAINERS):
            urls.append(absolute_url(el["src"]))
    for el in msg.select("[data-src]"):
        src = el["data-src"]
        if ".mp4" in src and not _inside(el, FOREIGN_CONTAINERS):
            urls.append(absolute_url(src))
    return list(dict.fromkeys(urls))


def split_title(text: str, msg_id: int) -> tuple[str, str]:
    """Return ``(title, content)`` where the title is the first non-empty line."""
    lines = text.split("\n")
    for idx, line in enumerate(lines):
        if line.strip():
            title = line.replace("**", "").strip()
            content = "\n".join(lines[idx + 1:]).strip()
            return title or f"Post {msg_id}", content or text
    return f"Post {msg_id}", text


def _message_id(post: str) -> int | None:
    tail = post.rsplit("/", 1)[-1].strip()
    return int(tail) if tail.isdigit() and int(tail) > 0 else None


def parse_messages(html: str) -> list[SourceRecord]:
    """Return every message found in ``html`` in page order."""
    soup = BeautifulSoup(html or "", "lxml")
    records: list[SourceRecord] = []
    seen: set[int] = set()
    for msg in soup.select("[data-post]"):
        post = msg.get("data-post", "")
        msg_id = _message_id(post)
        if msg_id is None or msg_id in seen:
            continue
        seen.add(msg_id)
        text = normalize_text(_message_text_node(msg))
        title, content = split_title(text, msg_id)
        views_node = msg.select_one(".tgme_widget_message_views")
        records.append(
            SourceRecord(
                id=msg_id,
                post_id=post,
                text=text,
                title=title,
                content=content,
                date=_date(msg),
                reactions=_reactions(msg),
                views=parse_count(views_node.get_text() if views_node else None),
                image_urls=_images(msg),
                video_urls=_videos(msg),
            )
        )
    log.debug("Parsed page", count=len(records))
    return records

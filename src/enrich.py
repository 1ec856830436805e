"""Generate post metadata (slug, title, category, depth, summary, tags).

The instruction prompt lives in ``prompts/metadata_prompt.md``.  When the
model is unavailable or keeps answering garbage, deterministic metadata is
derived from the message itself so a sync never stalls on enrichment.
"""

from __future__ import annotations

import re
import time

import llm_utils
from channel import SourceRecord
from config_utils import load_config, repo_path
from log_utils import get_logger

log = get_logger().bind(module=__name__)

cfg = load_config()
METADATA_MODELS = getattr(cfg, "METADATA_MODELS", [{"model": "gpt-4o-mini"}])
MAX_RETRIES = getattr(cfg, "MAX_RETRIES", 3)
RETRY_DELAY = getattr(cfg, "RETRY_DELAY", 3)

PROMPT_PATH = repo_path("prompts/metadata_prompt.md")
SYSTEM_PROMPT = (
    "You are a metadata generator. Respond ONLY with valid JSON, "
    "no markdown, no explanation."
)
PROMPT_TEXT_LIMIT = 2000

CATEGORIES = ["🐇 탐험", "🛠️ 빌딩", "✍️ 낙서", "📖 소설"]
DEPTHS = ["entry", "mid", "deep"]
# Character counts separating the depth tiers.
MID_CHARS = 500
DEEP_CHARS = 2000

TITLE_MAX = 40
SUMMARY_MAX = 80
SLUG_MAX = 60
MAX_TAGS = 5


def depth_for(char_count: int) -> str:
    if char_count < MID_CHARS:
        return "entry"
    if char_count < DEEP_CHARS:
        return "mid"
    return "deep"


def clean_slug(value: str) -> str:
    """Return ``value`` reduced to lowercase ASCII letters, digits and hyphens."""
    slug = re.sub(r"[^a-z0-9-]", "-", (value or "").lower())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:SLUG_MAX].strip("-")


def unique_slug(base: str, taken) -> str:
    """Return ``base`` or ``base-N`` with the smallest ``N`` not in ``taken``."""
    slug = base
    suffix = 1
    while slug in taken:
        slug = f"{base}-{suffix}"
        suffix += 1
    return slug


def fallback_metadata(record: SourceRecord) -> dict:
    """Metadata computed from the message alone."""
    body = record.content or record.text
    return {
        "slug": f"post-{record.id}",
        "title": record.title[:TITLE_MAX],
        "category": CATEGORIES[0],
        "depth": depth_for(record.char_count),
        "summary": body[:SUMMARY_MAX].strip() + "...",
        "tags": [],
    }


def build_prompt(record: SourceRecord) -> str:
    template = PROMPT_PATH.read_text(encoding="utf-8")
    return (
        template.replace("{categories}", "|".join(CATEGORIES))
        .replace("{text}", record.text[:PROMPT_TEXT_LIMIT])
    )


def sanitize_metadata(raw: dict, record: SourceRecord) -> dict:
    """Coerce a model answer into the allowed values and lengths."""
    fallback = fallback_metadata(record)
    slug = clean_slug(str(raw.get("slug") or "")) or fallback["slug"]
    title = str(raw.get("title") or "").strip() or fallback["title"]
    summary = str(raw.get("summary") or "").strip() or fallback["summary"]
    category = raw.get("category")
    if category not in CATEGORIES:
        log.debug("Unknown category", id=record.id, category=category)
        category = fallback["category"]
    depth = raw.get("depth")
    if depth not in DEPTHS:
        depth = fallback["depth"]
    tags = raw.get("tags")
    if isinstance(tags, str):
        tags = [t.strip() for t in tags.split(",")]
    if not isinstance(tags, list):
        tags = []
    tags = [str(t).strip() for t in tags if str(t).strip()][:MAX_TAGS]
    return {
        "slug": slug,
        "title": title[:TITLE_MAX],
        "category": category,
        "depth": depth,
        "summary": summary[:SUMMARY_MAX],
        "tags": tags,
    }


def generate_metadata(record: SourceRecord) -> dict:
    """Return metadata for ``record`` from the model or the heuristic fallback."""
    if not llm_utils.has_credentials():
        log.warning("OpenAI key not set, using fallback metadata", id=record.id)
        return fallback_metadata(record)

    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": build_prompt(record)},
    ]
    for attempt in range(1, MAX_RETRIES + 1):
        try:
            text = llm_utils.call_with_fallback(
                messages, METADATA_MODELS, max_tokens=512, temperature=0.3
            )
            meta = sanitize_metadata(llm_utils.extract_json(text), record)
            log.info(
                "Metadata generated",
                id=record.id,
                slug=meta["slug"],
                category=meta["category"],
                depth=meta["depth"],
            )
            return meta
        except Exception as exc:
            log.warning("Metadata attempt failed", id=record.id, attempt=attempt, error=str(exc))
            if attempt < MAX_RETRIES:
                time.sleep(RETRY_DELAY)
    log.warning("Metadata generation exhausted, using fallback", id=record.id)
    return fallback_metadata(record)

"""Thin wrapper around the OpenAI chat API."""

from __future__ import annotations

import json
import re

import openai

from config_utils import load_config, openai_key
from log_utils import get_logger

log = get_logger().bind(module=__name__)

cfg = load_config()
OPENAI_TIMEOUT = 60  # seconds to wait for a metadata answer

FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.S)


def has_credentials() -> bool:
    return bool(openai_key(cfg))


def chat_completion(messages: list[dict], **params) -> str:
    """Return the text of a single chat completion."""
    openai.api_key = openai_key(cfg)
    log.debug("OpenAI request", messages=messages, params=params)
    response = openai.chat.completions.create(
        messages=messages,
        timeout=OPENAI_TIMEOUT,
        **params,
    )
    content = response.choices[0].message.content or ""
    log.debug("OpenAI response", text=content)
    return content


def call_with_fallback(messages: list[dict], model_list: list[dict], **extra) -> str:
    """Try models in order until one succeeds."""
    for params in model_list:
        log.info("Calling model", model=params)
        try:
            return chat_completion(messages, **params, **extra)
        except Exception:
            # Errors here are logged and the next model attempted.
            log.exception("Failed with parameters", model=params)
    raise RuntimeError("All models failed. Please check the errors above.")


def extract_json(text: str):
    """Return the first JSON object embedded in ``text``.

    Models like to wrap answers in code fences or explain themselves before
    and after the payload.  Fenced blocks are tried first, then the widest
    ``{...}`` span.  Raises ``ValueError`` when nothing parses.
    """
    candidates = [m.strip() for m in FENCE_RE.findall(text or "")]
    start = (text or "").find("{")
    end = (text or "").rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])
    for chunk in candidates:
        try:
            data = json.loads(chunk)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    raise ValueError("No JSON object found in model response")

"""Utility to load the user configuration."""

from importlib import import_module
from pathlib import Path
import os
import sys

from log_utils import get_logger

log = get_logger().bind(module=__name__)

REPO_ROOT = Path(__file__).resolve().parent.parent


def load_config():
    """Return the ``config`` module or exit with a helpful message.

    When running the scripts directly from ``src/`` the repository root isn't on
    ``sys.path`` and ``config.py`` can't be imported.  Try adding the parent
    directory before failing so the configuration can live alongside
    ``config.example.py`` in the project root.
    """

    try:
        return import_module("config")
    except ModuleNotFoundError:
        if str(REPO_ROOT) not in sys.path:
            sys.path.insert(0, str(REPO_ROOT))
            log.debug("Added repo root to sys.path", path=str(REPO_ROOT))
        try:
            return import_module("config")
        except ModuleNotFoundError as exc:
            log.error(
                "Missing config.py, copy config.example.py and fill in settings"
            )
            raise SystemExit("Configuration file 'config.py' not found") from exc


def openai_key(cfg) -> str:
    """Return the OpenAI key, preferring ``OPENAI_API_KEY`` from the environment."""
    key = os.getenv("OPENAI_API_KEY") or getattr(cfg, "OPENAI_KEY", "") or ""
    # The example config ships a placeholder that must never reach the API.
    if key in {"sk-...", "test"}:
        return ""
    return key


def repo_path(value) -> Path:
    """Resolve ``value`` against the repository root unless already absolute."""
    p = Path(value)
    return p if p.is_absolute() else REPO_ROOT / p

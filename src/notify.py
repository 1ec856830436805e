"""Forward the last sync report to Telegram chats."""

from __future__ import annotations

import argparse
import asyncio

from telegram.ext import ApplicationBuilder

from config_utils import load_config, repo_path
from log_utils import get_logger, install_excepthook
from serde_utils import load_json

log = get_logger().bind(script=__file__)

cfg = load_config()
TG_TOKEN = getattr(cfg, "TG_TOKEN", "")
ALERT_CHAT_IDS = list(getattr(cfg, "ALERT_CHAT_IDS", []))
REPORT_PATH = repo_path(getattr(cfg, "REPORT_PATH", "data/last-sync-report.json"))
MAX_MESSAGE = 4000


def has_news(report: dict) -> bool:
    return bool(report.get("newPosts") or report.get("errors") or report.get("reactionsUpdated"))


def format_report(report: dict) -> str:
    head = "🐇 auto-sync"
    if report.get("dryRun"):
        head += " (dry run)"
    if report.get("timestamp"):
        head += f" {report['timestamp'][:16].replace('T', ' ')}"
    body = report.get("message") or ""
    if not body:
        body = f"{len(report.get('newPosts') or [])} new post(s), {len(report.get('errors') or [])} error(s)"
    return f"{head}\n{body}"[:MAX_MESSAGE]


async def send_report(text: str, chat_ids: list[int]) -> int:
    """Send ``text`` to every chat and return how many sends succeeded."""
    if not chat_ids:
        log.info("No chats configured")
        return 0
    application = ApplicationBuilder().token(TG_TOKEN).build()
    sent = 0
    async with application.bot as bot:
        for chat_id in chat_ids:
            try:
                await bot.send_message(chat_id=chat_id, text=text)
                sent += 1
            except Exception:
                log.exception("Failed to notify", chat=chat_id)
    return sent


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Send the last sync report to Telegram")
    parser.add_argument("--only-changes", action="store_true", help="stay silent when the run changed nothing")
    args = parser.parse_args(argv)
    install_excepthook(log)

    report = load_json(REPORT_PATH)
    if not isinstance(report, dict):
        log.error("No sync report to send", path=str(REPORT_PATH))
        return 1
    if args.only_changes and not has_news(report):
        log.info("Nothing to report")
        return 0
    sent = await send_report(format_report(report), ALERT_CHAT_IDS)
    log.info("Report sent", chats=sent)
    return 0


if __name__ == "__main__":
    raise SystemExit(asyncio.run(main()))

"""Telegram notifications. Never log token or chat_id."""

from __future__ import annotations
import asyncio
import logging
from typing import Any, Optional

import requests

logger = logging.getLogger("futures_bot.utils.telegram")

_EVENT_PREFIX = {
    "entry": "🚀",
    "bracket_placed": "🛡",
    "bracket_failure": "⚠️",
    "entry_rejected": "❌",
    "position_closed": "📕",
    "target_reached": "🎯",
    "loss_limit": "🚨",
    "halted": "⛔",
    "daily_summary": "📊",
    "error": "❗",
}


def send_telegram(text: str, bot_token: str = "", chat_id: str = "") -> bool:
    """Send message to Telegram. Returns True on success; False if not configured or on error."""
    if not bot_token or not chat_id:
        logger.debug("Telegram not configured, skipping message (len=%d)", len(text))
        return False
    try:
        url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
        payload = {"chat_id": chat_id, "text": text, "disable_web_page_preview": True}
        r = requests.post(url, json=payload, timeout=10)
        if r.status_code != 200:
            logger.warning("Telegram send failed: %s %s", r.status_code, r.text[:200])
            return False
        return True
    except requests.RequestException as e:
        logger.warning("Telegram error: %s", e)
        return False


class TelegramNotifier:
    """
    Fire-and-forget notifier. notify() hands the HTTP call to the default
    executor and returns at once, so a slow or dead Telegram never stalls
    the engine.
    """

    def __init__(self, bot_token: str = "", chat_id: str = "", prefix: str = ""):
        self._bot_token = bot_token
        self._chat_id = chat_id
        self._prefix = prefix
        self._pending: set = set()

    @property
    def enabled(self) -> bool:
        return bool(self._bot_token and self._chat_id)

    def notify(self, message: str) -> None:
        if not self.enabled:
            logger.debug("notify (telegram off): %s", message)
            return
        text = f"{self._prefix}{message}" if self._prefix else message
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        if loop is None:
            send_telegram(text, self._bot_token, self._chat_id)
            return
        fut = loop.run_in_executor(None, send_telegram, text, self._bot_token, self._chat_id)
        self._pending.add(fut)
        fut.add_done_callback(self._pending.discard)

    def on_event(self, event: Any) -> None:
        """Engine subscriber: format an EngineEvent and send it."""
        kind = getattr(event.kind, "value", event.kind)
        icon: Optional[str] = _EVENT_PREFIX.get(kind)
        self.notify(f"{icon} {event.message}" if icon else event.message)

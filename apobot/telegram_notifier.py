from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from apobot.config import Settings

if TYPE_CHECKING:
    from apobot.session import SessionEvent

logger = logging.getLogger(__name__)


def send_telegram_message(*, bot_token: str, chat_id: str, text: str, timeout_seconds: float = 20.0) -> None:
    url = f"https://api.telegram.org/bot{bot_token}/sendMessage"
    payload = {
        "chat_id": chat_id,
        "text": text,
        "disable_web_page_preview": True,
    }

    with httpx.Client(timeout=timeout_seconds) as client:
        r = client.post(url, json=payload)
        r.raise_for_status()
        data = r.json()
        if not data.get("ok", False):
            raise RuntimeError(f"Telegram API error: {data}")


def broadcast_telegram(settings: Settings, text: str) -> None:
    """Send to every configured chat; raises once at the end if any send failed."""
    if not settings.telegram_enabled:
        return

    failed: list[str] = []
    for chat_id in settings.telegram_chat_ids:
        try:
            send_telegram_message(bot_token=settings.telegram_bot_token, chat_id=chat_id, text=text)
        except (httpx.HTTPError, RuntimeError) as e:
            logger.warning("Failed to send telegram message to chat_id=%s (%s: %s)", chat_id, type(e).__name__, e)
            failed.append(chat_id)

    if failed:
        raise RuntimeError(f"Failed to send telegram message to some recipients: {', '.join(failed)}")


def format_session_event(event: SessionEvent) -> str | None:
    """Text for the events worth a chat message; state changes are only logged."""
    if event.kind == "session_expired":
        return "apobot: session expired, logging in again..."
    if event.kind == "recovered":
        return "apobot: session recovered."
    if event.kind == "error":
        reason = f"{type(event.error).__name__}: {event.error}" if event.error else "unknown"
        return f"apobot: session error.\nReason: {reason}"
    return None


class TelegramSessionListener:
    """Session listener that forwards lifecycle problems to Telegram.

    Sending happens off the event loop; delivery failures are only logged.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    def _send(self, text: str) -> None:
        try:
            broadcast_telegram(self.settings, text)
        except RuntimeError:
            logger.warning("Telegram session notification was not delivered to every chat", exc_info=True)

    def __call__(self, event: SessionEvent) -> None:
        text = format_session_event(event)
        if text is None:
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._send(text)
            return
        loop.run_in_executor(None, self._send, text)

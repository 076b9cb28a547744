"""
Notifier
Owner notifications: Telegram bot API or the log
"""
from typing import Awaitable, Callable, Optional

import httpx
from loguru import logger

import config as cfg


# async (message) -> None
NotifyFn = Callable[[str], Awaitable[None]]


async def safe_notify(notify: Optional[NotifyFn], message: str) -> None:
    """Deliver a notification; delivery failures are logged, never raised."""
    if notify is None:
        return
    try:
        await notify(message)
    except Exception as e:
        logger.warning(f"Notification failed: {e}")


class LogNotifier:
    """Writes notifications to the log. Used when no chat is configured."""

    async def __call__(self, message: str) -> None:
        logger.info(f"[notify] {message}")


class TelegramNotifier:
    """Sends notifications to the owner's Telegram chat."""

    API_URL = "https://api.telegram.org"

    def __init__(
        self,
        bot_token: str = cfg.TELEGRAM_BOT_TOKEN,
        chat_id: str = cfg.TELEGRAM_CHAT_ID,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.session = client

    @property
    def configured(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def __call__(self, message: str) -> None:
        if not self.configured:
            raise RuntimeError("Telegram bot token or chat id not configured")

        if self.session is None:
            self.session = httpx.AsyncClient(timeout=15.0)

        response = await self.session.post(
            f"{self.API_URL}/bot{self.bot_token}/sendMessage",
            json={"chat_id": self.chat_id, "text": message, "parse_mode": "Markdown"},
        )
        response.raise_for_status()

    async def close(self) -> None:
        if self.session:
            await self.session.aclose()
            self.session = None


def build_notifier() -> NotifyFn:
    """Telegram when credentials are present, the log otherwise."""
    telegram = TelegramNotifier()
    if telegram.configured:
        logger.info(f"Notifications -> Telegram chat {telegram.chat_id}")
        return telegram
    logger.info("Notifications -> log (Telegram not configured)")
    return LogNotifier()

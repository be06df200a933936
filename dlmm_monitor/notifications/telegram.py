"""
Telegram Bot API notification sink.

Posts to ``{api_url}/bot{token}/sendMessage``. Options passed to ``send``
(e.g. ``reply_markup``) are merged into the request payload.
"""
import asyncio
from typing import Any, Dict, Optional

import aiohttp

from dlmm_monitor.exceptions import NotificationError
from dlmm_monitor.monitoring.logger import get_logger

logger = get_logger(__name__)


class TelegramNotifier:
    """NotificationSink delivering to Telegram chats."""

    def __init__(
        self,
        bot_token: str,
        api_url: str = "https://api.telegram.org",
        parse_mode: Optional[str] = "Markdown",
        timeout_seconds: float = 10.0,
    ):
        if not bot_token:
            raise ValueError("Telegram bot token is required")
        self._bot_token = bot_token
        self._api_url = api_url.rstrip("/")
        self.parse_mode = parse_mode
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    @property
    def send_url(self) -> str:
        return f"{self._api_url}/bot{self._bot_token}/sendMessage"

    def build_payload(self, destination_id: int, text: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"chat_id": destination_id, "text": text}
        if self.parse_mode:
            payload["parse_mode"] = self.parse_mode
        if options:
            payload.update(options)
        return payload

    async def send(self, destination_id: int, text: str, options: Optional[Dict[str, Any]] = None) -> None:
        """
        Send a message.

        Raises:
            NotificationError: non-200 reply, network error or timeout
        """
        payload = self.build_payload(destination_id, text, options)
        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.send_url, json=payload) as resp:
                    if resp.status != 200:
                        body = await resp.text()
                        logger.warning("Telegram send failed", status=resp.status, body=body[:200])
                        raise NotificationError(f"Telegram API returned {resp.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Telegram send error", chat_id=destination_id, error=str(e))
            raise NotificationError(f"Telegram send failed: {e}") from e

        logger.debug("Telegram message sent", chat_id=destination_id, length=len(text))

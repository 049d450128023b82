"""Telegram notification sink.

Messages go to every chat id independently: one failing chat id never stops
delivery to the others, and each outcome is reported back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Optional

import httpx

from models import ConnectionTestResult, DeliveryResult
from side_effects import parse_chat_ids

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"
TEST_MESSAGE = "<b>✅ Connection test successful!</b>\n\nThe trading bot can now send messages to this chat."


class TelegramError(Exception):
    """Delivery to a single chat failed."""


class TelegramNotifier:
    def __init__(
        self,
        *,
        api_url: str = TELEGRAM_API_URL,
        timeout_s: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_s), transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send_one(self, bot_token: str, chat_id: str, message: str) -> None:
        url = f"{self._api_url}/bot{bot_token}/sendMessage"
        data = {"chat_id": chat_id, "text": message, "parse_mode": "HTML"}
        response = await self._client.post(url, data=data)
        if response.is_error:
            try:
                description = response.json().get("description")
            except ValueError:
                description = None
            raise TelegramError(description or f"status={response.status_code}")

    async def send_message(self, bot_token: str, chat_ids: Iterable[str], message: str) -> List[DeliveryResult]:
        ids = [c for c in chat_ids if c]
        if not bot_token or not ids or not message:
            logger.warning("Telegram: missing bot token, chat id or message, not sending")
            return []

        outcomes = await asyncio.gather(
            *(self._send_one(bot_token, chat_id, message) for chat_id in ids),
            return_exceptions=True,
        )
        results = []
        for chat_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                results.append(DeliveryResult(chat_id=chat_id, success=False, error=str(outcome) or type(outcome).__name__))
            else:
                results.append(DeliveryResult(chat_id=chat_id, success=True))
        return results

    async def test_connection(self, bot_token: str, chat_id: str) -> ConnectionTestResult:
        """Send a test message to every chat id in ``chat_id`` and summarise the outcome."""
        if not bot_token or not chat_id:
            return ConnectionTestResult(success=False, message="Bot token and chat id are required.")
        ids = parse_chat_ids(chat_id)
        if not ids:
            return ConnectionTestResult(success=False, message="No valid chat ids found.")

        results = await self.send_message(bot_token, ids, TEST_MESSAGE)
        ok = [r for r in results if r.success]
        failed = [r for r in results if not r.success]

        if not ok:
            error = failed[0].error if failed else "unknown error"
            if "chat not found" in error or "chat_id" in error:
                return ConnectionTestResult(
                    success=False,
                    message="Chat id(s) are invalid. Make sure you have sent a message to the bot.",
                )
            if "Unauthorized" in error or "invalid token" in error:
                return ConnectionTestResult(success=False, message="Bot token is invalid.")
            return ConnectionTestResult(success=False, message=f"Error: {error}")
        if failed:
            return ConnectionTestResult(
                success=True,
                message=(
                    f"Test message delivered to {len(ok)} of {len(results)} chat(s). "
                    f"Failed: {', '.join(r.chat_id for r in failed)}"
                ),
            )
        return ConnectionTestResult(success=True, message=f"Test message delivered to {len(ok)} chat(s).")

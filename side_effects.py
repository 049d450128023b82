"""Fire-and-forget side effects of the trading loop.

The engine only ever calls ``submit()``, which enqueues a record and returns
immediately. A single worker task drains the queue and talks to the
notification sink and the exchange; whatever happens there (latency,
errors) is logged and never reaches the tick loop.
"""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN
from typing import Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    bot_token: str
    chat_ids: Tuple[str, ...]
    message: str


@dataclass(frozen=True)
class MarketOrder:
    pair: str
    side: str  # "buy" | "sell"
    size: str


Effect = Union[Notification, MarketOrder]


class EffectSink(Protocol):
    def submit(self, effect: Effect) -> None: ...


def format_order_size(amount: float) -> str:
    """8 decimals, rounded down so a sell never exceeds the held amount."""
    return str(Decimal(repr(amount)).quantize(Decimal("0.00000001"), rounding=ROUND_DOWN))


def parse_chat_ids(chat_id: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (chat_id or "").split(",") if part.strip())


# --- Message texts (Telegram HTML) ---

def buy_message(price: float, amount: float, reason: str) -> str:
    return f"💰 <b>Buy executed</b>\n\nPrice: {price:.2f}\nAmount: {amount:.6f}\nReason: {reason}"


def sell_message(price: float, amount: float, reason: str) -> str:
    return f"💸 <b>Sell executed</b>\n\nPrice: {price:.2f}\nAmount: {amount:.6f}\nReason: {reason}"


def status_message(price: float, account_value: float, profit: float, open_positions: int) -> str:
    sign = "+" if profit >= 0 else ""
    return (
        "<b>📊 Status update</b>\n\n"
        f"Current price: {price:.2f}\n"
        f"Account value: {account_value:.2f}\n"
        f"Profit: {sign}{profit:.2f}\n"
        f"Open positions: {open_positions}"
    )


def error_message(text: str) -> str:
    return f"<b>🚨 Error</b>\n\n{text}"


def duration_message(pair: str, minutes: float) -> str:
    return f"<b>🛑 Run for {pair} stopped</b>: the configured duration of {minutes:g} minutes was reached."


class SideEffectWorker:
    def __init__(self, notifier=None, exchange=None):
        self.notifier = notifier
        self.exchange = exchange
        self.queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def submit(self, effect: Effect) -> None:
        self.queue.put_nowait(effect)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="side-effects")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def drain(self) -> None:
        """Wait until everything submitted so far has been dispatched."""
        await self.queue.join()

    async def close(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            effect = await self.queue.get()
            try:
                await self.dispatch(effect)
            except Exception:
                logger.exception("Side effect %s failed", type(effect).__name__)
            finally:
                self.queue.task_done()

    async def dispatch(self, effect: Effect) -> None:
        if isinstance(effect, Notification):
            if self.notifier is None:
                logger.debug("No notifier configured, dropping message")
                return
            results = await self.notifier.send_message(effect.bot_token, effect.chat_ids, effect.message)
            for result in results:
                if not result.success:
                    logger.error("Telegram delivery to %s failed: %s", result.chat_id, result.error)
        elif isinstance(effect, MarketOrder):
            if self.exchange is None:
                logger.warning("No exchange configured, %s order for %s not placed", effect.side, effect.pair)
                return
            order = await self.exchange.place_order(effect.pair, effect.side, effect.size)
            logger.info("Placed %s order %s for %s %s", effect.side, order.get("id"), effect.size, effect.pair)
        else:
            raise TypeError(f"unknown side effect {effect!r}")

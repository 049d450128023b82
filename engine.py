"""Tick-driven moving-average crossover engine.

One ``TradingEngine`` owns one run: its settings, its ledger, its rolling
chart history and its scheduled tasks. Each tick takes one price sample from
the price source and then, in order:

1. appends the price and recomputes fast/slow MAs and the risk line,
2. waits for warm-up (both MAs for this tick and for the point two ticks back),
3. tries to sell (stop loss, then sell trigger, then bearish crossover),
4. tries to buy only if nothing was sold (bullish crossover under the risk line),
5. tracks the account value watermarks, queues side effects and notifies.

Side effects (Telegram, exchange orders) are only submitted to an
``EffectSink``; the engine never waits on them.
"""

import logging
from collections import deque
from typing import Callable, Deque, Dict, Optional

from indicators import calculate_sma, ma_periods, calculate_market_average, calculate_risk_line
from ledger import PositionLedger
from models import Account, ChartPoint, PricePoint, Settings, Trade, TradeType
from price_sources import PriceFetchError, PriceSource, now_ms
from scheduler import AsyncioScheduler, ScheduledTask
from side_effects import (
    EffectSink,
    MarketOrder,
    Notification,
    buy_message,
    duration_message,
    error_message,
    format_order_size,
    parse_chat_ids,
    sell_message,
    status_message,
)

logger = logging.getLogger(__name__)

REASON_STOP_LOSS = "Stop Loss"
REASON_SELL_TRIGGER = "Sell Trigger"
REASON_CROSSOVER = "MACD Crossover"

DEFAULT_HISTORY_LIMIT = 500
DEFAULT_LIVE_INTERVAL_MS = 60_000

PERIODIC_INTERVALS_MS: Dict[str, int] = {
    "30m": 30 * 60 * 1000,
    "1h": 60 * 60 * 1000,
    "12h": 12 * 60 * 60 * 1000,
    "24h": 24 * 60 * 60 * 1000,
    "48h": 48 * 60 * 60 * 1000,
}


class EngineStartError(Exception):
    """The run could not start (no initial live price)."""


class TradingEngine:
    def __init__(
        self,
        scheduler=None,
        effects: Optional[EffectSink] = None,
        on_update: Optional[Callable[["TradingEngine"], None]] = None,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        default_live_interval_ms: int = DEFAULT_LIVE_INTERVAL_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.scheduler = scheduler if scheduler is not None else AsyncioScheduler()
        self.effects = effects
        self.on_update = on_update
        self.history_limit = history_limit
        self.default_live_interval_ms = default_live_interval_ms
        self.clock = clock

        self.settings: Optional[Settings] = None
        self.source: Optional[PriceSource] = None
        self.ledger = PositionLedger()
        self.price_history: Deque[float] = deque(maxlen=history_limit)
        self.chart_history: Deque[ChartPoint] = deque(maxlen=history_limit)
        self.current_price = 0.0
        self.start_price = 0.0
        self.lowest_account_value = 0.0
        self.highest_account_value = 0.0
        self.is_running = False
        self.is_live = False
        self.started_at_ms = 0

        self._run_id = 0
        self._starting = False
        self._fetch_in_flight = False
        self._tick_task: Optional[ScheduledTask] = None
        self._status_task: Optional[ScheduledTask] = None

    # --- Read-only views ---

    @property
    def account(self) -> Account:
        return self.ledger.account

    @property
    def tick_index(self) -> Optional[int]:
        return getattr(self.source, "index", None)

    def account_value(self) -> float:
        return self.ledger.account.value_at(self.current_price)

    def profit(self) -> float:
        if self.settings is None:
            return 0.0
        return self.account_value() - self.settings.initial_balance

    def progress_percent(self) -> float:
        return self.source.progress_percent() if self.source is not None else 0.0

    def tick_interval_ms(self) -> float:
        settings = self.settings
        if self.source is not None and self.source.is_replay:
            return settings.replay_speed_ms
        if settings.granularity_seconds:
            return settings.granularity_seconds * 1000
        return self.default_live_interval_ms

    # --- Lifecycle ---

    def reset(self, settings: Settings, source: PriceSource, is_live: bool = False) -> None:
        """Prepare a fresh run without scheduling anything."""
        self._run_id += 1
        self.settings = settings
        self.source = source
        self.is_live = is_live
        self.ledger.reset(settings.initial_balance)
        self.price_history = deque(maxlen=self.history_limit)
        self.chart_history = deque(maxlen=self.history_limit)
        self.current_price = 0.0
        self.start_price = 0.0
        self.lowest_account_value = settings.initial_balance
        self.highest_account_value = settings.initial_balance
        self._fetch_in_flight = False

    def seed(self, point: PricePoint, add_to_history: bool) -> None:
        self.current_price = point.price
        self.start_price = point.price
        if add_to_history:
            self.price_history.append(point.price)
            self.chart_history.append(ChartPoint(time=point.time, price=point.price))

    async def start(self, settings: Settings, source: PriceSource, is_live: bool = False) -> bool:
        """Start a run. Returns False if one is already running.

        Raises ``EngineStartError`` when a live source cannot deliver the
        first price; the engine then stays idle.
        """
        if self.is_running or self._starting:
            return False
        self._starting = True
        try:
            self.reset(settings, source, is_live)
            try:
                first = await source.initial_price(settings.trading_pair)
            except PriceFetchError as exc:
                raise EngineStartError(f"could not fetch initial price for {settings.trading_pair}") from exc
            if first is not None:
                # A replayed first point is consumed by the first tick, not here.
                self.seed(first, add_to_history=not source.is_replay)
            elif not source.is_replay:
                raise EngineStartError(f"no initial price for {settings.trading_pair}")

            self.is_running = True
            self.started_at_ms = self.clock()
            self._tick_task = self.scheduler.schedule(self.tick_interval_ms(), self.execute_tick, name="tick")
            self._schedule_status_messages()
        finally:
            self._starting = False

        logger.info(
            "Started %s run for %s (live orders: %s, tick every %sms)",
            "replay" if source.is_replay else "live",
            settings.trading_pair,
            is_live,
            self.tick_interval_ms(),
        )
        self._notify()
        return True

    def stop(self) -> None:
        """Stop the run. Safe to call at any time, any number of times."""
        if not self.is_running:
            return
        self.is_running = False
        for task in (self._tick_task, self._status_task):
            if task is not None:
                task.cancel()
        self._tick_task = None
        self._status_task = None
        logger.info("Stopped run: %d trades, profit %.2f", len(self.ledger.trades), self.profit())
        self._notify()

    def update_settings(self, partial: Dict) -> bool:
        """Apply a partial settings update to the running session.

        Ignored (returns False) while idle. Raises ``pydantic.ValidationError``
        on invalid values, leaving the current settings in place.
        """
        if not self.is_running:
            return False
        old_interval = self.tick_interval_ms()
        old_telegram = self.settings.telegram_settings
        self.settings = self.settings.merged(partial)

        if self.tick_interval_ms() != old_interval and self._tick_task is not None:
            self._tick_task.cancel()
            self._tick_task = self.scheduler.schedule(self.tick_interval_ms(), self.execute_tick, name="tick")
        if self.settings.telegram_settings != old_telegram:
            self._schedule_status_messages()
        return True

    # --- Tick processing ---

    async def execute_tick(self) -> None:
        if not self.is_running or self.settings is None:
            return
        source = self.source

        if source.is_replay:
            point = await source.next_price(self.settings.trading_pair)
            if point is None:
                # Replay exhausted: terminal, not an error.
                self.stop()
                return
            self.process_price(point)
            return

        if self._fetch_in_flight:
            return
        self._fetch_in_flight = True
        run_id = self._run_id
        try:
            if self._duration_elapsed():
                self._submit_notification(
                    duration_message(self.settings.trading_pair, self.settings.simulation_duration),
                    enabled=True,
                )
                self.stop()
                return
            try:
                point = await source.next_price(self.settings.trading_pair)
            except PriceFetchError as exc:
                logger.warning("Skipping tick: %s", exc)
                self._submit_notification(
                    error_message(str(exc)),
                    enabled=self.settings.telegram_settings.enable_error_notifications,
                )
                return
            if run_id != self._run_id or not self.is_running:
                # Stopped (or restarted) while the fetch was outstanding.
                return
            if point is None:
                self.stop()
                return
            self.process_price(point)
        finally:
            if run_id == self._run_id:
                self._fetch_in_flight = False

    def process_price(self, point: PricePoint) -> Optional[Trade]:
        """Run one tick against ``point``; returns the executed trade, if any."""
        settings = self.settings
        price = point.price

        self.price_history.append(price)
        fast_period, slow_period = ma_periods(settings.dips_sensitivity)
        fast_ma = calculate_sma(self.price_history, fast_period)
        slow_ma = calculate_sma(self.price_history, slow_period)
        risk_line = calculate_risk_line(calculate_market_average(self.price_history), settings.risk_level)

        prev_fast_ma = prev_slow_ma = None
        if len(self.chart_history) > 1:
            prev = self.chart_history[-2]
            prev_fast_ma, prev_slow_ma = prev.fast_ma, prev.slow_ma

        self.chart_history.append(
            ChartPoint(time=point.time, price=price, fast_ma=fast_ma, slow_ma=slow_ma, risk_line=risk_line)
        )
        self.current_price = price

        if fast_ma is None or slow_ma is None or prev_fast_ma is None or prev_slow_ma is None:
            self._notify()
            return None

        trade = self._evaluate_sell(point, fast_ma, slow_ma, prev_fast_ma, prev_slow_ma)
        if trade is None:
            trade = self._evaluate_buy(point, fast_ma, slow_ma, prev_fast_ma, prev_slow_ma, risk_line)

        value = self.account_value()
        if value < self.lowest_account_value:
            self.lowest_account_value = value
        if value > self.highest_account_value:
            self.highest_account_value = value

        if trade is not None:
            self._emit_trade_effects(trade)
        self._notify()
        return trade

    def _evaluate_sell(self, point: PricePoint, fast_ma: float, slow_ma: float,
                       prev_fast_ma: float, prev_slow_ma: float) -> Optional[Trade]:
        settings = self.settings
        positions = self.ledger.open_positions
        price = point.price

        for index, position in enumerate(positions):
            if position.price * (1 - settings.stop_loss_percentage / 100) >= price:
                return self._close(index, point, REASON_STOP_LOSS)

        if settings.sell_trigger_percentage > 0:
            for index, position in enumerate(positions):
                if position.price * (1 + settings.sell_trigger_percentage / 100) <= price:
                    return self._close(index, point, REASON_SELL_TRIGGER)

        bearish = fast_ma < slow_ma and prev_fast_ma >= prev_slow_ma
        if bearish and positions:
            # The crossover is a global signal: always the oldest position.
            return self._close(0, point, REASON_CROSSOVER)
        return None

    def _evaluate_buy(self, point: PricePoint, fast_ma: float, slow_ma: float,
                      prev_fast_ma: float, prev_slow_ma: float,
                      risk_line: Optional[float]) -> Optional[Trade]:
        settings = self.settings
        bullish = fast_ma > slow_ma and prev_fast_ma <= prev_slow_ma
        if not bullish or not self.ledger.has_capacity(settings.max_concurrent_positions):
            return None
        if risk_line is None or point.price >= risk_line:
            return None

        notional = self.ledger.buy_notional(settings.trade_amount_percentage)
        if notional is None:
            return None
        trade = self.ledger.open_position(point.price, notional / point.price, point.time, REASON_CROSSOVER)
        logger.info("BUY %.6f @ %.2f (%s)", trade.amount, trade.price, trade.reason)
        return trade

    def _close(self, index: int, point: PricePoint, reason: str) -> Trade:
        trade = self.ledger.close_position(index, point.price, point.time, reason)
        logger.info("SELL %.6f @ %.2f (%s)", trade.amount, trade.price, trade.reason)
        return trade

    def _duration_elapsed(self) -> bool:
        minutes = self.settings.simulation_duration
        if minutes <= 0:
            return False
        return self.clock() - self.started_at_ms >= minutes * 60_000

    # --- Side effects ---

    def _submit_notification(self, message: str, enabled: bool) -> None:
        telegram = self.settings.telegram_settings
        if self.effects is None or not enabled or not telegram.can_send:
            return
        self.effects.submit(Notification(telegram.bot_token, parse_chat_ids(telegram.chat_id), message))

    def _emit_trade_effects(self, trade: Trade) -> None:
        telegram = self.settings.telegram_settings
        if trade.type is TradeType.BUY:
            self._submit_notification(buy_message(trade.price, trade.amount, trade.reason),
                                      enabled=telegram.enable_buy_notifications)
        else:
            self._submit_notification(sell_message(trade.price, trade.amount, trade.reason),
                                      enabled=telegram.enable_sell_notifications)
        if self.is_live and self.effects is not None:
            self.effects.submit(MarketOrder(
                pair=self.settings.trading_pair,
                side=trade.type.value.lower(),
                size=format_order_size(trade.amount),
            ))

    def _schedule_status_messages(self) -> None:
        if self._status_task is not None:
            self._status_task.cancel()
            self._status_task = None
        telegram = self.settings.telegram_settings
        if self.effects is None or not telegram.enable_periodic_messages or not telegram.can_send:
            return
        interval = PERIODIC_INTERVALS_MS.get(telegram.periodic_message_interval, PERIODIC_INTERVALS_MS["1h"])
        self._status_task = self.scheduler.schedule(interval, self.send_status_message, name="status")

    async def send_status_message(self) -> None:
        if not self.is_running:
            return
        self._submit_notification(
            status_message(self.current_price, self.account_value(), self.profit(),
                           len(self.ledger.open_positions)),
            enabled=True,
        )

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self)

"""Engine tests: warm-up, sell/buy ordering, replay lifecycle and live ticks.

Ticks are driven either directly through ``process_price`` or through a
``ManualScheduler`` so nothing depends on wall-clock timing.
"""

import asyncio
import logging
import random

import pytest
from pydantic import ValidationError

from engine import (
	REASON_CROSSOVER,
	REASON_SELL_TRIGGER,
	REASON_STOP_LOSS,
	EngineStartError,
	TradingEngine,
)
from models import PricePoint, Settings, TelegramSettings, TradeType
from price_sources import LivePriceSource, PriceFetchError, ReplayPriceSource
from scheduler import ManualScheduler
from side_effects import MarketOrder, Notification, format_order_size


class RecordingSink:
	def __init__(self):
		self.effects = []

	def submit(self, effect):
		self.effects.append(effect)


class FixedProvider:
	def __init__(self, price=100.0):
		self.price = price
		self.calls = 0

	async def get_price(self, pair):
		self.calls += 1
		return self.price


class FailingProvider:
	def __init__(self, fail_from_call=1):
		self.calls = 0
		self.fail_from_call = fail_from_call

	async def get_price(self, pair):
		self.calls += 1
		if self.calls >= self.fail_from_call:
			raise RuntimeError("exchange unavailable")
		return 100.0


class BlockingProvider:
	"""First call answers at once, later calls wait for ``release``."""

	def __init__(self):
		self.calls = 0
		self.release = asyncio.Event()

	async def get_price(self, pair):
		self.calls += 1
		if self.calls > 1:
			await self.release.wait()
		return 100.0


TESTED_TELEGRAM = TelegramSettings(
	bot_token="token",
	chat_id="1,2",
	is_tested=True,
	enable_error_notifications=True,
	enable_buy_notifications=True,
	enable_sell_notifications=True,
)


def ready_engine(effects=None, is_live=False, **overrides):
	engine = TradingEngine(scheduler=ManualScheduler(), effects=effects)
	engine.reset(Settings(**overrides), ReplayPriceSource([]), is_live=is_live)
	return engine


def feed(engine, prices, start=0):
	trades = []
	for i, price in enumerate(prices):
		trade = engine.process_price(PricePoint(time=(start + i) * 1000, price=price))
		if trade is not None:
			trades.append(trade)
	return trades


def test_no_decisions_during_warm_up():
	# dips 50 -> slow period 58, so 40 points never produce both MAs
	engine = ready_engine(dips_sensitivity=50)
	trades = feed(engine, [100 + (i % 7) * 3 for i in range(40)])
	assert trades == []
	assert all("slowMA" not in p.to_wire() for p in engine.chart_history)
	assert len(engine.chart_history) == 40


def test_bullish_crossover_under_risk_line_buys():
	engine = ready_engine(dips_sensitivity=100, risk_level=50)
	decline = [200 - i for i in range(30)]  # 200 .. 171
	rise = [172 + i for i in range(6)]  # 172 .. 177
	trades = feed(engine, decline + rise)

	assert len(trades) == 1
	buy = trades[0]
	assert buy.type is TradeType.BUY
	assert buy.price == 177
	assert buy.reason == REASON_CROSSOVER
	assert buy.amount == pytest.approx(200 / 177)
	assert engine.account.quote == pytest.approx(800.0)
	assert engine.ledger.open_positions == [buy]


def test_rising_series_trades_are_consistent():
	engine = ready_engine(dips_sensitivity=100)
	feed(engine, [100 + i for i in range(101)])
	buys = [t for t in engine.ledger.trades if t.type is TradeType.BUY]
	assert len(buys) <= 1
	seen_buys = 0
	for trade in engine.ledger.trades:
		if trade.type is TradeType.BUY:
			seen_buys += 1
		else:
			assert seen_buys > 0


def warmed_engine(effects=None, is_live=False, **overrides):
	settings = dict(dips_sensitivity=100)
	settings.update(overrides)
	engine = ready_engine(effects=effects, is_live=is_live, **settings)
	feed(engine, [1000.0] * 20)
	return engine


def test_stop_loss_closes_position():
	engine = warmed_engine(stop_loss_percentage=5)
	engine.ledger.open_position(1000.0, 0.2, time=1)
	trade = engine.process_price(PricePoint(time=99_000, price=950.0))
	assert trade.type is TradeType.SELL
	assert trade.reason == REASON_STOP_LOSS
	assert trade.amount == 0.2
	assert engine.ledger.open_positions == []


def test_stop_loss_is_checked_before_sell_trigger_on_any_position():
	engine = warmed_engine(stop_loss_percentage=5, sell_trigger_percentage=5)
	engine.ledger.open_position(900.0, 0.1, time=1)  # +5.6% at 950
	loser = engine.ledger.open_position(1000.0, 0.1, time=2)  # -5% at 950
	trade = engine.process_price(PricePoint(time=99_000, price=950.0))
	assert trade.reason == REASON_STOP_LOSS
	assert [p.price for p in engine.ledger.open_positions] == [900.0]
	assert loser not in engine.ledger.open_positions


def test_bearish_crossover_sells_oldest_position():
	engine = warmed_engine(stop_loss_percentage=50, sell_trigger_percentage=0)
	first = engine.ledger.open_position(1000.0, 0.1, time=1)
	second = engine.ledger.open_position(1001.0, 0.1, time=2)
	third = engine.ledger.open_position(1002.0, 0.1, time=3)

	# fast 998 < slow 999.33 while both were 1000 two ticks back
	trade = engine.process_price(PricePoint(time=99_000, price=990.0))
	assert trade.type is TradeType.SELL
	assert trade.reason == REASON_CROSSOVER
	assert trade.amount == first.amount
	assert engine.ledger.open_positions == [second, third]


def test_sell_blocks_buy_in_same_tick():
	engine = warmed_engine(risk_level=100, sell_trigger_percentage=5)
	engine.ledger.open_position(1000.0, 0.2, time=1)
	before = len(engine.ledger.trades)

	trade = engine.process_price(PricePoint(time=99_000, price=1060.0))
	assert trade.type is TradeType.SELL
	assert trade.reason == REASON_SELL_TRIGGER
	assert len(engine.ledger.trades) == before + 1


def test_zero_sell_trigger_disables_trigger_check():
	engine = warmed_engine(risk_level=100, sell_trigger_percentage=0)
	engine.ledger.open_position(1000.0, 0.2, time=1)

	trade = engine.process_price(PricePoint(time=99_000, price=1060.0))
	assert trade.type is TradeType.BUY
	assert len(engine.ledger.open_positions) == 2


def test_buy_skipped_at_capacity():
	engine = warmed_engine(risk_level=100, max_concurrent_positions=1)
	engine.ledger.open_position(1000.0, 0.2, time=1)
	assert engine.process_price(PricePoint(time=99_000, price=1060.0)) is None


def test_trade_emits_notification_and_live_order():
	sink = RecordingSink()
	engine = warmed_engine(effects=sink, is_live=True, telegram_settings=TESTED_TELEGRAM)
	engine.ledger.open_position(1000.0, 0.123456789, time=1)
	engine.process_price(PricePoint(time=99_000, price=950.0))

	notification, order = sink.effects
	assert isinstance(notification, Notification)
	assert notification.chat_ids == ("1", "2")
	assert "Sell executed" in notification.message
	assert order == MarketOrder(pair="BCH-EUR", side="sell", size=format_order_size(0.123456789))


def test_paper_run_places_no_orders():
	sink = RecordingSink()
	engine = warmed_engine(effects=sink, is_live=False)
	engine.ledger.open_position(1000.0, 0.2, time=1)
	engine.process_price(PricePoint(time=99_000, price=950.0))
	assert not any(isinstance(e, MarketOrder) for e in sink.effects)


def test_watermarks_track_account_value():
	engine = warmed_engine()
	engine.ledger.open_position(1000.0, 0.2, time=1)
	engine.process_price(PricePoint(time=99_000, price=1000.0))
	engine.process_price(PricePoint(time=100_000, price=1001.0))
	assert engine.highest_account_value == pytest.approx(1000.2)
	assert engine.lowest_account_value == pytest.approx(1000.0)


@pytest.mark.parametrize("seed", range(40))
def test_account_and_capacity_hold_on_every_tick(seed):
	engine = ready_engine(
		dips_sensitivity=100,
		trade_amount_percentage=100,
		max_concurrent_positions=3,
		stop_loss_percentage=2,
		sell_trigger_percentage=2,
	)
	rng = random.Random(seed)
	price = rng.uniform(0.5, 5.0)
	for tick in range(400):
		price = max(0.01, price * (1 + (rng.random() - 0.5) * 0.04))
		engine.process_price(PricePoint(time=tick * 1000, price=price))
		assert engine.account.quote >= 0.0
		assert engine.account.base >= 0.0
		assert len(engine.ledger.open_positions) <= 3


# --- Lifecycle through the scheduler ---

@pytest.mark.asyncio
async def test_replay_stops_on_tick_after_last_point():
	scheduler = ManualScheduler()
	engine = TradingEngine(scheduler=scheduler)
	points = [PricePoint(time=i, price=100.0 + i) for i in range(3)]
	assert await engine.start(Settings(replay_speed_ms=50), ReplayPriceSource(points)) is True
	assert engine.current_price == 100.0
	assert len(engine.chart_history) == 0

	for _ in range(3):
		await scheduler.advance(50)
	assert engine.is_running
	assert engine.progress_percent() == 100.0

	await scheduler.advance(50)
	assert not engine.is_running
	assert engine.tick_index == 3
	assert scheduler.active() == []


@pytest.mark.asyncio
async def test_empty_replay_stops_on_first_tick():
	scheduler = ManualScheduler()
	engine = TradingEngine(scheduler=scheduler)
	assert await engine.start(Settings(), ReplayPriceSource([]))
	await scheduler.advance(50)
	assert not engine.is_running
	assert engine.ledger.trades == []


@pytest.mark.asyncio
async def test_start_while_running_is_noop():
	engine = TradingEngine(scheduler=ManualScheduler())
	source = ReplayPriceSource([PricePoint(time=0, price=10.0)])
	assert await engine.start(Settings(), source)
	assert await engine.start(Settings(trading_pair="BTC-EUR"), ReplayPriceSource([])) is False
	assert engine.settings.trading_pair == "BCH-EUR"
	assert engine.source is source


@pytest.mark.asyncio
async def test_stop_is_idempotent():
	updates = []
	engine = TradingEngine(scheduler=ManualScheduler(), on_update=lambda e: updates.append(e.is_running))
	engine.stop()
	assert updates == []
	await engine.start(Settings(), ReplayPriceSource([PricePoint(time=0, price=10.0)]))
	engine.stop()
	engine.stop()
	assert updates == [True, False]


@pytest.mark.asyncio
async def test_live_start_fails_without_initial_price():
	engine = TradingEngine(scheduler=ManualScheduler())
	with pytest.raises(EngineStartError):
		await engine.start(Settings(), LivePriceSource(FailingProvider()))
	assert not engine.is_running


@pytest.mark.asyncio
async def test_live_start_seeds_history():
	engine = TradingEngine(scheduler=ManualScheduler())
	await engine.start(Settings(), LivePriceSource(FixedProvider(250.0)))
	assert engine.current_price == 250.0
	assert list(engine.price_history) == [250.0]
	assert engine.tick_interval_ms() == 60_000


@pytest.mark.asyncio
async def test_live_fetch_failure_skips_tick(caplog):
	sink = RecordingSink()
	engine = TradingEngine(scheduler=ManualScheduler(), effects=sink)
	await engine.start(Settings(telegram_settings=TESTED_TELEGRAM), LivePriceSource(FailingProvider(fail_from_call=2)))

	with caplog.at_level(logging.WARNING, logger="engine"):
		await engine.execute_tick()
	assert engine.is_running
	assert len(engine.price_history) == 1
	assert "Skipping tick" in caplog.text
	assert len(sink.effects) == 1
	assert "Error" in sink.effects[0].message


@pytest.mark.asyncio
async def test_live_tick_is_skipped_while_fetch_in_flight():
	provider = BlockingProvider()
	engine = TradingEngine(scheduler=ManualScheduler())
	await engine.start(Settings(), LivePriceSource(provider))

	first = asyncio.create_task(engine.execute_tick())
	await asyncio.sleep(0)
	await engine.execute_tick()
	assert provider.calls == 2

	provider.release.set()
	await first
	assert len(engine.price_history) == 2


@pytest.mark.asyncio
async def test_fetch_completing_after_stop_is_discarded():
	provider = BlockingProvider()
	engine = TradingEngine(scheduler=ManualScheduler())
	await engine.start(Settings(), LivePriceSource(provider))

	pending = asyncio.create_task(engine.execute_tick())
	await asyncio.sleep(0)
	engine.stop()
	provider.release.set()
	await pending
	assert list(engine.price_history) == [100.0]


@pytest.mark.asyncio
async def test_run_stops_after_duration():
	now = [0]
	sink = RecordingSink()
	engine = TradingEngine(scheduler=ManualScheduler(), effects=sink, clock=lambda: now[0])
	settings = Settings(simulation_duration=1, telegram_settings=TESTED_TELEGRAM)
	await engine.start(settings, LivePriceSource(FixedProvider()))

	now[0] = 30_000
	await engine.execute_tick()
	assert engine.is_running

	now[0] = 60_000
	await engine.execute_tick()
	assert not engine.is_running
	assert "stopped" in sink.effects[-1].message


@pytest.mark.asyncio
async def test_periodic_status_messages():
	sink = RecordingSink()
	scheduler = ManualScheduler()
	engine = TradingEngine(scheduler=scheduler, effects=sink)
	telegram = TESTED_TELEGRAM.model_copy(update={"enable_periodic_messages": True, "periodic_message_interval": "30m"})
	await engine.start(Settings(telegram_settings=telegram), LivePriceSource(FixedProvider()))
	assert sorted(t.name for t in scheduler.active()) == ["status", "tick"]

	await scheduler.advance(30 * 60 * 1000)
	status = [e for e in sink.effects if "Status update" in e.message]
	assert len(status) == 1

	engine.stop()
	assert scheduler.active() == []


# --- Settings updates ---

@pytest.mark.asyncio
async def test_update_settings_ignored_while_idle():
	engine = TradingEngine(scheduler=ManualScheduler())
	assert engine.update_settings({"riskLevel": 80}) is False
	assert engine.settings is None


@pytest.mark.asyncio
async def test_update_settings_reschedules_tick():
	scheduler = ManualScheduler()
	engine = TradingEngine(scheduler=scheduler)
	await engine.start(Settings(replay_speed_ms=50), ReplayPriceSource([PricePoint(time=0, price=1.5)] * 5))

	assert engine.update_settings({"replaySpeedMs": 200, "riskLevel": 80})
	assert engine.settings.risk_level == 80
	(tick,) = scheduler.active()
	assert tick.interval_ms == 200


@pytest.mark.asyncio
async def test_invalid_update_leaves_settings_untouched():
	engine = TradingEngine(scheduler=ManualScheduler())
	await engine.start(Settings(), ReplayPriceSource([PricePoint(time=0, price=1.5)]))
	with pytest.raises(ValidationError):
		engine.update_settings({"riskLevel": 150})
	assert engine.settings.risk_level == 50

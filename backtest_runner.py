# src/backtest_runner.py
"""
Headless backtests of the crossover engine over recorded prices.

What this provides:
- run_headless_simulation: the live engine's tick logic applied synchronously
  to a price list (no timers, no notifications, no orders)
- find_optimal_settings: grid search over risk level, dips sensitivity,
  stop loss and sell trigger, keeping the most profitable combination
- read_price_csv: OHLCV CSV -> time-sorted PricePoints (close price)
- CLI:
    python backtest_runner.py prices.csv
    python backtest_runner.py prices.csv --optimize

Outputs (CLI):
  * Trades list (stdout)
  * Total profit vs buy-and-hold (stdout)
  * Lowest/highest account value and max drawdown (stdout)

No fees or slippage are modelled.
"""

from __future__ import annotations

import argparse
import csv
import itertools
import os
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from pydantic.alias_generators import to_camel

from engine import TradingEngine
from logging_setup import setup_logging
from models import OptimizationResult, PricePoint, Settings, SimulationSummary, TradeType
from price_sources import ReplayPriceSource
from scheduler import ManualScheduler

DEFAULT_GRID: Dict[str, List[float]] = {
    "risk_level": [10, 20, 30, 40, 50, 60, 70, 80, 90],
    "dips_sensitivity": [10, 20, 30, 40, 50, 60, 70, 80, 90],
    "stop_loss_percentage": [2, 5, 10, 15],
    "sell_trigger_percentage": [0, 2, 5, 10, 15],  # 0 = sell on crossover only
}


# --- Metrics ---

def max_drawdown(equity_curve: Iterable[float]) -> float:
    max_eq = -float("inf")
    max_dd = 0.0
    for eq in equity_curve:
        if eq > max_eq:
            max_eq = eq
        dd = max_eq - eq
        if dd > max_dd:
            max_dd = dd
    return max_dd


def buy_and_hold_profit(initial_balance: float, points: Sequence[PricePoint]) -> float:
    if len(points) < 2:
        return 0.0
    amount = initial_balance / points[0].price
    return amount * points[-1].price - initial_balance


# --- Simulation ---

def run_headless_simulation(settings: Settings, points: Sequence[PricePoint]) -> SimulationSummary:
    """Replay ``points`` through a fresh engine as fast as possible."""
    engine = TradingEngine(scheduler=ManualScheduler())
    source = ReplayPriceSource(points)
    engine.reset(settings, source)
    if source.points:
        engine.seed(source.points[0], add_to_history=False)

    equity_curve = [settings.initial_balance]
    while True:
        point = source.take()
        if point is None:
            break
        engine.process_price(point)
        equity_curve.append(engine.account_value())

    ledger = engine.ledger
    return SimulationSummary(
        total_profit=engine.profit(),
        buy_and_hold_profit=buy_and_hold_profit(settings.initial_balance, source.points),
        lowest_account_value=engine.lowest_account_value,
        highest_account_value=engine.highest_account_value,
        max_drawdown=max_drawdown(equity_curve),
        buy_count=ledger.buy_count(),
        sell_count=ledger.sell_count(),
        trades=list(ledger.trades),
    )


def find_optimal_settings(
    settings: Settings,
    points: Sequence[PricePoint],
    grid: Optional[Dict[str, List[float]]] = None,
    progress: Optional[Callable[[float], None]] = None,
) -> OptimizationResult:
    """Try every grid combination on time-sorted data; the first strictly best profit wins."""
    if len(points) < 2:
        raise ValueError("optimization needs at least two price points")
    grid = grid or DEFAULT_GRID
    data = sorted(points, key=lambda p: p.time)

    keys = list(grid)
    combos = list(itertools.product(*(grid[k] for k in keys)))
    best_profit = -float("inf")
    best = {k: getattr(settings, k) for k in keys}

    for done, values in enumerate(combos, start=1):
        candidate = settings.model_copy(update=dict(zip(keys, values)))
        profit = run_headless_simulation(candidate, data).total_profit
        if profit > best_profit:
            best_profit = profit
            best = dict(zip(keys, values))
        if progress is not None:
            progress(done / len(combos) * 100)

    return OptimizationResult(
        best_profit=best_profit,
        buy_and_hold_profit=buy_and_hold_profit(settings.initial_balance, data),
        optimal_settings={to_camel(k): v for k, v in best.items()},
        simulations_run=len(combos),
    )


# --- CSV ingestion ---

def read_price_csv(path: str) -> List[PricePoint]:
    """Read OHLCV CSV and return PricePoints (close price) in ascending time order.

    Expected columns (header order flexible):
    - timestamp (or time, datetime): epoch seconds, epoch milliseconds or ISO8601
    - close (or price)
    """
    if not os.path.exists(path):
        raise FileNotFoundError(path)

    rows: List[PricePoint] = []
    with open(path, "r", newline="") as f:
        reader = csv.reader(f)
        header = [h.strip().lower() for h in next(reader, [])]
        ts_idx = next((i for i, h in enumerate(header) if h in ("timestamp", "time", "datetime")), None)
        price_idx = next((i for i, h in enumerate(header) if h in ("close", "price")), None)
        if ts_idx is None or price_idx is None:
            raise ValueError(f"{path}: need a timestamp column and a close/price column, got {header}")

        for row in reader:
            if not row:
                continue
            try:
                time_ms = _parse_timestamp_ms(row[ts_idx])
                price = float(row[price_idx])
            except (ValueError, IndexError):
                continue
            if price > 0:
                rows.append(PricePoint(time=time_ms, price=price))

    rows.sort(key=lambda p: p.time)
    return rows


def _parse_timestamp_ms(val: str) -> int:
    val = val.strip()
    # Epoch seconds or milliseconds
    try:
        num = float(val)
    except ValueError:
        num = None
    if num is not None:
        return int(num) if num > 1e11 else int(num * 1000)
    # ISO8601
    try:
        dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Unrecognized timestamp: {val}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# --- Runner ---

def _settings_from_args(args: argparse.Namespace) -> Settings:
    return Settings(
        trading_pair=args.pair,
        dips_sensitivity=args.dips_sensitivity,
        risk_level=args.risk_level,
        stop_loss_percentage=args.stop_loss,
        sell_trigger_percentage=args.sell_trigger,
        initial_balance=args.initial_balance,
        trade_amount_percentage=args.trade_amount,
        max_concurrent_positions=args.max_positions,
    )


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Backtest the MA crossover engine on a price CSV")
    parser.add_argument("csv_path")
    parser.add_argument("--optimize", action="store_true", help="grid-search the strategy parameters first")
    parser.add_argument("--pair", default="BCH-EUR")
    parser.add_argument("--dips-sensitivity", type=float, default=50)
    parser.add_argument("--risk-level", type=float, default=50)
    parser.add_argument("--stop-loss", type=float, default=5)
    parser.add_argument("--sell-trigger", type=float, default=0)
    parser.add_argument("--initial-balance", type=float, default=1000)
    parser.add_argument("--trade-amount", type=float, default=20)
    parser.add_argument("--max-positions", type=int, default=5)
    args = parser.parse_args(argv)

    setup_logging("WARNING")
    points = read_price_csv(args.csv_path)
    settings = _settings_from_args(args)

    if args.optimize:
        result = find_optimal_settings(settings, points)
        print("==== Optimization ====")
        print(f"Simulations: {result.simulations_run}")
        print(f"Best profit: {result.best_profit:.2f}")
        print(f"Buy and hold: {result.buy_and_hold_profit:.2f}")
        for key, value in result.optimal_settings.items():
            print(f"  {key} = {value}")
        settings = settings.merged(result.optimal_settings)
        print()

    summary = run_headless_simulation(settings, points)

    print("==== Trades ====")
    for t in summary.trades:
        stamp = datetime.fromtimestamp(t.time / 1000, tz=timezone.utc).isoformat()
        marker = "+" if t.type is TradeType.BUY else "-"
        print(f"{stamp}\t{marker}{t.type.value}\tamount={t.amount:.6f}\tprice={t.price:.2f}\t{t.reason}")

    print("\n==== Summary ====")
    print(f"Total profit: {summary.total_profit:.2f}")
    print(f"Buy and hold profit: {summary.buy_and_hold_profit:.2f}")
    print(f"Lowest account value: {summary.lowest_account_value:.2f}")
    print(f"Highest account value: {summary.highest_account_value:.2f}")
    print(f"Max drawdown: {summary.max_drawdown:.2f}")
    print(f"Buys: {summary.buy_count}  Sells: {summary.sell_count}")


if __name__ == "__main__":
    main()

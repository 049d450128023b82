"""Moving-average indicators for the crossover strategy.

This module provides the Simple Moving Average (SMA) plus the two derived
quantities the engine needs on every tick: the fast/slow periods implied by
the dips sensitivity and the risk-adjusted buy ceiling ("risk line").

All functions are pure and accept any sequence of prices (list or
``collections.deque[float]``). The engine recomputes on demand from its
rolling history; only the trailing ``period`` prices are visited, so a call
costs O(period) regardless of the history length.
"""

import math
from itertools import islice
from typing import Optional, Sequence, Tuple

TREND_PERIOD = 50
TREND_MIN_POINTS = 10


def calculate_sma(prices: Sequence[float], period: int, min_points: Optional[int] = None) -> Optional[float]:
    """Compute the Simple Moving Average (SMA) of the last ``period`` prices.

    Contract:
    - Input: prices as a sequence, ``period`` > 0, optional ``min_points``
      (defaults to ``period``)
    - Output: float SMA for the trailing window, or ``None`` when fewer than
      ``min_points`` prices are available
    - Relaxed minimum: with ``min_points < period`` and
      ``min_points <= len(prices) < period`` the average is taken over all
      available prices, so long windows produce an early (noisier) value.
    """
    if period <= 0:
        raise ValueError("period must be > 0")
    if min_points is None:
        min_points = period

    n = len(prices)
    if n < min_points or n == 0:
        return None

    # Walk the trailing window from the right end without copying the deque.
    count = min(period, n)
    total = sum(float(p) for p in islice(reversed(prices), count))
    return total / count


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def ma_periods(dips_sensitivity: float) -> Tuple[int, int]:
    """Return ``(fast_period, slow_period)`` for a dips sensitivity in [0, 100].

    Lower sensitivity means longer periods, which smooth out noise:
    sensitivity 100 gives (5, 15), sensitivity 0 gives (50, 100).
    """
    fast = _round_half_up(5 + (100 - dips_sensitivity) * 0.45)
    slow = _round_half_up(15 + (100 - dips_sensitivity) * 0.85)
    return fast, slow


def calculate_market_average(prices: Sequence[float]) -> Optional[float]:
    """Trend average over the last 50 prices, available from 10 prices on."""
    return calculate_sma(prices, TREND_PERIOD, min_points=TREND_MIN_POINTS)


def calculate_risk_line(market_average: Optional[float], risk_level: float) -> Optional[float]:
    """Scale the trend average into a buy ceiling.

    Risk 10 -> 0.8 * average (buys only deep dips)
    Risk 50 -> 1.0 * average (neutral)
    Risk 90 -> 1.2 * average (buys even above the average)
    """
    if market_average is None:
        return None
    return market_average * (1 + (risk_level - 50) / 200)

# price_sources.py
# Tick sources for the trading engine: replay, live exchange price, simulated walk.
# Every source answers two questions:
#   initial_price(pair) -> first sample used to seed the run
#   next_price(pair)    -> next sample, or None once a replay is exhausted

import random
import time
from typing import List, Optional, Protocol, Sequence

from models import PricePoint


class PriceFetchError(Exception):
    """Transient failure to obtain a live price."""


class PriceProvider(Protocol):
    async def get_price(self, pair: str) -> float: ...


class PriceSource(Protocol):
    is_replay: bool

    async def initial_price(self, pair: str) -> Optional[PricePoint]: ...

    async def next_price(self, pair: str) -> Optional[PricePoint]: ...

    def progress_percent(self) -> float: ...


def now_ms() -> int:
    return int(time.time() * 1000)


class ReplayPriceSource:
    """Serve a recorded price sequence one point per tick."""

    is_replay = True

    def __init__(self, points: Sequence[PricePoint]):
        self.points: List[PricePoint] = list(points)
        self.index = 0

    def exhausted(self) -> bool:
        return self.index >= len(self.points)

    def take(self) -> Optional[PricePoint]:
        if self.exhausted():
            return None
        point = self.points[self.index]
        self.index += 1
        return point

    async def initial_price(self, pair: str) -> Optional[PricePoint]:
        # Peek only: the first point is still replayed by the first tick.
        return self.points[0] if self.points else None

    async def next_price(self, pair: str) -> Optional[PricePoint]:
        return self.take()

    def progress_percent(self) -> float:
        if not self.points:
            return 0.0
        return self.index / len(self.points) * 100


class LivePriceSource:
    """Fetch the current spot price from an exchange on every tick."""

    is_replay = False

    def __init__(self, provider: PriceProvider, clock=now_ms):
        self.provider = provider
        self.clock = clock

    async def _fetch(self, pair: str) -> PricePoint:
        try:
            price = await self.provider.get_price(pair)
        except PriceFetchError:
            raise
        except Exception as exc:
            raise PriceFetchError(f"price fetch for {pair} failed: {exc}") from exc
        return PricePoint(time=self.clock(), price=float(price))

    async def initial_price(self, pair: str) -> Optional[PricePoint]:
        return await self._fetch(pair)

    async def next_price(self, pair: str) -> Optional[PricePoint]:
        return await self._fetch(pair)

    def progress_percent(self) -> float:
        return 0.0


class SimulatedPriceSource:
    """Noisy random walk standing in for a live feed (no network).

    Each step moves the price by ``(u - 0.5 + drift) * volatility * price``
    with ``u`` uniform in [0, 1), floored at 1.0.
    """

    is_replay = False

    def __init__(self,
                 start_price: Optional[float] = None,
                 volatility: float = 0.008,
                 drift: float = 0.00005,
                 seed: Optional[int] = None,
                 clock=now_ms):
        self.rng = random.Random(seed)
        self.price = float(start_price) if start_price is not None else self.rng.random() * 800 + 400
        self.volatility = volatility
        self.drift = drift
        self.clock = clock

    async def initial_price(self, pair: str) -> Optional[PricePoint]:
        return PricePoint(time=self.clock(), price=self.price)

    async def next_price(self, pair: str) -> Optional[PricePoint]:
        change = (self.rng.random() - 0.5 + self.drift) * self.volatility * self.price
        self.price = max(self.price + change, 1.0)
        return PricePoint(time=self.clock(), price=round(self.price, 6))

    def progress_percent(self) -> float:
        return 0.0

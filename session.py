"""Session controller: one trading run plus the observers watching it."""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence

from engine import DEFAULT_HISTORY_LIMIT, DEFAULT_LIVE_INTERVAL_MS, EngineStartError, TradingEngine
from models import AccountOut, PricePoint, Settings, StateSnapshot
from price_sources import LivePriceSource, ReplayPriceSource, SimulatedPriceSource
from side_effects import SideEffectWorker

logger = logging.getLogger(__name__)

DEFAULT_MAX_OBSERVERS = 10


class ObserverLimitReached(Exception):
    """Raised by ``subscribe`` when the observer cap is reached."""


class Observer(Protocol):
    def push(self, message: Dict[str, Any]) -> None: ...

    def close(self) -> None: ...


class QueueObserver:
    """Buffers state messages for one subscriber until its reader picks them up.

    ``push`` never blocks: a full buffer raises ``asyncio.QueueFull`` and the
    session prunes the observer. After ``close`` the reader gets ``None``.
    """

    def __init__(self, maxsize: int = 64):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.closed = False

    def push(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise RuntimeError("observer is closed")
        self.queue.put_nowait(message)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        while not self.queue.empty():
            self.queue.get_nowait()
        self.queue.put_nowait(None)

    async def get(self) -> Optional[Dict[str, Any]]:
        return await self.queue.get()


class SessionController:
    def __init__(
        self,
        exchange=None,
        worker: Optional[SideEffectWorker] = None,
        scheduler=None,
        max_observers: int = DEFAULT_MAX_OBSERVERS,
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        default_live_interval_ms: int = DEFAULT_LIVE_INTERVAL_MS,
    ):
        self.exchange = exchange
        self.worker = worker
        self.max_observers = max_observers
        self.observers: List[Observer] = []
        self.engine = TradingEngine(
            scheduler=scheduler,
            effects=worker,
            on_update=self._on_engine_update,
            history_limit=history_limit,
            default_live_interval_ms=default_live_interval_ms,
        )

    @property
    def is_running(self) -> bool:
        return self.engine.is_running

    # --- Control ---

    async def start(
        self,
        settings: Settings,
        replay_data: Optional[Sequence[PricePoint]] = None,
        is_live: bool = False,
        simulate: bool = False,
        seed: Optional[int] = None,
    ) -> bool:
        """Start a run; False if one is already running.

        ``replay_data`` (even empty) selects a replay run, ``simulate`` a
        random-walk feed, otherwise live exchange prices are used. Real
        orders are only ever placed for live exchange prices.
        """
        if self.engine.is_running:
            return False
        if replay_data is not None:
            source = ReplayPriceSource(replay_data)
        elif simulate:
            source = SimulatedPriceSource(seed=seed)
        else:
            if self.exchange is None:
                raise EngineStartError("no exchange configured for live prices")
            source = LivePriceSource(self.exchange)

        if is_live and not isinstance(source, LivePriceSource):
            logger.warning("Ignoring isLive: orders are only placed for live exchange prices")
            is_live = False

        if self.worker is not None:
            self.worker.start()
        return await self.engine.start(settings, source, is_live=is_live)

    def stop(self) -> None:
        self.engine.stop()

    def update_settings(self, partial: Dict[str, Any]) -> bool:
        return self.engine.update_settings(partial)

    async def close(self) -> None:
        self.stop()
        for observer in list(self.observers):
            self.unsubscribe(observer)
            observer.close()
        if self.worker is not None:
            await self.worker.close()

    # --- Snapshots ---

    def get_snapshot(self) -> StateSnapshot:
        engine = self.engine
        settings = engine.settings
        account = engine.account
        return StateSnapshot(
            is_running=engine.is_running,
            is_live=engine.is_live,
            trading_pair=settings.trading_pair if settings is not None else None,
            account=AccountOut(base=account.base, quote=account.quote) if settings is not None else None,
            current_price=engine.current_price,
            trades=[t.to_wire() for t in engine.ledger.trades],
            open_positions=[t.to_wire() for t in engine.ledger.open_positions],
            chart_history=[p.to_wire() for p in engine.chart_history],
            profit=engine.profit(),
            replay_progress_percent=engine.progress_percent(),
            lowest_account_value=engine.lowest_account_value,
            highest_account_value=engine.highest_account_value,
        )

    def state_message(self) -> Dict[str, Any]:
        return {"type": "state", "data": self.get_snapshot().model_dump(by_alias=True)}

    # --- Observers ---

    def subscribe(self, observer: Observer) -> None:
        if len(self.observers) >= self.max_observers:
            logger.warning("Rejecting observer: limit of %d reached", self.max_observers)
            raise ObserverLimitReached(f"observer limit of {self.max_observers} reached")
        self.observers.append(observer)

    def unsubscribe(self, observer: Observer) -> None:
        if observer in self.observers:
            self.observers.remove(observer)

    def broadcast(self) -> None:
        if not self.observers:
            return
        message = self.state_message()
        for observer in list(self.observers):
            try:
                observer.push(message)
            except Exception as exc:
                logger.warning("Pruning unreachable observer: %r", exc)
                self.unsubscribe(observer)
                observer.close()

    def _on_engine_update(self, engine: TradingEngine) -> None:
        self.broadcast()

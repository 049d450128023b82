# src/ledger.py
import math
from typing import List, Optional

from models import Account, Trade, TradeType

# Buys below this quote notional are skipped.
DUST_NOTIONAL = 1.0


class PositionLedger:
    """Open positions (FIFO), trade log and the two-asset account.

    Only the trading engine mutates a ledger. An open position is the BUY
    trade that opened it (same object in both lists) until a SELL closes it.
    """

    def __init__(self, initial_balance: float = 0.0):
        self.account = Account(base=0.0, quote=float(initial_balance))
        self.trades: List[Trade] = []
        self.open_positions: List[Trade] = []
        self._next_id = 0

    def reset(self, initial_balance: float) -> None:
        self.account = Account(base=0.0, quote=float(initial_balance))
        self.trades = []
        self.open_positions = []
        self._next_id = 0

    def _take_id(self) -> int:
        trade_id = self._next_id
        self._next_id += 1
        return trade_id

    def buy_notional(self, trade_amount_percentage: float) -> Optional[float]:
        """Quote amount a new position may spend, or None if the buy must be skipped."""
        notional = self.account.quote * (trade_amount_percentage / 100)
        if self.account.quote >= notional and notional > DUST_NOTIONAL:
            return notional
        return None

    def has_capacity(self, max_concurrent_positions: int) -> bool:
        return len(self.open_positions) < max_concurrent_positions

    def open_position(self, price: float, amount: float, time: int, reason: str = "MACD Crossover") -> Trade:
        trade = Trade(
            id=self._take_id(),
            type=TradeType.BUY,
            price=price,
            amount=amount,
            time=time,
            reason=reason,
        )
        cost = amount * price
        # amount = notional / price can round back to a hair above the notional
        if cost > self.account.quote and math.isclose(cost, self.account.quote, rel_tol=1e-9):
            cost = self.account.quote
        self.account = Account(
            base=self.account.base + amount,
            quote=self.account.quote - cost,
        )
        self.open_positions.append(trade)
        self.trades.append(trade)
        return trade

    def close_position(self, index: int, sell_price: float, time: int, reason: str) -> Trade:
        position = self.open_positions.pop(index)
        trade = Trade(
            id=self._take_id(),
            type=TradeType.SELL,
            price=sell_price,
            amount=position.amount,
            time=time,
            reason=reason,
        )
        self.account = Account(
            base=self.account.base - position.amount if self.open_positions else 0.0,
            quote=self.account.quote + position.amount * sell_price,
        )
        self.trades.append(trade)
        return trade

    def buy_count(self) -> int:
        return sum(1 for t in self.trades if t.type is TradeType.BUY)

    def sell_count(self) -> int:
        return sum(1 for t in self.trades if t.type is TradeType.SELL)

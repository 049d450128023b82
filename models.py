# src/models.py
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# --- Engine-side records (plain dataclasses, mutated only by the engine) ---

@dataclass(frozen=True)
class PricePoint:
    time: int        # epoch milliseconds
    price: float


@dataclass
class ChartPoint:
    time: int
    price: float
    fast_ma: Optional[float] = None
    slow_ma: Optional[float] = None
    risk_line: Optional[float] = None

    def to_wire(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"time": self.time, "price": self.price}
        if self.fast_ma is not None:
            data["fastMA"] = self.fast_ma
        if self.slow_ma is not None:
            data["slowMA"] = self.slow_ma
        if self.risk_line is not None:
            data["riskLine"] = self.risk_line
        return data


class TradeType(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


@dataclass(frozen=True)
class Trade:
    """One executed trade. An open BUY trade is also the position record."""
    id: int
    type: TradeType
    price: float
    amount: float    # base currency quantity
    time: int
    reason: str

    def to_wire(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "price": self.price,
            "amount": self.amount,
            "time": self.time,
            "reason": self.reason,
        }


@dataclass
class Account:
    base: float = 0.0
    quote: float = 0.0

    def value_at(self, price: float) -> float:
        return self.quote + self.base * price


@dataclass(frozen=True)
class Candle:
    time: int        # epoch milliseconds, candle open
    low: float
    high: float
    open: float
    close: float
    volume: float


@dataclass
class SimulationSummary:
    total_profit: float
    buy_and_hold_profit: float
    lowest_account_value: float
    highest_account_value: float
    max_drawdown: float
    buy_count: int
    sell_count: int
    trades: List[Trade] = field(default_factory=list)


# --- Trading settings (immutable, replaced wholesale on update) ---

class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class TelegramSettings(_WireModel):
    bot_token: str = ""
    chat_id: str = ""  # comma-separated chat ids
    is_tested: bool = False
    enable_periodic_messages: bool = False
    periodic_message_interval: Literal["30m", "1h", "12h", "24h", "48h"] = "1h"
    enable_error_notifications: bool = False
    enable_buy_notifications: bool = False
    enable_sell_notifications: bool = False

    @property
    def can_send(self) -> bool:
        return self.is_tested and bool(self.bot_token) and bool(self.chat_id.strip())


class Settings(_WireModel):
    trading_pair: str = "BCH-EUR"
    dips_sensitivity: float = Field(default=50, ge=0, le=100)
    risk_level: float = Field(default=50, ge=0, le=100)
    stop_loss_percentage: float = Field(default=5, ge=0)
    sell_trigger_percentage: float = Field(default=0, ge=0)  # 0 disables
    initial_balance: float = Field(default=1000, gt=0)
    trade_amount_percentage: float = Field(default=20, ge=0, le=100)
    max_concurrent_positions: int = Field(default=5, ge=1)
    replay_speed_ms: int = Field(default=50, gt=0)
    granularity_seconds: Optional[int] = Field(default=None, gt=0)
    simulation_duration: float = Field(default=0, ge=0)  # minutes, 0 = unlimited
    telegram_settings: TelegramSettings = Field(default_factory=TelegramSettings)

    def merged(self, partial: Dict[str, Any]) -> "Settings":
        """Return a validated copy with ``partial``'s top-level keys applied."""
        data = self.model_dump(by_alias=True)
        for key, value in partial.items():
            data[_SETTINGS_ALIASES.get(key, key)] = value
        return Settings.model_validate(data)


_SETTINGS_ALIASES = {name: info.alias or name for name, info in Settings.model_fields.items()}


# --- Wire models (gateway request/response bodies) ---

class PricePointIn(BaseModel):
    time: int
    price: float = Field(gt=0)

    def to_point(self) -> PricePoint:
        return PricePoint(time=self.time, price=self.price)


class StartRequest(_WireModel):
    type: Literal["start"] = "start"
    settings: Settings = Field(default_factory=Settings)
    replay_data: Optional[List[PricePointIn]] = None
    is_live: bool = False
    simulate: bool = False


class StopRequest(BaseModel):
    type: Literal["stop"] = "stop"


class UpdateSettingsRequest(BaseModel):
    type: Literal["updateSettings"] = "updateSettings"
    settings: Dict[str, Any]


class GetStateRequest(BaseModel):
    type: Literal["getState"] = "getState"


ControlMessage = Union[StartRequest, StopRequest, UpdateSettingsRequest, GetStateRequest]


class OptimizeRequest(_WireModel):
    settings: Settings = Field(default_factory=Settings)
    replay_data: List[PricePointIn]


class TelegramTestRequest(_WireModel):
    bot_token: str
    chat_id: str


class AccountOut(BaseModel):
    base: float
    quote: float


class StateSnapshot(_WireModel):
    is_running: bool
    is_live: bool
    trading_pair: Optional[str]
    account: Optional[AccountOut]
    current_price: float
    trades: List[Dict[str, Any]]
    open_positions: List[Dict[str, Any]]
    chart_history: List[Dict[str, Any]]
    profit: float
    replay_progress_percent: float
    lowest_account_value: float
    highest_account_value: float


class HealthResponse(_WireModel):
    status: Literal["ok"] = "ok"
    is_running: bool


class DeliveryResult(_WireModel):
    chat_id: str
    success: bool
    error: Optional[str] = None


class ConnectionTestResult(BaseModel):
    success: bool
    message: str


class OptimizationResult(_WireModel):
    best_profit: float
    buy_and_hold_profit: float
    optimal_settings: Dict[str, float]
    simulations_run: int


class CandleOut(BaseModel):
    time: int
    low: float
    high: float
    open: float
    close: float
    volume: float

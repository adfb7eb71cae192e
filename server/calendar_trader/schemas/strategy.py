"""
Strategy definition and trade record schemas
"""
import re
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


TIME_PATTERN = re.compile(r"^([01]\d|2[0-3])[-:]([0-5]\d)$")


def normalize_time(value: str) -> str:
    """Normalize an "HH-MM" or "HH:MM" wall-clock string to "HH-MM" """
    match = TIME_PATTERN.match(value.strip()) if isinstance(value, str) else None
    if not match:
        raise ValueError(f"Invalid time '{value}', expected HH-MM (24h)")
    return f"{match.group(1)}-{match.group(2)}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    """Base model exchanged with the dashboard in camelCase"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        validate_assignment=True,
    )

    def to_wire(self) -> dict:
        """camelCase JSON-ready dict"""
        return self.model_dump(mode="json", by_alias=True)


class ValueRange(CamelModel):
    """Inclusive [min, max] range"""
    min: float = Field(..., description="Lower bound (inclusive)")
    max: float = Field(..., description="Upper bound (inclusive)")

    @model_validator(mode="after")
    def check_bounds(self):
        if self.min > self.max:
            raise ValueError(f"Range min {self.min} is greater than max {self.max}")
        return self

    def contains(self, value: float) -> bool:
        return self.min <= value <= self.max


class StrategyResults(CamelModel):
    """Aggregated P&L of a strategy's completed trades"""
    total_pnl: float = 0.0
    win_count: int = 0
    loss_count: int = 0
    win_rate: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0


class Strategy(CamelModel):
    """Schedule descriptor for a recurring calendar spread entry"""

    id: str = Field(default_factory=lambda: str(uuid4()), frozen=True, description="Opaque unique id")
    name: str = Field(default="SPX Strategy", description="Human-readable name")
    is_active: bool = Field(default=True, description="Whether the executor may enter this strategy")

    day_of_week: int = Field(..., ge=0, le=6, description="Entry day, 0 = Sunday")
    delta: float = Field(..., description="Target delta; negative selects puts")
    d1: int = Field(..., ge=0, description="Near expiration offset in days")
    d2: int = Field(..., ge=0, description="Far expiration offset in days")
    t1: str = Field(..., description="Entry time HH-MM")
    t2: str = Field(..., description="Exit time HH-MM on near expiration day")
    tp: float = Field(..., gt=0, description="Take profit percentage over entry price")
    max_cost: float = Field(..., gt=0, description="Maximum notional for the whole position (USD)")

    vix: Optional[ValueRange] = Field(None, description="Index value range at entry")
    vix_overnight_range: Optional[ValueRange] = Field(None, description="Overnight % change range")
    vix_intraday_range: Optional[ValueRange] = Field(None, description="Intraday % change range")

    averaging_drop_pct: Optional[float] = Field(None, gt=0, description="Price drop % that triggers averaging")
    averaging_times: Optional[List[str]] = Field(None, description="Averaging check times HH-MM")
    averaging_amount: Optional[float] = Field(None, gt=0, description="USD per averaging event")

    description: Optional[str] = None
    last_executed: Optional[str] = Field(None, description="Minute stamp of the last entry attempt")
    results: Optional[StrategyResults] = None

    @field_validator("t1", "t2", mode="before")
    @classmethod
    def validate_time(cls, v):
        return normalize_time(v)

    @field_validator("averaging_times", mode="before")
    @classmethod
    def validate_averaging_times(cls, v):
        if v is None:
            return v
        return [normalize_time(t) for t in v]

    @property
    def right(self) -> str:
        """Option right selected by the sign of the target delta"""
        return "P" if self.delta < 0 else "C"

    @property
    def has_averaging_policy(self) -> bool:
        return bool(self.averaging_drop_pct and self.averaging_times and self.averaging_amount)


class TradeStatus(str, Enum):
    """Lifecycle states of a strategy trade"""
    WAITING = "waiting"
    ENTERED = "entered"
    TAKE_PROFIT_ORDER_PLACED = "takeProfitOrderPlaced"
    TAKE_PROFIT_EXECUTED = "takeProfitExecuted"
    EXITED_BY_TIME = "exitedByTime"
    AVERAGING = "averaging"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({TradeStatus.COMPLETED, TradeStatus.ERROR})
POSITION_STATUSES = frozenset({
    TradeStatus.ENTERED,
    TradeStatus.TAKE_PROFIT_ORDER_PLACED,
    TradeStatus.AVERAGING,
})


class TradePosition(CamelModel):
    """Both legs of an opened calendar spread; set all at once"""
    near_option: str
    far_option: str
    near_conid: str
    far_conid: str
    near_expiration: date
    far_expiration: date
    strike: float
    right: str = "P"


class StrategyTrade(CamelModel):
    """Mutable lifecycle record for one activation of a strategy"""

    id: str = Field(default_factory=lambda: str(uuid4()), frozen=True)
    strategy_id: str
    status: TradeStatus = TradeStatus.WAITING

    entry_time: Optional[datetime] = None
    exit_time: Optional[datetime] = None
    entry_price: Optional[float] = None
    exit_price: Optional[float] = None
    contracts: int = Field(default=0, ge=0)
    pnl: Optional[float] = None

    position: Optional[TradePosition] = None

    entry_order_id: Optional[str] = None
    take_profit_order_id: Optional[str] = None
    exit_order_id: Optional[str] = None
    far_exit_order_id: Optional[str] = None
    averaging_order_ids: List[str] = Field(default_factory=list)

    take_profit_attempts: int = 0
    last_averaging_at: Optional[str] = None

    errors: List[str] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def holds_position(self) -> bool:
        return self.status in POSITION_STATUSES and self.position is not None

    @property
    def has_exit_orders(self) -> bool:
        """Both legs have a close order at the broker"""
        return bool(self.exit_order_id and self.far_exit_order_id)

    def add_error(self, message: str) -> None:
        """Append to the error log; entries are never removed"""
        self.errors.append(message)

    def fail(self, message: str) -> None:
        self.add_error(message)
        self.status = TradeStatus.ERROR


class StrategyStringRequest(BaseModel):
    """Create a strategy from the compact text format"""
    strategy: str = Field(..., description="e.g. 'Mon 70 3 4 09-32 15-30 20% 10000'")
    name: Optional[str] = Field(None, description="Strategy name")


class ActiveToggleRequest(BaseModel):
    is_active: bool = Field(..., alias="isActive")

    model_config = ConfigDict(populate_by_name=True)


class ExecutorStartRequest(BaseModel):
    account_id: Optional[str] = Field(None, alias="accountId", description="Defaults to IBKR_ACCOUNT_ID")

    model_config = ConfigDict(populate_by_name=True)

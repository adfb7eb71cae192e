"""
Entry and averaging rules for scheduled strategies

Entry filters are independent async policies registered in ENTRY_FILTERS;
each receives the strategy and the gateway and returns True to allow entry.
"""
import math
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional

from pydantic import BaseModel

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.schemas.strategy import Strategy, StrategyTrade
from calendar_trader.services.market_gateway import MarketGateway, INDEX_UNAVAILABLE

logger = get_logger(__name__)

EntryFilter = Callable[[Strategy, MarketGateway], Awaitable[bool]]


def day_index(now: datetime) -> int:
    """Day of week with 0 = Sunday"""
    return (now.weekday() + 1) % 7


def clock_time(now: datetime) -> str:
    return now.strftime("%H-%M")


def minute_stamp(now: datetime) -> str:
    return now.strftime("%Y-%m-%dT%H:%M")


def is_entry_time(strategy: Strategy, now: datetime) -> bool:
    return day_index(now) == strategy.day_of_week and clock_time(now) == strategy.t1


def is_exit_time(strategy: Strategy, trade: StrategyTrade, now: datetime) -> bool:
    """Near expiration day at the strategy's exit time"""
    if trade.position is None:
        return False
    return now.date() == trade.position.near_expiration and clock_time(now) == strategy.t2


async def index_value_filter(strategy: Strategy, gateway: MarketGateway) -> bool:
    if strategy.vix is None:
        return True

    value = await gateway.get_index_value(settings.executor.index_symbol)
    if value == INDEX_UNAVAILABLE:
        logger.info(
            "Index value unavailable, entry blocked",
            strategy_id=strategy.id,
            symbol=settings.executor.index_symbol
        )
        return False

    if not strategy.vix.contains(value):
        logger.info(
            "Index value outside range, entry blocked",
            strategy_id=strategy.id,
            value=value,
            range_min=strategy.vix.min,
            range_max=strategy.vix.max
        )
        return False
    return True


async def overnight_change_filter(strategy: Strategy, gateway: MarketGateway) -> bool:
    # TODO: needs the previous session close from the gateway to compute the change
    if strategy.vix_overnight_range is not None:
        logger.debug("Overnight change filter not evaluated", strategy_id=strategy.id)
    return True


async def intraday_change_filter(strategy: Strategy, gateway: MarketGateway) -> bool:
    # TODO: needs the session open from the gateway to compute the change
    if strategy.vix_intraday_range is not None:
        logger.debug("Intraday change filter not evaluated", strategy_id=strategy.id)
    return True


ENTRY_FILTERS: List[EntryFilter] = [
    index_value_filter,
    overnight_change_filter,
    intraday_change_filter,
]


async def check_entry_conditions(
    strategy: Strategy,
    now: datetime,
    gateway: MarketGateway,
    filters: Optional[List[EntryFilter]] = None,
) -> bool:
    """
    Entry gate: scheduled day and minute, no attempt yet in this minute,
    then every entry filter in order.
    """
    if not is_entry_time(strategy, now):
        return False

    if strategy.last_executed == minute_stamp(now):
        logger.debug("Entry already attempted this minute", strategy_id=strategy.id)
        return False

    for entry_filter in ENTRY_FILTERS if filters is None else filters:
        if not await entry_filter(strategy, gateway):
            return False
    return True


def has_open_trade(strategy_id: str, active_trades: Iterable[StrategyTrade]) -> bool:
    return any(t.strategy_id == strategy_id and not t.is_terminal for t in active_trades)


class AveragingDecision(BaseModel):
    """Extra contracts to buy at the current spread price"""
    contracts: int
    price: float
    drop_pct: float
    time_point: str


def evaluate_averaging(
    strategy: Strategy,
    trade: StrategyTrade,
    now: datetime,
    current_price: float,
) -> Optional[AveragingDecision]:
    """
    Averaging fires at one of the strategy's averaging times, once per time
    point per day, when the spread has dropped by at least averaging_drop_pct
    from the entry price and averaging_amount buys at least one contract.
    """
    if not strategy.has_averaging_policy or not trade.entry_price or trade.entry_price <= 0:
        return None

    now_time = clock_time(now)
    if now_time not in strategy.averaging_times:
        return None

    time_point = f"{now.date().isoformat()}T{now_time}"
    if trade.last_averaging_at == time_point:
        return None

    if current_price <= 0:
        return None

    drop_pct = (trade.entry_price - current_price) / trade.entry_price * 100
    if drop_pct < strategy.averaging_drop_pct:
        return None

    contracts = math.floor(strategy.averaging_amount / (current_price * settings.executor.contract_multiplier))
    if contracts < 1:
        return None

    return AveragingDecision(
        contracts=contracts,
        price=current_price,
        drop_pct=round(drop_pct, 2),
        time_point=time_point,
    )

"""
Shared fixtures: an in-memory repository, a scripted brokerage gateway and
a settable market clock
"""
import os

# Must be set before calendar_trader.core.config is imported
os.environ["ENVIRONMENT"] = "testing"
os.environ["ENABLE_DATABASE"] = "false"
os.environ["ENABLE_CACHING"] = "false"

from datetime import date, datetime
from typing import Dict, List, Optional, Sequence
from zoneinfo import ZoneInfo

import pytest

from calendar_trader.schemas.gateway import (
    Account,
    OptionContract,
    OrderLeg,
    OrderResult,
    OrderStatus,
    QuoteSnapshot,
)
from calendar_trader.schemas.strategy import Strategy, StrategyTrade, TradePosition, TradeStatus
from calendar_trader.services.exceptions import RepositoryError
from calendar_trader.services.market_gateway import MarketGateway
from calendar_trader.services.strategy_repository import StrategyRepository
from calendar_trader.services.trade_book import TradeBook
from calendar_trader.workers.strategy_executor import StrategyExecutor


ET = ZoneInfo("America/New_York")
ACCOUNT_ID = "U1234567"

# Monday; the near leg expires Thursday 2025-01-09, the far leg Friday
ENTRY_TIME = datetime(2025, 1, 6, 9, 32, tzinfo=ET)
NEAR_EXPIRY = date(2025, 1, 9)
FAR_EXPIRY = date(2025, 1, 10)


def market_time(day: int, hour: int, minute: int) -> datetime:
    """January 2025 wall-clock time in New York"""
    return datetime(2025, 1, day, hour, minute, tzinfo=ET)


def make_strategy(**overrides) -> Strategy:
    fields = {
        "name": "SPX Monday",
        "day_of_week": 1,
        "delta": 70,
        "d1": 3,
        "d2": 4,
        "t1": "09-32",
        "t2": "15-30",
        "tp": 20,
        "max_cost": 10000,
    }
    fields.update(overrides)
    return Strategy(**fields)


def make_options() -> List[OptionContract]:
    """Near mid 101, far mid 152: spread 51"""
    return [
        OptionContract(conid="N1", symbol="SPX 250109C05900000", right="C", strike=5900,
                       expiry=NEAR_EXPIRY, bid=100, ask=102),
        OptionContract(conid="F1", symbol="SPX 250110C05900000", right="C", strike=5900,
                       expiry=FAR_EXPIRY, bid=150, ask=154),
    ]


def make_open_trade(strategy: Strategy, **overrides) -> StrategyTrade:
    """Trade holding a one-contract spread bought at 51 with a working take-profit"""
    fields = {
        "strategy_id": strategy.id,
        "status": TradeStatus.TAKE_PROFIT_ORDER_PLACED,
        "entry_time": ENTRY_TIME,
        "entry_price": 51.0,
        "contracts": 1,
        "position": TradePosition(
            near_option="SPX 250109C05900000",
            far_option="SPX 250110C05900000",
            near_conid="N1",
            far_conid="F1",
            near_expiration=NEAR_EXPIRY,
            far_expiration=FAR_EXPIRY,
            strike=5900,
            right="C",
        ),
        "entry_order_id": "500",
        "take_profit_order_id": "501",
        "take_profit_attempts": 1,
    }
    fields.update(overrides)
    return StrategyTrade(**fields)


class FakeGateway(MarketGateway):
    """
    Scripted gateway. Order submissions are accepted with sequential ids
    unless a result was queued for that method. Market orders on a conid
    listed in `fills` are reported filled at that price.
    """

    def __init__(self):
        self.accounts = [Account(id=ACCOUNT_ID, accountId=ACCOUNT_ID, accountTitle="Test Account")]
        self.options: List[OptionContract] = make_options()
        self.options_error: Optional[Exception] = None
        self.index_value = 18.0
        self.quotes: Dict[str, QuoteSnapshot] = {}
        self.order_statuses: Dict[str, OrderStatus] = {}
        self.fills: Dict[str, float] = {}
        self.cancel_result = True
        self.queued: Dict[str, List[OrderResult]] = {}
        self.calls: List[tuple] = []
        self.closed = False
        self._next_id = 1000

    def queue(self, method: str, *results: OrderResult) -> None:
        self.queued.setdefault(method, []).extend(results)

    def calls_to(self, method: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _result(self, method: str) -> OrderResult:
        pending = self.queued.get(method)
        if pending:
            return pending.pop(0)
        self._next_id += 1
        return OrderResult(id=str(self._next_id))

    async def list_accounts(self) -> List[Account]:
        self.calls.append(("list_accounts",))
        return list(self.accounts)

    async def find_options(self, delta, offsets, right, as_of=None) -> List[OptionContract]:
        self.calls.append(("find_options", delta, list(offsets), right, as_of))
        if self.options_error:
            raise self.options_error
        return [c.model_copy() for c in self.options]

    async def get_index_value(self, symbol: str) -> float:
        self.calls.append(("get_index_value", symbol))
        return self.index_value

    async def get_option_quotes(self, conids: Sequence[str]) -> List[QuoteSnapshot]:
        self.calls.append(("get_option_quotes", list(conids)))
        return [self.quotes[c] for c in conids if c in self.quotes]

    async def submit_combination_order(self, account_id: str, legs: Sequence[OrderLeg], max_cost: float) -> OrderResult:
        self.calls.append(("submit_combination_order", account_id, list(legs), max_cost))
        return self._result("submit_combination_order")

    async def submit_dependent_order(self, account_id: str, parent_order_id: str, target_price: float) -> OrderResult:
        self.calls.append(("submit_dependent_order", account_id, parent_order_id, target_price))
        return self._result("submit_dependent_order")

    async def cancel_order(self, account_id: str, order_id: str) -> bool:
        self.calls.append(("cancel_order", account_id, order_id))
        return self.cancel_result

    async def submit_market_order(self, account_id: str, conid: str, side: str, quantity: int) -> OrderResult:
        self.calls.append(("submit_market_order", account_id, conid, side, quantity))
        result = self._result("submit_market_order")
        if result.ok and conid in self.fills:
            self.order_statuses[result.id] = OrderStatus(
                order_id=result.id,
                status="filled",
                filled_quantity=quantity,
                avg_price=self.fills[conid],
            )
        return result

    async def get_order_status(self, account_id: str, order_id: str) -> OrderStatus:
        self.calls.append(("get_order_status", account_id, order_id))
        return self.order_statuses.get(order_id, OrderStatus(order_id=order_id, status="submitted"))

    async def close(self) -> None:
        self.closed = True


class InMemoryRepository(StrategyRepository):
    """Dict-backed repository; every trade write is recorded in `trade_history`"""

    name = "memory"

    def __init__(self):
        self.strategies: Dict[str, Strategy] = {}
        self.trades: Dict[str, StrategyTrade] = {}
        self.trade_history: List[tuple] = []
        self.fail_reads = False
        self.fail_writes = False
        # A trade write carrying this status fails once
        self.fail_once_on: Optional[TradeStatus] = None

    def _check_read(self):
        if self.fail_reads:
            raise RepositoryError("store offline")

    def _check_write(self):
        if self.fail_writes:
            raise RepositoryError("store offline")

    async def list_strategies(self) -> List[Strategy]:
        self._check_read()
        return [s.model_copy(deep=True) for s in self.strategies.values()]

    async def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        self._check_read()
        strategy = self.strategies.get(strategy_id)
        return strategy.model_copy(deep=True) if strategy else None

    async def list_trades(self, strategy_id: Optional[str] = None) -> List[StrategyTrade]:
        self._check_read()
        return [
            t.model_copy(deep=True) for t in self.trades.values()
            if strategy_id is None or t.strategy_id == strategy_id
        ]

    async def upsert_strategy(self, strategy: Strategy) -> Strategy:
        self._check_write()
        self.strategies[strategy.id] = strategy.model_copy(deep=True)
        return strategy

    async def delete_strategy(self, strategy_id: str) -> bool:
        self._check_write()
        return self.strategies.pop(strategy_id, None) is not None

    async def upsert_trade(self, trade: StrategyTrade) -> StrategyTrade:
        self._check_write()
        if trade.status == self.fail_once_on:
            self.fail_once_on = None
            raise RepositoryError("store offline")
        self.trades[trade.id] = trade.model_copy(deep=True)
        self.trade_history.append((trade.id, trade.status))
        return trade

    async def mark_executed(self, strategy_id: str, stamp: str) -> Optional[Strategy]:
        self._check_write()
        strategy = self.strategies.get(strategy_id)
        if strategy is None:
            return None
        strategy.last_executed = stamp
        return strategy.model_copy(deep=True)

    def statuses_of(self, trade_id: str) -> List[TradeStatus]:
        return [status for tid, status in self.trade_history if tid == trade_id]


class MarketClock:
    """Callable clock the tests move by hand"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def book(repository) -> TradeBook:
    return TradeBook(repository)


@pytest.fixture
def clock() -> MarketClock:
    return MarketClock(ENTRY_TIME)


@pytest.fixture
async def executor(repository, gateway, clock):
    executor = StrategyExecutor(
        repository,
        gateway,
        clock=clock,
        interval=3600,
        confirm_attempts=2,
        confirm_poll_seconds=0,
    )
    yield executor
    await executor.stop()

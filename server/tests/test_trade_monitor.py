"""
Test cases for open trade monitoring: take-profit, time exit and averaging
"""
import pytest

from calendar_trader.schemas.gateway import OrderResult, OrderStatus, QuoteSnapshot
from calendar_trader.schemas.strategy import TradeStatus
from calendar_trader.services.position_manager import PositionManager
from calendar_trader.services.trade_monitor import TradeMonitor, realized_pnl

from conftest import ACCOUNT_ID, make_open_trade, make_strategy, market_time


EXIT_TIME = market_time(9, 15, 30)
MIDWEEK = market_time(7, 11, 0)


@pytest.fixture
def monitor(repository, gateway, book):
    manager = PositionManager(repository, gateway, book)
    return TradeMonitor(gateway, book, manager, confirm_attempts=2, confirm_poll_seconds=0)


@pytest.fixture
def strategy():
    return make_strategy()


async def _check(monitor, book, trade, strategy, now):
    """Load trade into the book and run one check on the cached copy"""
    if trade.id not in book:
        await book.persist(trade)
    current = book.get(trade.id) or trade
    return await monitor.check_trade(current, strategy, ACCOUNT_ID, now)


def test_realized_pnl():
    trade = make_open_trade(make_strategy(), exit_price=61.2, contracts=2)

    assert realized_pnl(trade) == 2040.0
    assert realized_pnl(trade.model_copy(update={"exit_price": None})) is None


async def test_take_profit_fill_completes_trade(monitor, gateway, repository, book, strategy):
    gateway.order_statuses["501"] = OrderStatus(order_id="501", status="filled", filled_quantity=1, avg_price=61.2)
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, MIDWEEK)

    assert result.status == TradeStatus.COMPLETED
    assert result.exit_price == 61.2
    assert result.pnl == 1020.0
    assert result.exit_time == MIDWEEK
    assert repository.statuses_of(trade.id)[-2:] == [TradeStatus.TAKE_PROFIT_EXECUTED, TradeStatus.COMPLETED]
    assert trade.id not in book


async def test_take_profit_fill_without_price_uses_target(monitor, gateway, book, strategy):
    gateway.order_statuses["501"] = OrderStatus(order_id="501", status="filled")

    result = await _check(monitor, book, make_open_trade(strategy), strategy, MIDWEEK)

    assert result.status == TradeStatus.COMPLETED
    assert result.exit_price == 61.2


async def test_cancelled_take_profit_returns_to_entered(monitor, gateway, book, strategy):
    gateway.order_statuses["501"] = OrderStatus(order_id="501", status="cancelled")
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, MIDWEEK)

    assert result.status == TradeStatus.ENTERED
    assert result.take_profit_order_id is None
    assert result.errors == ["Take-profit order 501 cancelled"]
    assert book.get(trade.id).status == TradeStatus.ENTERED


async def test_working_take_profit_is_left_alone(monitor, gateway, book, strategy):
    result = await _check(monitor, book, make_open_trade(strategy), strategy, MIDWEEK)

    assert result.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert gateway.calls_to("submit_dependent_order") == []


async def test_take_profit_retried_until_limit(monitor, gateway, book, strategy):
    gateway.queue("submit_dependent_order", *[OrderResult.failed("rejected")] * 3)
    trade = make_open_trade(
        strategy,
        status=TradeStatus.ENTERED,
        take_profit_order_id=None,
        take_profit_attempts=0,
    )
    await book.persist(trade)

    for _ in range(5):
        await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, MIDWEEK)

    stored = book.get(trade.id)
    assert stored.status == TradeStatus.ENTERED
    assert stored.take_profit_attempts == 3
    assert len(gateway.calls_to("submit_dependent_order")) == 3
    assert len(stored.errors) == 3


async def test_take_profit_retry_succeeds(monitor, gateway, book, strategy):
    trade = make_open_trade(
        strategy,
        status=TradeStatus.ENTERED,
        take_profit_order_id=None,
        take_profit_attempts=1,
    )

    result = await _check(monitor, book, trade, strategy, MIDWEEK)

    assert result.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert result.take_profit_order_id
    assert result.take_profit_attempts == 2


async def test_missing_strategy_fails_trade(monitor, book, strategy):
    trade = make_open_trade(strategy)
    await book.persist(trade)

    result = await monitor.check_trade(book.get(trade.id), None, ACCOUNT_ID, MIDWEEK)

    assert result.status == TradeStatus.ERROR
    assert result.errors == ["Strategy not found"]
    assert trade.id not in book


async def test_time_exit(monitor, gateway, repository, book, strategy):
    gateway.fills = {"N1": 1.0, "F1": 60.0}
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, EXIT_TIME)

    assert gateway.calls_to("cancel_order") == [("cancel_order", ACCOUNT_ID, "501")]
    market_orders = [c[2:] for c in gateway.calls_to("submit_market_order")]
    assert market_orders == [("N1", "BUY", 1), ("F1", "SELL", 1)]

    assert result.status == TradeStatus.COMPLETED
    assert result.take_profit_order_id is None
    assert result.exit_order_id
    assert result.far_exit_order_id
    assert result.exit_time == EXIT_TIME
    assert result.exit_price == 59.0
    assert result.pnl == 800.0
    assert TradeStatus.EXITED_BY_TIME in repository.statuses_of(trade.id)
    assert trade.id not in book


async def test_time_exit_waits_for_fills(monitor, gateway, book, strategy):
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, EXIT_TIME)

    assert result.status == TradeStatus.EXITED_BY_TIME
    assert book.get(trade.id).status == TradeStatus.EXITED_BY_TIME

    for order_id, price in ((result.exit_order_id, 2.0), (result.far_exit_order_id, 58.0)):
        gateway.order_statuses[order_id] = OrderStatus(order_id=order_id, status="filled", avg_price=price)

    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(9, 15, 31))

    assert result.status == TradeStatus.COMPLETED
    assert result.exit_price == 56.0
    assert len(gateway.calls_to("submit_market_order")) == 2


async def test_time_exit_dead_close_order(monitor, gateway, book, strategy):
    trade = make_open_trade(strategy)
    result = await _check(monitor, book, trade, strategy, EXIT_TIME)
    gateway.order_statuses[result.exit_order_id] = OrderStatus(order_id=result.exit_order_id, status="rejected")

    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(9, 15, 31))

    assert result.status == TradeStatus.ERROR
    assert f"Close order {result.exit_order_id} rejected" in result.errors[-1]


async def test_partial_time_exit_keeps_closing_after_t2(monitor, gateway, book, strategy):
    gateway.queue("submit_market_order", OrderResult(id="900"), OrderResult.failed("no route"))
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, EXIT_TIME)

    assert result.status == TradeStatus.EXITED_BY_TIME
    assert result.exit_order_id == "900"
    assert result.far_exit_order_id is None
    assert result.take_profit_order_id is None
    assert "Far leg close rejected: no route" in result.errors
    assert book.get(trade.id).status == TradeStatus.EXITED_BY_TIME

    gateway.order_statuses["900"] = OrderStatus(order_id="900", status="filled", avg_price=1.0)
    gateway.fills = {"F1": 60.0}
    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(9, 15, 31))

    sides = [c[2:4] for c in gateway.calls_to("submit_market_order")]
    assert sides == [("N1", "BUY"), ("F1", "SELL"), ("F1", "SELL")]
    assert gateway.calls_to("submit_dependent_order") == []
    assert result.status == TradeStatus.COMPLETED
    assert result.exit_price == 59.0


async def test_time_exit_with_no_leg_closed_retries_next_day(monitor, gateway, book, strategy):
    gateway.queue("submit_market_order", *[OrderResult.failed("market closed")] * 4)
    trade = make_open_trade(strategy)

    await _check(monitor, book, trade, strategy, EXIT_TIME)
    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(10, 9, 30))

    assert result.status == TradeStatus.EXITED_BY_TIME
    assert result.exit_order_id is None
    assert len(gateway.calls_to("submit_market_order")) == 4
    assert gateway.calls_to("submit_dependent_order") == []

    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(10, 9, 31))

    assert result.exit_order_id
    assert result.far_exit_order_id
    assert len(gateway.calls_to("submit_market_order")) == 6


async def test_time_exit_with_failed_cancel_still_closes(monitor, gateway, book, strategy):
    gateway.cancel_result = False
    gateway.fills = {"N1": 1.0, "F1": 60.0}

    result = await _check(monitor, book, make_open_trade(strategy), strategy, EXIT_TIME)

    assert result.status == TradeStatus.COMPLETED
    assert result.take_profit_order_id == "501"
    assert any("Failed to cancel take-profit" in e for e in result.errors)


def _averaging_setup(gateway):
    gateway.quotes = {
        "N1": QuoteSnapshot(conid="N1", bid=10, ask=10),
        "F1": QuoteSnapshot(conid="F1", bid=50, ask=50),
    }
    return make_strategy(averaging_drop_pct=10, averaging_times=["11-00"], averaging_amount=5000)


async def test_averaging_then_take_profit_replaced(monitor, gateway, book):
    strategy = _averaging_setup(gateway)
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, MIDWEEK)

    (_, _, legs, max_cost), = gateway.calls_to("submit_combination_order")
    assert max_cost == 5000
    assert [(leg.conid, leg.side, leg.quantity) for leg in legs] == [("N1", "SELL", 1), ("F1", "BUY", 1)]
    assert result.status == TradeStatus.AVERAGING
    assert result.contracts == 2
    assert result.entry_price == 45.5
    assert len(result.averaging_order_ids) == 1
    assert result.last_averaging_at == "2025-01-07T11-00"

    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(7, 11, 1))

    assert ("cancel_order", ACCOUNT_ID, "501") in gateway.calls
    (_, _, parent_id, target), = gateway.calls_to("submit_dependent_order")
    assert parent_id == "500"
    assert target == 54.6
    assert result.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert result.take_profit_order_id != "501"
    assert result.take_profit_attempts == 1


async def test_averaging_not_repeated_at_same_time_point(monitor, gateway, book):
    strategy = _averaging_setup(gateway)
    gateway.queue("submit_combination_order", OrderResult.failed("rejected"))
    trade = make_open_trade(strategy)

    result = await _check(monitor, book, trade, strategy, MIDWEEK)
    assert result.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert result.errors == ["Averaging order rejected: rejected"]

    await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, MIDWEEK)

    assert len(gateway.calls_to("submit_combination_order")) == 1


async def test_take_profit_kept_when_cancel_fails_after_averaging(monitor, gateway, book):
    strategy = _averaging_setup(gateway)
    gateway.cancel_result = False
    trade = make_open_trade(strategy, status=TradeStatus.AVERAGING, contracts=2, entry_price=45.5)

    result = await _check(monitor, book, trade, strategy, market_time(7, 11, 1))

    assert result.status == TradeStatus.AVERAGING
    assert result.take_profit_order_id == "501"
    assert gateway.calls_to("submit_dependent_order") == []
    assert "after averaging" in result.errors[-1]


async def test_take_profit_completion_survives_failed_write(monitor, gateway, repository, book, strategy):
    gateway.order_statuses["501"] = OrderStatus(order_id="501", status="filled", avg_price=61.2)
    repository.fail_once_on = TradeStatus.COMPLETED
    trade = make_open_trade(strategy)

    await _check(monitor, book, trade, strategy, MIDWEEK)

    assert book.get(trade.id).status == TradeStatus.TAKE_PROFIT_EXECUTED
    assert repository.trades[trade.id].status == TradeStatus.TAKE_PROFIT_EXECUTED

    result = await monitor.check_trade(book.get(trade.id), strategy, ACCOUNT_ID, market_time(7, 11, 1))

    assert result.status == TradeStatus.COMPLETED
    assert result.pnl == 1020.0
    assert repository.trades[trade.id].status == TradeStatus.COMPLETED
    assert trade.id not in book
    assert len(gateway.calls_to("get_order_status")) == 1

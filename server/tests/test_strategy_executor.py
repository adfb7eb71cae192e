"""
Test cases for the strategy executor loop
"""
import asyncio

import pytest

from calendar_trader.core.config import settings
from calendar_trader.schemas.gateway import OrderStatus
from calendar_trader.schemas.strategy import StrategyTrade, TradeStatus, ValueRange
from calendar_trader.services.exceptions import ExecutorConfigError, ExecutorStateError
from calendar_trader.workers.strategy_executor import ENTRY_INTERRUPTED, ENTRY_OUTCOME_UNKNOWN

from conftest import ACCOUNT_ID, make_open_trade, make_strategy, market_time


async def _add_strategy(repository, **overrides):
    strategy = make_strategy(**overrides)
    await repository.upsert_strategy(strategy)
    return strategy


async def test_tick_enters_due_strategy(executor, repository, gateway):
    strategy = await _add_strategy(repository)

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary == {"strategies": 1, "entered": 1, "monitored": 1}
    trades = executor.get_active_trades()
    assert len(trades) == 1
    assert trades[0].strategy_id == strategy.id
    assert trades[0].status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert executor.tick_count == 1


async def test_tick_skips_inactive_strategies(executor, repository, gateway):
    await _add_strategy(repository, is_active=False)

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["strategies"] == 0
    assert gateway.calls_to("find_options") == []


async def test_tick_outside_schedule_does_nothing(executor, repository, gateway, clock):
    await _add_strategy(repository)
    clock.now = market_time(6, 9, 33)

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["entered"] == 0
    assert repository.trades == {}


async def test_one_open_trade_per_strategy(executor, repository, gateway):
    strategy = await _add_strategy(repository)
    await executor.tick(account_id=ACCOUNT_ID)

    # clear the minute stamp so only the open trade can block a second entry
    repository.strategies[strategy.id].last_executed = None
    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["entered"] == 0
    assert len(gateway.calls_to("find_options")) == 1
    assert len(repository.trades) == 1


async def test_entry_attempted_once_per_minute(executor, repository, gateway):
    await _add_strategy(repository)
    gateway.options = []

    await executor.tick(account_id=ACCOUNT_ID)
    await executor.tick(account_id=ACCOUNT_ID)

    assert len(gateway.calls_to("find_options")) == 1


async def test_deactivation_during_tick_is_kept(executor, repository, gateway, monkeypatch):
    strategy = await _add_strategy(repository, vix=ValueRange(min=10, max=30))
    fetch = gateway.get_index_value

    async def deactivate_then_fetch(symbol):
        await repository.toggle_strategy_active(strategy.id, False)
        return await fetch(symbol)

    monkeypatch.setattr(gateway, "get_index_value", deactivate_then_fetch)

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["entered"] == 0
    assert repository.strategies[strategy.id].is_active is False
    assert repository.trades == {}
    assert gateway.calls_to("find_options") == []


async def test_failed_entry_leaves_cache(executor, repository, gateway):
    await _add_strategy(repository)
    gateway.options = []

    await executor.tick(account_id=ACCOUNT_ID)

    assert executor.get_active_trades() == []
    (trade,) = repository.trades.values()
    assert trade.status == TradeStatus.ERROR


async def test_concurrent_ticks_are_serialized(executor, repository, gateway):
    await _add_strategy(repository)

    await asyncio.gather(
        executor.tick(account_id=ACCOUNT_ID),
        executor.tick(account_id=ACCOUNT_ID),
    )

    assert executor.tick_count == 2
    assert len(gateway.calls_to("find_options")) == 1
    assert len(repository.trades) == 1


async def test_tick_requires_account(executor):
    with pytest.raises(ExecutorStateError):
        await executor.tick()


async def test_tick_skipped_when_store_unreadable(executor, repository):
    await _add_strategy(repository)
    repository.fail_reads = True

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary == {"strategies": 0, "entered": 0, "monitored": 0}


async def test_entry_aborted_when_store_unwritable(executor, repository, gateway):
    await _add_strategy(repository)
    repository.fail_writes = True

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["entered"] == 0
    assert gateway.calls_to("find_options") == []


async def test_deactivated_strategy_trades_still_monitored(executor, repository, gateway, clock):
    strategy = await _add_strategy(repository, is_active=False)
    trade = make_open_trade(strategy)
    await repository.upsert_trade(trade)
    await executor.load_active_trades()
    gateway.order_statuses["501"] = OrderStatus(order_id="501", status="filled", avg_price=61.2)
    clock.now = market_time(7, 11, 0)

    summary = await executor.tick(account_id=ACCOUNT_ID)

    assert summary["monitored"] == 1
    assert repository.trades[trade.id].status == TradeStatus.COMPLETED
    assert executor.get_active_trades() == []


async def test_recovery_on_load(executor, repository):
    strategy = await _add_strategy(repository)
    waiting = StrategyTrade(strategy_id=strategy.id, status=TradeStatus.WAITING)
    unknown = make_open_trade(strategy, status=TradeStatus.ENTERED, entry_order_id=None, take_profit_order_id=None)
    working = make_open_trade(strategy)
    finished = make_open_trade(strategy, status=TradeStatus.COMPLETED, pnl=100.0)
    executed = make_open_trade(strategy, status=TradeStatus.TAKE_PROFIT_EXECUTED, exit_price=61.2, pnl=1020.0)
    for trade in (waiting, unknown, working, finished, executed):
        await repository.upsert_trade(trade)

    await executor.load_active_trades()
    await executor.load_active_trades()

    assert repository.trades[waiting.id].status == TradeStatus.ERROR
    assert repository.trades[waiting.id].errors == [ENTRY_INTERRUPTED]
    assert repository.trades[unknown.id].errors == [ENTRY_OUTCOME_UNKNOWN]
    assert repository.trades[executed.id].status == TradeStatus.COMPLETED
    assert {t.id for t in executor.get_active_trades()} == {unknown.id, working.id}


async def test_start_and_stop(executor, repository):
    strategy = await _add_strategy(repository)
    await repository.upsert_trade(make_open_trade(strategy))

    await executor.start(ACCOUNT_ID)

    assert executor.is_active()
    assert executor.current_account() == ACCOUNT_ID
    status = executor.status()
    assert status["isActive"] is True
    assert status["accountId"] == ACCOUNT_ID
    assert status["activeTrades"] == 1

    with pytest.raises(ExecutorStateError):
        await executor.start(ACCOUNT_ID)

    await executor.stop()

    assert not executor.is_active()
    assert executor.current_account() is None
    assert executor.get_active_trades() == []

    # restarting reloads from the store without duplicates
    await executor.start(ACCOUNT_ID)
    assert len(executor.get_active_trades()) == 1
    await executor.stop()
    await executor.stop()


async def test_start_uses_configured_account(executor, monkeypatch):
    monkeypatch.setattr(settings, "ibkr_account_id", "U7654321")

    await executor.start()

    assert executor.current_account() == "U7654321"


async def test_start_without_account(executor, monkeypatch):
    monkeypatch.setattr(settings, "ibkr_account_id", None)

    with pytest.raises(ExecutorConfigError):
        await executor.start()

    assert not executor.is_active()

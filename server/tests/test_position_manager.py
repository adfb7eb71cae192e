"""
Test cases for calendar spread entry
"""
from datetime import date

import pytest

from calendar_trader.schemas.gateway import OptionContract, OrderResult
from calendar_trader.schemas.strategy import TradeStatus
from calendar_trader.services.external.base import ExternalAPIError
from calendar_trader.services.position_manager import PositionManager, contracts_for, select_legs

from conftest import ACCOUNT_ID, ENTRY_TIME, FAR_EXPIRY, NEAR_EXPIRY, make_options, make_strategy


@pytest.fixture
def manager(repository, gateway, book):
    return PositionManager(repository, gateway, book)


async def stored(repository, **overrides):
    strategy = make_strategy(**overrides)
    await repository.upsert_strategy(strategy)
    return strategy


def test_select_legs_orders_by_expiry():
    near, far = make_options()

    assert select_legs([far, near]) == (near, far)


def test_select_legs_needs_two_expirations():
    near, _ = make_options()
    twin = near.model_copy(update={"conid": "N2"})

    assert select_legs([near, twin]) is None


def test_select_legs_skips_same_day_contracts():
    near, far = make_options()
    twin = near.model_copy(update={"conid": "N2"})

    assert select_legs([twin, far, near])[1] == far


def test_contracts_for():
    assert contracts_for(10000, 51) == 1
    assert contracts_for(10000, 25) == 4
    assert contracts_for(1000, 51) == 0
    assert contracts_for(10000, 0) == 0
    assert contracts_for(10000, -3) == 0


async def test_enter_position(manager, repository, gateway, book):
    strategy = make_strategy()
    await repository.upsert_strategy(strategy)

    trade = await manager.enter_position(strategy, ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert trade.entry_price == 51
    assert trade.contracts == 1
    assert trade.entry_time == ENTRY_TIME
    assert trade.position.near_conid == "N1"
    assert trade.position.far_conid == "F1"
    assert trade.position.near_expiration == NEAR_EXPIRY
    assert trade.position.far_expiration == FAR_EXPIRY
    assert trade.position.strike == 5900
    assert trade.position.right == "C"
    assert trade.entry_order_id
    assert trade.take_profit_order_id
    assert trade.take_profit_attempts == 1
    assert trade.errors == []

    # attempt stamped and stored before anything else
    assert repository.strategies[strategy.id].last_executed == "2025-01-06T09:32"

    statuses = repository.statuses_of(trade.id)
    assert statuses[0] == TradeStatus.WAITING
    assert statuses[-1] == TradeStatus.TAKE_PROFIT_ORDER_PLACED
    assert trade.id in book


async def test_entry_orders(manager, repository, gateway):
    strategy = await stored(repository)

    trade = await manager.enter_position(strategy, ACCOUNT_ID, ENTRY_TIME)

    (_, delta, offsets, right, as_of), = gateway.calls_to("find_options")
    assert (delta, offsets, right, as_of) == (70, [3, 4], "C", date(2025, 1, 6))

    (_, account, legs, max_cost), = gateway.calls_to("submit_combination_order")
    assert account == ACCOUNT_ID
    assert max_cost == 10000
    assert [(leg.conid, leg.side, leg.quantity) for leg in legs] == [("N1", "SELL", 1), ("F1", "BUY", 1)]

    (_, _, parent_id, target), = gateway.calls_to("submit_dependent_order")
    assert parent_id == trade.entry_order_id
    assert target == 61.2


async def test_too_few_contracts(manager, gateway, repository, book):
    gateway.options = make_options()[:1]

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert "Found 1 option contract(s)" in trade.errors[0]
    assert gateway.calls_to("submit_combination_order") == []
    assert trade.id not in book
    assert repository.trades[trade.id].status == TradeStatus.ERROR


async def test_single_expiration(manager, repository, gateway):
    near = make_options()[0]
    gateway.options = [near, near.model_copy(update={"conid": "N2"})]

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert gateway.calls_to("submit_combination_order") == []


async def test_insufficient_funds(manager, repository, gateway):
    trade = await manager.enter_position(await stored(repository, max_cost=1000), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert trade.errors == ["Insufficient funds for one contract: spread 51.00, max cost 1000.00"]
    assert trade.position is None
    assert gateway.calls_to("submit_combination_order") == []


async def test_non_positive_spread(manager, repository, gateway):
    gateway.options = [
        OptionContract(conid="N1", symbol="near", strike=5900, expiry=NEAR_EXPIRY, bid=10, ask=10),
        OptionContract(conid="F1", symbol="far", strike=5900, expiry=FAR_EXPIRY, bid=5, ask=5),
    ]

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert gateway.calls_to("submit_combination_order") == []


async def test_option_search_failure(manager, repository, gateway):
    gateway.options_error = ExternalAPIError("gateway down", service="ibkr", status_code=503)

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert "gateway down" in trade.errors[0]


async def test_entry_order_rejected(manager, repository, gateway, book):
    gateway.queue("submit_combination_order", OrderResult.failed("insufficient margin"))

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ERROR
    assert trade.entry_order_id is None
    assert trade.errors == ["Entry order rejected: insufficient margin"]
    assert gateway.calls_to("submit_dependent_order") == []
    assert trade.id not in book


async def test_take_profit_rejected_leaves_trade_entered(manager, repository, gateway, book):
    gateway.queue("submit_dependent_order", OrderResult.failed("parent not filled"))

    trade = await manager.enter_position(await stored(repository), ACCOUNT_ID, ENTRY_TIME)

    assert trade.status == TradeStatus.ENTERED
    assert trade.entry_order_id
    assert trade.take_profit_order_id is None
    assert trade.take_profit_attempts == 1
    assert "parent not filled" in trade.errors[0]
    assert book.get(trade.id).status == TradeStatus.ENTERED


async def test_storage_failure_aborts_before_any_order(manager, repository, gateway):
    strategy = await stored(repository)
    repository.fail_writes = True

    trade = await manager.enter_position(strategy, ACCOUNT_ID, ENTRY_TIME)

    assert trade is None
    assert gateway.calls == []


async def test_stamp_keeps_edits_made_during_the_tick(manager, repository, gateway):
    strategy = await stored(repository)
    stale = strategy.model_copy(deep=True)
    await repository.toggle_strategy_active(strategy.id, False)

    trade = await manager.enter_position(stale, ACCOUNT_ID, ENTRY_TIME)

    assert trade is None
    assert repository.strategies[strategy.id].is_active is False
    assert repository.strategies[strategy.id].last_executed == "2025-01-06T09:32"
    assert gateway.calls == []
    assert repository.trades == {}


async def test_entry_uses_stored_strategy(manager, repository, gateway):
    strategy = await stored(repository)
    stale = strategy.model_copy(deep=True)
    strategy.tp = 50
    await repository.upsert_strategy(strategy)

    await manager.enter_position(stale, ACCOUNT_ID, ENTRY_TIME)

    assert repository.strategies[strategy.id].tp == 50
    (_, _, _, target), = gateway.calls_to("submit_dependent_order")
    assert target == 76.5


async def test_deleted_strategy_not_entered(manager, gateway):
    trade = await manager.enter_position(make_strategy(), ACCOUNT_ID, ENTRY_TIME)

    assert trade is None
    assert gateway.calls == []

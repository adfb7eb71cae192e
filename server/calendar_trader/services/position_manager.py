"""
Calendar spread entry

enter_position walks a new trade record through

    WAITING -> ENTERED -> TAKE_PROFIT_ORDER_PLACED

persisting after every step. Failures before the entry order is sent end
in ERROR; a failed take-profit leaves the trade ENTERED for the monitor to
retry.
"""
import math
from datetime import datetime
from typing import List, Optional, Tuple

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.core.monitoring import AlertManager, AlertSeverity, ErrorMonitoring
from calendar_trader.schemas.gateway import OptionContract, OrderLeg
from calendar_trader.schemas.strategy import Strategy, StrategyTrade, TradePosition, TradeStatus
from calendar_trader.services.conditions import minute_stamp
from calendar_trader.services.exceptions import RepositoryError
from calendar_trader.services.market_gateway import MarketGateway
from calendar_trader.services.trade_book import TradeBook

logger = get_logger(__name__)


def select_legs(contracts: List[OptionContract]) -> Optional[Tuple[OptionContract, OptionContract]]:
    """Near leg is the earliest expiry, far leg the next later one"""
    ordered = sorted(contracts, key=lambda c: c.expiry)
    near = ordered[0]
    for candidate in ordered[1:]:
        if candidate.expiry > near.expiry:
            return near, candidate
    return None


def contracts_for(max_cost: float, spread: float) -> int:
    """Whole spreads affordable within max_cost; 0 for a non-positive spread"""
    if spread <= 0:
        return 0
    return math.floor(max_cost / (spread * settings.executor.contract_multiplier))


class PositionManager:
    """Opens calendar spreads and places their take-profit orders"""

    def __init__(self, repository, gateway: MarketGateway, book: TradeBook):
        self.repository = repository
        self.gateway = gateway
        self.book = book

    async def enter_position(
        self,
        strategy: Strategy,
        account_id: str,
        now: datetime,
    ) -> Optional[StrategyTrade]:
        """
        Open a calendar spread for strategy

        Returns:
            The trade record in its final state for this attempt, or None
            when the attempt was aborted before anything was stored
        """
        # Step 1: stamp the attempt and create the record
        try:
            stored = await self.repository.mark_executed(strategy.id, minute_stamp(now))
        except RepositoryError as e:
            logger.error("Failed to stamp strategy, entry aborted", error=e, strategy_id=strategy.id)
            return None

        # Edits made while this tick was running win over the tick's copy
        if stored is None:
            logger.warning("Strategy deleted before entry, entry aborted", strategy_id=strategy.id)
            return None
        if not stored.is_active:
            logger.info("Strategy deactivated before entry, entry aborted", strategy_id=strategy.id)
            return None
        strategy = stored

        trade = StrategyTrade(strategy_id=strategy.id, status=TradeStatus.WAITING)
        if not await self.book.persist(trade):
            logger.error("Failed to create trade record, entry aborted", strategy_id=strategy.id)
            return None

        async with self.book.lock_for(trade.id):
            return await self._enter(trade, strategy, account_id, now)

    async def _enter(
        self,
        trade: StrategyTrade,
        strategy: Strategy,
        account_id: str,
        now: datetime,
    ) -> Optional[StrategyTrade]:
        # Step 2: option search
        try:
            options = await self.gateway.find_options(
                strategy.delta,
                [strategy.d1, strategy.d2],
                strategy.right,
                as_of=now.date(),
            )
        except Exception as e:
            ErrorMonitoring.capture_exception(e, context={"strategy_id": strategy.id, "step": "find_options"})
            trade.fail(f"Option search failed: {e}")
            await self.book.persist(trade)
            return trade

        if len(options) < 2:
            trade.fail(
                f"Found {len(options)} option contract(s) for delta {strategy.delta} "
                f"and offsets {strategy.d1}/{strategy.d2}; need a near and a far leg"
            )
            await self.book.persist(trade)
            return trade

        # Step 3: near and far legs
        legs = select_legs(options)
        if legs is None:
            trade.fail("Option search returned a single expiration; need a near and a far leg")
            await self.book.persist(trade)
            return trade
        near, far = legs

        # Steps 4-5: spread price and size
        spread = far.mid - near.mid
        contracts = contracts_for(strategy.max_cost, spread)
        if contracts <= 0:
            trade.fail(
                f"Insufficient funds for one contract: spread {spread:.2f}, max cost {strategy.max_cost:.2f}"
            )
            await self.book.persist(trade)
            return trade

        # Step 6: record the position before any order goes out
        trade.entry_price = spread
        trade.entry_time = now
        trade.contracts = contracts
        trade.position = TradePosition(
            near_option=near.symbol,
            far_option=far.symbol,
            near_conid=near.conid,
            far_conid=far.conid,
            near_expiration=near.expiry,
            far_expiration=far.expiry,
            strike=near.strike,
            right=strategy.right,
        )
        trade.status = TradeStatus.ENTERED
        if not await self.book.persist(trade):
            logger.error("Failed to persist entry details, no order sent", trade_id=trade.id)
            return None

        # Step 7: entry order
        result = await self.gateway.submit_combination_order(
            account_id,
            [
                OrderLeg(conid=near.conid, side="SELL", quantity=contracts),
                OrderLeg(conid=far.conid, side="BUY", quantity=contracts),
            ],
            strategy.max_cost,
        )
        if not result.ok:
            trade.fail(f"Entry order rejected: {result.error}")
            await self.book.persist(trade)
            return trade

        trade.entry_order_id = result.id
        await self.book.persist(trade)

        logger.log_business_event("trade_entered", {
            "strategy_id": strategy.id,
            "trade_id": trade.id,
            "entry_order_id": trade.entry_order_id,
            "contracts": contracts,
            "entry_price": spread,
            "near": near.symbol,
            "far": far.symbol,
        })

        # Step 8: take-profit
        await self.place_take_profit(trade, strategy, account_id)
        return trade

    async def place_take_profit(self, trade: StrategyTrade, strategy: Strategy, account_id: str) -> bool:
        """
        Attach a take-profit limit order to the entry order.

        On success the trade moves to TAKE_PROFIT_ORDER_PLACED; on failure
        it stays ENTERED with the error logged on the record.
        """
        target_price = round(trade.entry_price * (1 + strategy.tp / 100), 2)
        trade.take_profit_attempts += 1

        result = await self.gateway.submit_dependent_order(account_id, trade.entry_order_id, target_price)
        if result.ok:
            trade.take_profit_order_id = result.id
            trade.status = TradeStatus.TAKE_PROFIT_ORDER_PLACED
            logger.log_business_event("take_profit_placed", {
                "trade_id": trade.id,
                "order_id": result.id,
                "target_price": target_price,
            })
        else:
            max_attempts = settings.executor.take_profit_max_attempts
            trade.status = TradeStatus.ENTERED
            trade.add_error(
                f"Take-profit order failed (attempt {trade.take_profit_attempts}/{max_attempts}): {result.error}"
            )
            if trade.take_profit_attempts >= max_attempts:
                AlertManager.send_alert(
                    title="Take-profit not placed",
                    message=f"Trade {trade.id} holds a position without a take-profit order",
                    severity=AlertSeverity.HIGH,
                    context={"trade_id": trade.id, "strategy_id": trade.strategy_id}
                )

        await self.book.persist(trade)
        return result.ok

"""
Open trade lifecycle

TradeMonitor.check_trade advances one trade record per call:

- time exit on the near expiration day at t2
- take-profit placement retries
- take-profit fill polling
- averaging down and take-profit re-placement afterwards
- exit fill confirmation
"""
import asyncio
from datetime import datetime
from typing import Optional

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.core.monitoring import AlertManager, AlertSeverity
from calendar_trader.schemas.gateway import OrderLeg
from calendar_trader.schemas.strategy import POSITION_STATUSES, Strategy, StrategyTrade, TradeStatus
from calendar_trader.services.conditions import evaluate_averaging, is_exit_time
from calendar_trader.services.external.base import ExternalAPIError
from calendar_trader.services.market_gateway import MarketGateway
from calendar_trader.services.position_manager import PositionManager
from calendar_trader.services.trade_book import TradeBook

logger = get_logger(__name__)


def realized_pnl(trade: StrategyTrade) -> Optional[float]:
    if trade.exit_price is None or trade.entry_price is None:
        return None
    return round(
        (trade.exit_price - trade.entry_price) * trade.contracts * settings.executor.contract_multiplier,
        2,
    )


class TradeMonitor:
    """Re-evaluates open trade records on every executor tick"""

    def __init__(
        self,
        gateway: MarketGateway,
        book: TradeBook,
        position_manager: PositionManager,
        confirm_attempts: Optional[int] = None,
        confirm_poll_seconds: Optional[float] = None,
    ):
        self.gateway = gateway
        self.book = book
        self.position_manager = position_manager
        self.confirm_attempts = confirm_attempts or settings.executor.confirm_attempts
        self.confirm_poll_seconds = (
            settings.executor.confirm_poll_seconds if confirm_poll_seconds is None else confirm_poll_seconds
        )

    async def check_trade(
        self,
        trade: StrategyTrade,
        strategy: Optional[Strategy],
        account_id: str,
        now: datetime,
    ) -> StrategyTrade:
        """Advance trade by at most one lifecycle step and persist the result"""
        if trade.is_terminal:
            return trade

        if trade.status == TradeStatus.TAKE_PROFIT_EXECUTED:
            await self._complete(trade, "take_profit_executed")
            return trade

        # Past t2 a trade keeps closing its legs whatever the time
        if trade.status == TradeStatus.EXITED_BY_TIME:
            if not trade.has_exit_orders:
                await self._close_legs(trade, account_id)
                if not await self.book.persist(trade) or not trade.has_exit_orders:
                    return trade
            await self._confirm_exit(trade, account_id, attempts=1)
            return trade

        if strategy is None:
            trade.fail("Strategy not found")
            await self.book.persist(trade)
            return trade

        if trade.entry_order_id and trade.status in POSITION_STATUSES and is_exit_time(strategy, trade, now):
            await self._exit_by_time(trade, account_id, now)
            return trade

        if trade.status == TradeStatus.ENTERED:
            if (
                trade.entry_order_id
                and not trade.take_profit_order_id
                and trade.take_profit_attempts < settings.executor.take_profit_max_attempts
            ):
                await self.position_manager.place_take_profit(trade, strategy, account_id)
            return trade

        if trade.status == TradeStatus.AVERAGING:
            await self._replace_take_profit(trade, strategy, account_id)
            return trade

        if trade.status == TradeStatus.TAKE_PROFIT_ORDER_PLACED:
            if await self._poll_take_profit(trade, strategy, account_id, now):
                return trade
            if strategy.has_averaging_policy:
                await self._check_averaging(trade, strategy, account_id, now)

        return trade

    async def _poll_take_profit(
        self,
        trade: StrategyTrade,
        strategy: Strategy,
        account_id: str,
        now: datetime,
    ) -> bool:
        """Returns True when the take-profit order reached a final state"""
        try:
            status = await self.gateway.get_order_status(account_id, trade.take_profit_order_id)
        except ExternalAPIError as e:
            logger.warning("Take-profit status unavailable", trade_id=trade.id, error_message=str(e))
            return False

        if status.is_filled:
            trade.status = TradeStatus.TAKE_PROFIT_EXECUTED
            trade.exit_time = now
            trade.exit_price = (
                status.avg_price
                if status.avg_price is not None
                else round(trade.entry_price * (1 + strategy.tp / 100), 2)
            )
            trade.pnl = realized_pnl(trade)
            if await self.book.persist(trade):
                await self._complete(trade, "take_profit_executed")
            return True

        if status.is_dead:
            trade.add_error(f"Take-profit order {trade.take_profit_order_id} {status.status}")
            trade.take_profit_order_id = None
            trade.status = TradeStatus.ENTERED
            await self.book.persist(trade)
            return True

        return False

    async def _check_averaging(
        self,
        trade: StrategyTrade,
        strategy: Strategy,
        account_id: str,
        now: datetime,
    ) -> None:
        position = trade.position
        if position is None:
            return

        try:
            quotes = await self.gateway.get_option_quotes([position.near_conid, position.far_conid])
        except ExternalAPIError as e:
            logger.warning("Quotes unavailable for averaging check", trade_id=trade.id, error_message=str(e))
            return

        by_conid = {q.conid: q for q in quotes}
        near = by_conid.get(position.near_conid)
        far = by_conid.get(position.far_conid)
        if near is None or far is None:
            return

        decision = evaluate_averaging(strategy, trade, now, far.mid - near.mid)
        if decision is None:
            return

        result = await self.gateway.submit_combination_order(
            account_id,
            [
                OrderLeg(conid=position.near_conid, side="SELL", quantity=decision.contracts),
                OrderLeg(conid=position.far_conid, side="BUY", quantity=decision.contracts),
            ],
            strategy.averaging_amount,
        )
        trade.last_averaging_at = decision.time_point

        if result.ok:
            total = trade.contracts + decision.contracts
            trade.entry_price = (
                trade.entry_price * trade.contracts + decision.price * decision.contracts
            ) / total
            trade.contracts = total
            trade.averaging_order_ids.append(result.id)
            trade.status = TradeStatus.AVERAGING
            logger.log_business_event("position_averaged", {
                "trade_id": trade.id,
                "order_id": result.id,
                "added_contracts": decision.contracts,
                "drop_pct": decision.drop_pct,
                "entry_price": trade.entry_price,
            })
        else:
            trade.add_error(f"Averaging order rejected: {result.error}")

        await self.book.persist(trade)

    async def _replace_take_profit(self, trade: StrategyTrade, strategy: Strategy, account_id: str) -> None:
        """Swap the take-profit for one covering the averaged position"""
        if trade.take_profit_order_id:
            if not await self.gateway.cancel_order(account_id, trade.take_profit_order_id):
                trade.add_error(f"Failed to cancel take-profit order {trade.take_profit_order_id} after averaging")
                await self.book.persist(trade)
                return
            trade.take_profit_order_id = None

        trade.take_profit_attempts = 0
        await self.position_manager.place_take_profit(trade, strategy, account_id)

    async def _complete(self, trade: StrategyTrade, event: str) -> None:
        trade.status = TradeStatus.COMPLETED
        if not await self.book.persist(trade):
            return
        logger.log_business_event(event, {
            "trade_id": trade.id,
            "exit_price": trade.exit_price,
            "pnl": trade.pnl,
        })

    async def _exit_by_time(self, trade: StrategyTrade, account_id: str, now: datetime) -> None:
        """Close both legs at market on the near expiration day"""
        if trade.take_profit_order_id:
            if await self.gateway.cancel_order(account_id, trade.take_profit_order_id):
                trade.take_profit_order_id = None
            else:
                trade.add_error(f"Failed to cancel take-profit order {trade.take_profit_order_id} before time exit")

        await self._close_legs(trade, account_id)

        trade.status = TradeStatus.EXITED_BY_TIME
        trade.exit_time = now
        if not await self.book.persist(trade):
            return

        logger.log_business_event("exited_by_time", {
            "trade_id": trade.id,
            "near_order_id": trade.exit_order_id,
            "far_order_id": trade.far_exit_order_id,
        })

        if not trade.has_exit_orders:
            AlertManager.send_alert(
                title="Time exit incomplete",
                message=f"Trade {trade.id} could not close both legs at market; the missing leg is resent on every check",
                severity=AlertSeverity.CRITICAL,
                context={"trade_id": trade.id, "strategy_id": trade.strategy_id}
            )
            return

        await self._confirm_exit(trade, account_id, attempts=self.confirm_attempts)

    async def _close_legs(self, trade: StrategyTrade, account_id: str) -> None:
        """Send a market close for every leg without a close order"""
        position = trade.position

        if not trade.exit_order_id:
            near = await self.gateway.submit_market_order(account_id, position.near_conid, "BUY", trade.contracts)
            if near.ok:
                trade.exit_order_id = near.id
            else:
                trade.add_error(f"Near leg close rejected: {near.error}")

        if not trade.far_exit_order_id:
            far = await self.gateway.submit_market_order(account_id, position.far_conid, "SELL", trade.contracts)
            if far.ok:
                trade.far_exit_order_id = far.id
            else:
                trade.add_error(f"Far leg close rejected: {far.error}")

    async def _confirm_exit(self, trade: StrategyTrade, account_id: str, attempts: int) -> None:
        """Poll both close orders; COMPLETED once both are filled"""
        for attempt in range(attempts):
            try:
                near = await self.gateway.get_order_status(account_id, trade.exit_order_id)
                far = await self.gateway.get_order_status(account_id, trade.far_exit_order_id)
            except ExternalAPIError as e:
                logger.warning("Exit order status unavailable", trade_id=trade.id, error_message=str(e))
                return

            if near.is_filled and far.is_filled:
                if near.avg_price is not None and far.avg_price is not None:
                    trade.exit_price = far.avg_price - near.avg_price
                    trade.pnl = realized_pnl(trade)
                await self._complete(trade, "time_exit_completed")
                return

            dead = [s for s in (near, far) if s.is_dead]
            if dead:
                trade.fail(", ".join(f"Close order {s.order_id} {s.status}" for s in dead))
                await self.book.persist(trade)
                AlertManager.send_alert(
                    title="Time exit order not filled",
                    message=f"Trade {trade.id} close order was {dead[0].status}; position may still be open",
                    severity=AlertSeverity.CRITICAL,
                    context={"trade_id": trade.id, "strategy_id": trade.strategy_id}
                )
                return

            if attempt < attempts - 1:
                await asyncio.sleep(self.confirm_poll_seconds)

        logger.info("Time exit not yet confirmed", trade_id=trade.id)

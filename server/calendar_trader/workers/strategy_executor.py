"""
Strategy Executor Worker
Wakes on a fixed interval, enters due strategies and advances open trades
"""
import asyncio
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger, set_strategy_id, set_trade_id
from calendar_trader.core.monitoring import ErrorMonitoring, monitor_performance
from calendar_trader.schemas.strategy import StrategyTrade, TradeStatus
from calendar_trader.services.conditions import check_entry_conditions, has_open_trade
from calendar_trader.services.exceptions import ExecutorConfigError, ExecutorStateError, RepositoryError
from calendar_trader.services.market_gateway import MarketGateway
from calendar_trader.services.position_manager import PositionManager
from calendar_trader.services.strategy_repository import StrategyRepository
from calendar_trader.services.trade_book import TradeBook
from calendar_trader.services.trade_monitor import TradeMonitor

logger = get_logger(__name__)

ENTRY_INTERRUPTED = "Entry interrupted before any order was placed"
ENTRY_OUTCOME_UNKNOWN = "Entry order outcome unknown; check the brokerage account"


def market_now() -> datetime:
    """Current time in the market timezone"""
    return datetime.now(ZoneInfo(settings.market_timezone))


class StrategyExecutor:
    """
    Scheduler loop for strategy entry and trade monitoring.

    One asyncio task runs tick() then waits `interval` seconds or until
    stop() is called. Ticks never overlap: the loop and manual tick()
    calls share tick_lock.
    """

    def __init__(
        self,
        repository: StrategyRepository,
        gateway: MarketGateway,
        clock: Optional[Callable[[], datetime]] = None,
        interval: Optional[float] = None,
        confirm_attempts: Optional[int] = None,
        confirm_poll_seconds: Optional[float] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.clock = clock or market_now
        self.interval = interval if interval is not None else settings.executor.tick_interval_seconds

        self.book = TradeBook(repository)
        self.position_manager = PositionManager(repository, gateway, self.book)
        self.monitor = TradeMonitor(
            gateway,
            self.book,
            self.position_manager,
            confirm_attempts=confirm_attempts,
            confirm_poll_seconds=confirm_poll_seconds,
        )

        self.tick_lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._account_id: Optional[str] = None

        self.tick_count = 0
        self.last_tick_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self._task is not None and not self._task.done()

    def current_account(self) -> Optional[str]:
        return self._account_id

    def get_active_trades(self) -> List[StrategyTrade]:
        return self.book.snapshot()

    def status(self) -> Dict[str, Any]:
        return {
            "isActive": self.is_active(),
            "accountId": self._account_id,
            "intervalSeconds": self.interval,
            "activeTrades": len(self.book),
            "tickCount": self.tick_count,
            "lastTickAt": self.last_tick_at.isoformat() if self.last_tick_at else None,
        }

    async def start(self, account_id: Optional[str] = None) -> None:
        """
        Load open trades and start the loop

        Raises:
            ExecutorConfigError: no account id given or configured
            ExecutorStateError: the loop is already running
            RepositoryError: open trades could not be loaded
        """
        account_id = account_id or settings.ibkr_account_id
        if not account_id:
            raise ExecutorConfigError("An account id is required to start the executor")
        if self.is_active():
            raise ExecutorStateError("Executor is already running")

        await self.load_active_trades()

        self._account_id = account_id
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="strategy-executor")

        logger.log_business_event("executor_started", {
            "account_id": account_id,
            "interval_seconds": self.interval,
            "active_trades": len(self.book),
        })

    async def stop(self) -> None:
        """Stop the loop; an in-flight tick finishes first. Safe to call twice."""
        task = self._task
        if task is None:
            return

        self._stop_event.set()
        await task

        self._task = None
        self._account_id = None
        self.book.clear()
        logger.log_business_event("executor_stopped", {"tick_count": self.tick_count})

    async def load_active_trades(self) -> None:
        """
        Rebuild the active cache from the repository.

        A WAITING record was interrupted before any order went out and is
        failed. A TAKE_PROFIT_EXECUTED record only missed its final write
        and is completed. An ENTERED record without an entry order id may or may not
        have an order at the broker; it is flagged once and left open.
        """
        trades = await self.repository.list_trades()
        self.book.load(trades)

        for trade in self.book.snapshot():
            if trade.status == TradeStatus.WAITING:
                trade.fail(ENTRY_INTERRUPTED)
                await self.book.persist(trade)
            elif trade.status == TradeStatus.TAKE_PROFIT_EXECUTED:
                trade.status = TradeStatus.COMPLETED
                await self.book.persist(trade)
            elif (
                trade.status == TradeStatus.ENTERED
                and not trade.entry_order_id
                and ENTRY_OUTCOME_UNKNOWN not in trade.errors
            ):
                trade.add_error(ENTRY_OUTCOME_UNKNOWN)
                await self.book.persist(trade)

        logger.info("Active trades loaded", count=len(self.book))

    async def _run(self) -> None:
        logger.info("Executor loop started", interval_seconds=self.interval)
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    logger.error("Executor tick failed", error=e)
                    ErrorMonitoring.capture_exception(e, context={"component": "strategy_executor"})

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("Executor loop exited")

    @monitor_performance("executor.tick")
    async def tick(self, account_id: Optional[str] = None) -> Dict[str, int]:
        """
        Run one evaluation pass

        Args:
            account_id: Account for a pass outside the running loop

        Returns:
            Counts of strategies evaluated, trades entered and trades monitored
        """
        async with self.tick_lock:
            account = account_id or self._account_id
            if not account:
                raise ExecutorStateError("Executor is not running and no account id was given")

            started = time.perf_counter()
            now = self.clock()
            summary = {"strategies": 0, "entered": 0, "monitored": 0}

            try:
                strategies = await self.repository.list_strategies()
            except RepositoryError as e:
                logger.error("Failed to load strategies, tick skipped", error=e)
                return summary

            for strategy in strategies:
                if not strategy.is_active:
                    continue
                summary["strategies"] += 1
                set_strategy_id(strategy.id)
                try:
                    if has_open_trade(strategy.id, self.book.snapshot()):
                        continue
                    if not await check_entry_conditions(strategy, now, self.gateway):
                        continue
                    trade = await self.position_manager.enter_position(strategy, account, now)
                    if trade is not None:
                        summary["entered"] += 1
                except Exception as e:
                    logger.error("Strategy evaluation failed", error=e)
                    ErrorMonitoring.capture_exception(e, context={"strategy_id": strategy.id})
                finally:
                    set_strategy_id(None)

            # Deactivated strategies still own their open trades
            strategies_by_id = {s.id: s for s in strategies}
            for snapshot in self.book.snapshot():
                set_trade_id(snapshot.id)
                try:
                    async with self.book.lock_for(snapshot.id):
                        trade = self.book.get(snapshot.id)
                        if trade is None:
                            continue
                        await self.monitor.check_trade(
                            trade,
                            strategies_by_id.get(trade.strategy_id),
                            account,
                            now,
                        )
                        summary["monitored"] += 1
                except Exception as e:
                    logger.error("Trade check failed", error=e)
                    ErrorMonitoring.capture_exception(e, context={"trade_id": snapshot.id})
                finally:
                    set_trade_id(None)

            self.tick_count += 1
            self.last_tick_at = now
            logger.log_performance_metric("executor_tick", time.perf_counter() - started, **summary)
            return summary


_executor: Optional[StrategyExecutor] = None


def set_strategy_executor(executor: Optional[StrategyExecutor]) -> None:
    """Install the process-wide executor (application startup and tests)"""
    global _executor
    _executor = executor


def get_strategy_executor() -> StrategyExecutor:
    """Process-wide executor, built from settings on first use"""
    global _executor
    if _executor is None:
        from calendar_trader.core.database import async_session_maker
        from calendar_trader.services.external.ibkr_gateway import IBKRGateway
        from calendar_trader.services.strategy_repository import build_repository

        repository = build_repository(async_session_maker, settings.local_store_path)
        _executor = StrategyExecutor(repository, IBKRGateway())
    return _executor


async def reset_strategy_executor() -> None:
    """Stop and discard the process-wide executor"""
    global _executor
    executor = _executor
    _executor = None
    if executor is not None:
        await executor.stop()
        await executor.gateway.close()

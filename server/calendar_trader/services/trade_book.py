"""
In-memory set of non-terminal trade records, kept in step with the repository
"""
import asyncio
from typing import Dict, Iterable, List, Optional

from calendar_trader.core.logging import get_logger
from calendar_trader.core.monitoring import AlertManager, AlertSeverity
from calendar_trader.schemas.strategy import StrategyTrade
from calendar_trader.services.exceptions import RepositoryError
from calendar_trader.services.strategy_repository import StrategyRepository

logger = get_logger(__name__)


class TradeBook:
    """
    Active trade cache keyed by trade id, with one asyncio.Lock per trade.

    The cache changes only through a successful persist(); a record that
    reaches a terminal status leaves the cache in the same step. Readers get
    deep copies.
    """

    def __init__(self, repository: StrategyRepository):
        self.repository = repository
        self._trades: Dict[str, StrategyTrade] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._trades)

    def __contains__(self, trade_id: str) -> bool:
        return trade_id in self._trades

    def load(self, trades: Iterable[StrategyTrade]) -> None:
        """Replace the cache with the non-terminal records among trades"""
        self._trades = {
            t.id: t.model_copy(deep=True) for t in trades if not t.is_terminal
        }
        self._locks = {trade_id: self._locks.get(trade_id, asyncio.Lock()) for trade_id in self._trades}

    def clear(self) -> None:
        self._trades.clear()
        self._locks.clear()

    def lock_for(self, trade_id: str) -> asyncio.Lock:
        if trade_id not in self._locks:
            self._locks[trade_id] = asyncio.Lock()
        return self._locks[trade_id]

    def get(self, trade_id: str) -> Optional[StrategyTrade]:
        trade = self._trades.get(trade_id)
        return trade.model_copy(deep=True) if trade else None

    def snapshot(self) -> List[StrategyTrade]:
        return [t.model_copy(deep=True) for t in self._trades.values()]

    async def persist(self, trade: StrategyTrade) -> bool:
        """
        Write a trade to the repository and mirror it into the cache.

        Returns False when the write failed; the cache then keeps the last
        successfully stored version.
        """
        try:
            await self.repository.upsert_trade(trade)
        except RepositoryError as e:
            if not trade.entry_order_id or trade.is_terminal:
                logger.error(
                    "Failed to persist trade",
                    error=e,
                    trade_id=trade.id,
                    status=trade.status.value
                )
            else:
                logger.critical(
                    "Failed to persist trade with live orders",
                    error_message=str(e),
                    trade_id=trade.id,
                    status=trade.status.value
                )
                AlertManager.send_alert(
                    title="Trade state not persisted",
                    message=f"Trade {trade.id} holds live orders but its {trade.status.value} state was not saved",
                    severity=AlertSeverity.CRITICAL,
                    context={"trade_id": trade.id, "strategy_id": trade.strategy_id}
                )
            return False

        if trade.is_terminal:
            self._trades.pop(trade.id, None)
            self._locks.pop(trade.id, None)
        else:
            self._trades[trade.id] = trade.model_copy(deep=True)
        return True

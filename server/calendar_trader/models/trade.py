"""
Strategy trade lifecycle model
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, DateTime, Integer, Float, JSON
from sqlalchemy.orm import Mapped, mapped_column

from calendar_trader.core.database import Base
from calendar_trader.schemas.strategy import StrategyTrade, TradePosition, TradeStatus


class TradeRow(Base):
    """
    One activation of a strategy.

    strategy_id is not a foreign key: trade history outlives deleted
    strategies and the monitor fails orphaned open trades itself.
    """
    __tablename__ = "strategy_trades"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True, index=True)
    strategy_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=TradeStatus.WAITING.value,
        index=True,
        comment="waiting, entered, takeProfitOrderPlaced, takeProfitExecuted, exitedByTime, averaging, completed, error"
    )

    entry_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    exit_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    entry_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    exit_price: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    contracts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pnl: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Both legs, stored all-or-nothing
    position: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Broker order ids
    entry_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    take_profit_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    exit_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    far_exit_order_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    averaging_order_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    take_profit_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_averaging_at: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    errors: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<TradeRow(id={self.id}, strategy_id={self.strategy_id}, status={self.status})>"

    def apply(self, trade: StrategyTrade) -> "TradeRow":
        """Copy every field of a StrategyTrade onto this row"""
        self.id = trade.id
        self.strategy_id = trade.strategy_id
        self.status = trade.status.value
        self.entry_time = trade.entry_time
        self.exit_time = trade.exit_time
        self.entry_price = trade.entry_price
        self.exit_price = trade.exit_price
        self.contracts = trade.contracts
        self.pnl = trade.pnl
        self.position = trade.position.model_dump(mode="json") if trade.position else None
        self.entry_order_id = trade.entry_order_id
        self.take_profit_order_id = trade.take_profit_order_id
        self.exit_order_id = trade.exit_order_id
        self.far_exit_order_id = trade.far_exit_order_id
        self.averaging_order_ids = list(trade.averaging_order_ids)
        self.take_profit_attempts = trade.take_profit_attempts
        self.last_averaging_at = trade.last_averaging_at
        self.errors = list(trade.errors)
        self.created_at = trade.created_at
        self.updated_at = trade.updated_at
        return self

    def to_schema(self) -> StrategyTrade:
        return StrategyTrade(
            id=self.id,
            strategy_id=self.strategy_id,
            status=TradeStatus(self.status),
            entry_time=self.entry_time,
            exit_time=self.exit_time,
            entry_price=self.entry_price,
            exit_price=self.exit_price,
            contracts=self.contracts,
            pnl=self.pnl,
            position=TradePosition.model_validate(self.position) if self.position else None,
            entry_order_id=self.entry_order_id,
            take_profit_order_id=self.take_profit_order_id,
            exit_order_id=self.exit_order_id,
            far_exit_order_id=self.far_exit_order_id,
            averaging_order_ids=list(self.averaging_order_ids or []),
            take_profit_attempts=self.take_profit_attempts,
            last_averaging_at=self.last_averaging_at,
            errors=list(self.errors or []),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

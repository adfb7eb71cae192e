"""
Strategy definition model
"""
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy import String, Boolean, DateTime, Integer, Float, Text, JSON
from sqlalchemy.orm import Mapped, mapped_column

from calendar_trader.core.database import Base
from calendar_trader.schemas.strategy import Strategy, ValueRange, StrategyResults, utcnow


def _range_or_none(data: Optional[Dict[str, Any]]) -> Optional[ValueRange]:
    return ValueRange.model_validate(data) if data else None


class StrategyRow(Base):
    """Stored strategy schedule"""
    __tablename__ = "strategies"

    # Primary key
    id: Mapped[str] = mapped_column(String(36), primary_key=True, index=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False, default="SPX Strategy")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)

    # Schedule
    day_of_week: Mapped[int] = mapped_column(Integer, nullable=False, comment="0 = Sunday")
    delta: Mapped[float] = mapped_column(Float, nullable=False)
    d1: Mapped[int] = mapped_column(Integer, nullable=False)
    d2: Mapped[int] = mapped_column(Integer, nullable=False)
    t1: Mapped[str] = mapped_column(String(5), nullable=False, comment="Entry time HH-MM")
    t2: Mapped[str] = mapped_column(String(5), nullable=False, comment="Exit time HH-MM")
    tp: Mapped[float] = mapped_column(Float, nullable=False)
    max_cost: Mapped[float] = mapped_column(Float, nullable=False)

    # Optional {min, max} filters
    vix: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    vix_overnight_range: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    vix_intraday_range: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Averaging policy
    averaging_drop_pct: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    averaging_times: Mapped[Optional[List[str]]] = mapped_column(JSON, nullable=True)
    averaging_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_executed: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    results: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow
    )

    def __repr__(self) -> str:
        return f"<StrategyRow(id={self.id}, name={self.name}, active={self.is_active})>"

    def apply(self, strategy: Strategy) -> "StrategyRow":
        """Copy every field of a Strategy onto this row"""
        self.id = strategy.id
        self.name = strategy.name
        self.is_active = strategy.is_active
        self.day_of_week = strategy.day_of_week
        self.delta = strategy.delta
        self.d1 = strategy.d1
        self.d2 = strategy.d2
        self.t1 = strategy.t1
        self.t2 = strategy.t2
        self.tp = strategy.tp
        self.max_cost = strategy.max_cost
        self.vix = strategy.vix.model_dump() if strategy.vix else None
        self.vix_overnight_range = (
            strategy.vix_overnight_range.model_dump() if strategy.vix_overnight_range else None
        )
        self.vix_intraday_range = (
            strategy.vix_intraday_range.model_dump() if strategy.vix_intraday_range else None
        )
        self.averaging_drop_pct = strategy.averaging_drop_pct
        self.averaging_times = list(strategy.averaging_times) if strategy.averaging_times else None
        self.averaging_amount = strategy.averaging_amount
        self.description = strategy.description
        self.last_executed = strategy.last_executed
        self.results = strategy.results.model_dump() if strategy.results else None
        return self

    def to_schema(self) -> Strategy:
        return Strategy(
            id=self.id,
            name=self.name,
            is_active=self.is_active,
            day_of_week=self.day_of_week,
            delta=self.delta,
            d1=self.d1,
            d2=self.d2,
            t1=self.t1,
            t2=self.t2,
            tp=self.tp,
            max_cost=self.max_cost,
            vix=_range_or_none(self.vix),
            vix_overnight_range=_range_or_none(self.vix_overnight_range),
            vix_intraday_range=_range_or_none(self.vix_intraday_range),
            averaging_drop_pct=self.averaging_drop_pct,
            averaging_times=self.averaging_times,
            averaging_amount=self.averaging_amount,
            description=self.description,
            last_executed=self.last_executed,
            results=StrategyResults.model_validate(self.results) if self.results else None,
        )

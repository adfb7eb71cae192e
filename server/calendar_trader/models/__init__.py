"""
Database models for the Calendar Trader service
"""
from calendar_trader.models.strategy import StrategyRow
from calendar_trader.models.trade import TradeRow

__all__ = [
    "StrategyRow",
    "TradeRow",
]

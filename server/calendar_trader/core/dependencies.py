"""
Common dependencies for FastAPI endpoints
"""
from fastapi import Depends

from calendar_trader.services.market_gateway import MarketGateway
from calendar_trader.services.strategy_repository import StrategyRepository
from calendar_trader.workers.strategy_executor import StrategyExecutor, get_strategy_executor


def get_executor() -> StrategyExecutor:
    """Process-wide strategy executor"""
    return get_strategy_executor()


def get_repository(executor: StrategyExecutor = Depends(get_executor)) -> StrategyRepository:
    """Repository shared with the executor so both see the same store"""
    return executor.repository


def get_gateway(executor: StrategyExecutor = Depends(get_executor)) -> MarketGateway:
    return executor.gateway

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from calendar_trader.core.dependencies import get_executor, get_repository
from calendar_trader.core.responses import create_success_response
from calendar_trader.services.strategy_repository import StrategyRepository
from calendar_trader.workers.strategy_executor import StrategyExecutor


router = APIRouter()


@router.get("")
async def list_trades(
    strategy_id: Optional[str] = Query(None, description="Only trades of this strategy"),
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    trades = await repository.list_trades(strategy_id)
    return create_success_response(
        data=[t.to_wire() for t in trades],
        message="Trades retrieved successfully",
        metadata={"count": len(trades), "strategyId": strategy_id}
    )


@router.get("/active")
async def list_active_trades(executor: StrategyExecutor = Depends(get_executor)) -> JSONResponse:
    """Open trades tracked by the running executor"""
    trades = executor.get_active_trades()
    return create_success_response(
        data=[t.to_wire() for t in trades],
        message="Active trades retrieved successfully",
        metadata={"count": len(trades), "executorActive": executor.is_active()}
    )

from typing import Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse

from calendar_trader.core.dependencies import get_executor
from calendar_trader.core.logging import get_logger
from calendar_trader.core.responses import create_success_response
from calendar_trader.schemas.strategy import ExecutorStartRequest
from calendar_trader.workers.strategy_executor import StrategyExecutor


logger = get_logger(__name__)
router = APIRouter()


@router.get("/status")
async def executor_status(executor: StrategyExecutor = Depends(get_executor)) -> JSONResponse:
    return create_success_response(data=executor.status(), message="Executor status retrieved")


@router.post("/start")
async def start_executor(
    request: Optional[ExecutorStartRequest] = Body(None),
    executor: StrategyExecutor = Depends(get_executor)
) -> JSONResponse:
    """Start the executor; the account defaults to IBKR_ACCOUNT_ID"""
    await executor.start(request.account_id if request else None)
    return create_success_response(data=executor.status(), message="Executor started")


@router.post("/stop")
async def stop_executor(executor: StrategyExecutor = Depends(get_executor)) -> JSONResponse:
    await executor.stop()
    return create_success_response(data=executor.status(), message="Executor stopped")


@router.post("/tick")
async def run_tick(executor: StrategyExecutor = Depends(get_executor)) -> JSONResponse:
    """Run one evaluation pass now; waits for an in-flight tick"""
    summary = await executor.tick()
    return create_success_response(data=summary, message="Tick completed")

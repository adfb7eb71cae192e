from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse, Response

from calendar_trader.core.dependencies import get_repository
from calendar_trader.core.logging import get_logger
from calendar_trader.core.responses import create_success_response, not_found_error
from calendar_trader.schemas.strategy import ActiveToggleRequest, Strategy, StrategyStringRequest
from calendar_trader.services.strategy_parser import format_strategy_string
from calendar_trader.services.strategy_repository import StrategyRepository
from calendar_trader.services.strategy_results import summarize_results


logger = get_logger(__name__)
router = APIRouter()


def _strategy_data(strategy: Strategy) -> Dict[str, Any]:
    return {**strategy.to_wire(), "strategyString": format_strategy_string(strategy)}


@router.get("")
async def list_strategies(repository: StrategyRepository = Depends(get_repository)) -> JSONResponse:
    strategies = await repository.list_strategies()
    return create_success_response(
        data=[_strategy_data(s) for s in strategies],
        message="Strategies retrieved successfully",
        metadata={"count": len(strategies)}
    )


@router.post("")
async def create_strategy(
    strategy: Strategy,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    saved = await repository.upsert_strategy(strategy)
    logger.info("Strategy saved", strategy_id=saved.id)
    return create_success_response(
        data=_strategy_data(saved),
        message="Strategy saved",
        status_code=status.HTTP_201_CREATED
    )


@router.post("/parse")
async def create_strategy_from_string(
    request: StrategyStringRequest,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    """
    Create a strategy from the compact text format

    Example: `Mon 70 3 4 09-32 15-30 20% 10000`
    """
    saved = await repository.create_strategy_from_string(request.strategy, request.name)
    return create_success_response(
        data=_strategy_data(saved),
        message="Strategy created",
        status_code=status.HTTP_201_CREATED
    )


@router.get("/export")
async def export_strategies(repository: StrategyRepository = Depends(get_repository)) -> Response:
    """All strategies as a downloadable JSON array"""
    content = await repository.export_strategies()
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": 'attachment; filename="strategies.json"'}
    )


@router.post("/import")
async def import_strategies(
    request: Request,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    """Import a JSON array of strategies sent as the request body"""
    text = (await request.body()).decode("utf-8")
    count = await repository.import_strategies(text)
    return create_success_response(
        data={"count": count},
        message=f"Imported {count} strategies"
    )


@router.get("/{strategy_id}")
async def get_strategy(
    strategy_id: str,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    strategy = await repository.get_strategy(strategy_id)
    if strategy is None:
        return not_found_error("Strategy", strategy_id)
    return create_success_response(data=_strategy_data(strategy), message="Strategy retrieved")


@router.put("/{strategy_id}")
async def update_strategy(
    strategy_id: str,
    payload: Dict[str, Any] = Body(...),
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    """Update a strategy; fields missing from the payload keep their stored values"""
    existing = await repository.get_strategy(strategy_id)
    if existing is None:
        return not_found_error("Strategy", strategy_id)

    strategy = Strategy.model_validate({**existing.to_wire(), **payload, "id": strategy_id})
    saved = await repository.upsert_strategy(strategy)
    return create_success_response(data=_strategy_data(saved), message="Strategy updated")


@router.delete("/{strategy_id}")
async def delete_strategy(
    strategy_id: str,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    if not await repository.delete_strategy(strategy_id):
        return not_found_error("Strategy", strategy_id)
    logger.info("Strategy deleted", strategy_id=strategy_id)
    return create_success_response(data={"id": strategy_id}, message="Strategy deleted")


@router.patch("/{strategy_id}/active")
async def toggle_strategy_active(
    strategy_id: str,
    request: ActiveToggleRequest,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    strategy = await repository.toggle_strategy_active(strategy_id, request.is_active)
    if strategy is None:
        return not_found_error("Strategy", strategy_id)
    return create_success_response(
        data=_strategy_data(strategy),
        message="Strategy activated" if strategy.is_active else "Strategy deactivated"
    )


@router.get("/{strategy_id}/results")
async def get_strategy_results(
    strategy_id: str,
    repository: StrategyRepository = Depends(get_repository)
) -> JSONResponse:
    """P&L summary over the strategy's completed trades"""
    strategy = await repository.get_strategy(strategy_id)
    if strategy is None:
        return not_found_error("Strategy", strategy_id)

    results = summarize_results(await repository.list_trades(strategy_id))
    return create_success_response(data=results.to_wire(), message="Strategy results calculated")

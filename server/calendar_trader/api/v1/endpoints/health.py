from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from calendar_trader.core.responses import create_success_response
from calendar_trader.core.cache import cache_manager
from calendar_trader.core.config import settings
from calendar_trader.core.database import DatabaseManager
from calendar_trader.core.dependencies import get_executor
from calendar_trader.workers.strategy_executor import StrategyExecutor


router = APIRouter()


@router.get("")
async def health_check(executor: StrategyExecutor = Depends(get_executor)) -> JSONResponse:
    """
    Detailed health check endpoint
    """
    database_connected = await DatabaseManager.check_connection() if settings.enable_database else None

    is_healthy = not (settings.enable_database and not database_connected)

    health_data = {
        "status": "healthy" if is_healthy else "degraded",
        "service": settings.api.title,
        "version": settings.api.version,
        "environment": settings.environment,
        "cache": {
            "enabled": settings.enable_caching,
            "connected": cache_manager.connected,
            "metrics": cache_manager.get_metrics() if settings.enable_caching else None,
        },
        "database": {
            "enabled": settings.enable_database,
            "connected": database_connected,
        },
        "executor": {
            "active": executor.is_active(),
            "activeTrades": len(executor.get_active_trades()),
        },
    }

    return create_success_response(
        data=health_data,
        message="Service is healthy" if is_healthy else "Service is degraded"
    )

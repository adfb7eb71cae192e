from fastapi import APIRouter

from .endpoints import health, strategies, trades, executor, accounts


# Create main API router
api_router = APIRouter()

# Include endpoint routers
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(strategies.router, prefix="/strategies", tags=["strategies"])
api_router.include_router(trades.router, prefix="/trades", tags=["trades"])
api_router.include_router(executor.router, prefix="/executor", tags=["executor"])
api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from calendar_trader.core.dependencies import get_gateway
from calendar_trader.core.responses import create_success_response
from calendar_trader.services.market_gateway import MarketGateway


router = APIRouter()


@router.get("")
async def list_accounts(gateway: MarketGateway = Depends(get_gateway)) -> JSONResponse:
    accounts = await gateway.list_accounts()
    return create_success_response(
        data=[a.model_dump(by_alias=True) for a in accounts],
        message="Accounts retrieved successfully"
    )

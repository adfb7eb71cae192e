from typing import Dict, Any, Optional, List, Sequence
from datetime import date, timedelta
import hashlib

import httpx
from pydantic import ValidationError

from .base import ExternalAPIService, ExternalAPIError
from calendar_trader.core.config import settings
from calendar_trader.core.logging import get_logger
from calendar_trader.schemas.gateway import (
    Account,
    OptionContract,
    OrderLeg,
    OrderResult,
    OrderStatus,
    QuoteSnapshot,
)
from calendar_trader.services.market_gateway import MarketGateway, INDEX_UNAVAILABLE

logger = get_logger(__name__)

# Client Portal snapshot field ids
FIELD_LAST = "31"
FIELD_BID = "84"
FIELD_ASK = "86"

ORDER_STATE_MAP = {
    "filled": "filled",
    "cancelled": "cancelled",
    "apicancelled": "cancelled",
    "pendingcancel": "submitted",
    "inactive": "rejected",
    "rejected": "rejected",
    "submitted": "submitted",
    "presubmitted": "submitted",
    "pendingsubmit": "submitted",
    "apipending": "submitted",
}


def _to_float(value: Any) -> Optional[float]:
    """Snapshot values arrive as numbers or strings, sometimes prefixed ('C12.50')"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lstrip("CH").replace(",", "")
    try:
        return float(text)
    except ValueError:
        return None


def _to_date(value: Any) -> Any:
    """Accept both 2025-01-03 and 20250103"""
    if isinstance(value, str) and len(value) == 8 and value.isdigit():
        return f"{value[:4]}-{value[4:6]}-{value[6:]}"
    return value


def _to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    return str(value)


class IBKRGateway(ExternalAPIService, MarketGateway):
    """
    Interactive Brokers Client Portal REST gateway

    Order submissions are sent once; only reads are retried.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        verify_ssl: Optional[bool] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: float = 1.0,
    ):
        config = settings.get_external_api_config("ibkr")

        super().__init__(
            service_name="ibkr",
            base_url=base_url or config.get("base_url"),
            timeout=config.get("timeout", 30),
            max_retries=max_retries if max_retries is not None else config.get("retry_count", 3),
            rate_limit=10.0,  # Client Portal allows ~10 requests per second
            cache_ttl=settings.cache.default_ttl,
            verify_ssl=verify_ssl if verify_ssl is not None else config.get("verify_ssl", False),
            transport=transport,
            retry_base_delay=retry_base_delay,
        )

    def _get_cache_key(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Generate cache key for gateway requests"""
        key_parts = [endpoint.strip("/").replace("/", ":")]

        if params:
            sorted_params = sorted(params.items())
            params_str = "&".join([f"{k}={v}" for k, v in sorted_params])
            key_parts.append(hashlib.md5(params_str.encode()).hexdigest()[:8])

        return ":".join(key_parts)

    def _parse_error_response(self, response: httpx.Response) -> str:
        """Parse error message from a gateway response"""
        try:
            data = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(data, dict):
            return str(data.get("error") or data.get("message") or f"HTTP {response.status_code}")
        return response.text or f"HTTP {response.status_code}"

    async def list_accounts(self) -> List[Account]:
        data = await self.get(
            "/portfolio/accounts",
            use_cache=True,
            cache_ttl=settings.cache.ttl_mapping.get("accounts"),
        )
        items = data.get("accounts", []) if isinstance(data, dict) else data

        accounts = []
        for item in items or []:
            item = {**item}
            item.setdefault("accountId", item.get("id"))
            try:
                accounts.append(Account.model_validate(item))
            except ValidationError as e:
                logger.warning("Skipping malformed account entry", error_message=str(e))
        return accounts

    async def find_options(
        self,
        delta: float,
        offsets: Sequence[int],
        right: str,
        as_of: Optional[date] = None,
    ) -> List[OptionContract]:
        """
        Search option contracts on the underlying near a target delta

        Args:
            delta: Target delta
            offsets: Expiration offsets in days from as_of
            right: "P" or "C"
            as_of: Reference date, defaults to today

        Returns:
            Contracts as returned by the gateway, malformed entries dropped
        """
        base_date = as_of or date.today()
        expirations = [(base_date + timedelta(days=offset)).isoformat() for offset in offsets]

        params = {
            "symbol": settings.executor.underlying_symbol,
            "right": right,
            "delta": str(delta),
            "expirations": ",".join(expirations),
        }
        data = await self.get("/iserver/secdef/search", params=params)
        items = data.get("contracts", []) if isinstance(data, dict) else data

        contracts = []
        for item in items or []:
            try:
                contracts.append(OptionContract.model_validate({
                    **item,
                    "conid": str(item.get("conid", "")),
                    "right": item.get("right") or right,
                    "expiry": _to_date(item.get("expiry")),
                }))
            except ValidationError as e:
                logger.warning("Skipping malformed option contract", error_message=str(e))

        logger.debug(
            "Option search completed",
            right=right,
            delta=delta,
            expirations=expirations,
            count=len(contracts)
        )
        return contracts

    async def get_index_value(self, symbol: str) -> float:
        conid = settings.gateway.index_conids.get(symbol.upper())
        if not conid:
            logger.warning("No contract id configured for index", symbol=symbol)
            return INDEX_UNAVAILABLE

        try:
            data = await self.get(
                "/iserver/marketdata/snapshot",
                params={"conids": conid, "fields": FIELD_LAST},
                use_cache=True,
                cache_ttl=settings.cache.ttl_mapping.get("index_quote"),
            )
        except ExternalAPIError as e:
            logger.warning("Index quote unavailable", symbol=symbol, error_message=str(e))
            return INDEX_UNAVAILABLE

        if not isinstance(data, list) or not data:
            return INDEX_UNAVAILABLE

        snapshot = data[0]
        value = _to_float(snapshot.get("lastPrice", snapshot.get(FIELD_LAST)))
        if value is None or value <= 0:
            return INDEX_UNAVAILABLE
        return value

    async def get_option_quotes(self, conids: Sequence[str]) -> List[QuoteSnapshot]:
        data = await self.get(
            "/iserver/marketdata/snapshot",
            params={"conids": ",".join(conids), "fields": settings.gateway.snapshot_fields},
        )

        quotes = []
        for item in data if isinstance(data, list) else []:
            quotes.append(QuoteSnapshot(
                conid=str(item.get("conid")),
                bid=_to_float(item.get(FIELD_BID, item.get("bid"))) or 0.0,
                ask=_to_float(item.get(FIELD_ASK, item.get("ask"))) or 0.0,
                last=_to_float(item.get(FIELD_LAST, item.get("last"))),
            ))
        return quotes

    def _parse_order_response(self, data: Any) -> OrderResult:
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            return OrderResult.failed(f"Unexpected order response: {data!r}")

        error = data.get("error")
        if error:
            return OrderResult.failed(_to_text(error))

        order_id = data.get("id") or data.get("order_id")
        if not order_id:
            return OrderResult.failed("Order response carried no order id")

        return OrderResult(
            id=str(order_id),
            status=str(data.get("status") or data.get("order_status") or "submitted"),
            message=_to_text(data.get("message") or data.get("warning")),
        )

    async def _submit(self, endpoint: str, body: Dict[str, Any]) -> OrderResult:
        try:
            data = await self.post(endpoint, json_data=body, retry=False)
        except ExternalAPIError as e:
            logger.error("Order submission failed", endpoint=endpoint, error_message=str(e))
            return OrderResult.failed(str(e))

        result = self._parse_order_response(data)
        if not result.ok:
            logger.warning("Order rejected", endpoint=endpoint, reason=result.error)
        return result

    async def submit_combination_order(
        self,
        account_id: str,
        legs: Sequence[OrderLeg],
        max_cost: float,
    ) -> OrderResult:
        if not legs:
            return OrderResult.failed("Combination order needs at least one leg")

        quantity = legs[0].quantity
        # Limit price per spread, in option points
        price = round(max_cost / (quantity * settings.executor.contract_multiplier), 2)

        body = {
            "acctId": account_id,
            "strategy": "Calendar",
            "orders": [leg.model_dump() for leg in legs],
            "orderType": "LMT",
            "price": price,
            "tif": settings.gateway.order_tif,
            "outsideRth": False,
        }
        return await self._submit(f"/iserver/account/{account_id}/orders/combinations", body)

    async def submit_dependent_order(
        self,
        account_id: str,
        parent_order_id: str,
        target_price: float,
    ) -> OrderResult:
        body = {
            "acctId": account_id,
            "parentId": parent_order_id,
            "orderType": "LMT",
            "price": round(target_price, 2),
            "tif": settings.gateway.take_profit_tif,
            "outsideRth": True,
        }
        return await self._submit(f"/iserver/account/{account_id}/orders", body)

    async def submit_market_order(
        self,
        account_id: str,
        conid: str,
        side: str,
        quantity: int,
    ) -> OrderResult:
        body = {
            "acctId": account_id,
            "conid": conid,
            "orderType": "MKT",
            "side": side,
            "quantity": quantity,
            "tif": settings.gateway.order_tif,
        }
        return await self._submit(f"/iserver/account/{account_id}/orders", body)

    async def cancel_order(self, account_id: str, order_id: str) -> bool:
        try:
            data = await self.delete(f"/iserver/account/{account_id}/order/{order_id}")
        except ExternalAPIError as e:
            logger.warning("Order cancel failed", order_id=order_id, error_message=str(e))
            return False
        return not (isinstance(data, dict) and data.get("error"))

    async def get_order_status(self, account_id: str, order_id: str) -> OrderStatus:
        data = await self.get(f"/iserver/account/{account_id}/order/{order_id}")
        if not isinstance(data, dict):
            return OrderStatus(order_id=order_id)

        raw_status = str(data.get("status") or data.get("order_status") or "").replace("_", "").lower()
        return OrderStatus(
            order_id=order_id,
            status=ORDER_STATE_MAP.get(raw_status, "unknown"),
            filled_quantity=_to_float(
                data.get("filledQuantity", data.get("filled_quantity", data.get("cum_fill")))
            ) or 0.0,
            avg_price=_to_float(data.get("avgPrice", data.get("average_price"))),
        )

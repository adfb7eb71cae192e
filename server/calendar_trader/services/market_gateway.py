"""
Market / brokerage gateway contract used by the execution engine
"""
from abc import ABC, abstractmethod
from datetime import date
from typing import List, Optional, Sequence

from calendar_trader.schemas.gateway import (
    Account,
    OptionContract,
    OrderLeg,
    OrderResult,
    OrderStatus,
    QuoteSnapshot,
)

# Returned by get_index_value when no quote is available
INDEX_UNAVAILABLE = -1.0


class MarketGateway(ABC):
    """
    Order submissions return an OrderResult carrying either an order id or
    an error; broker rejections never raise. Reads raise ExternalAPIError
    on transport failure, except get_index_value which returns
    INDEX_UNAVAILABLE.
    """

    @abstractmethod
    async def list_accounts(self) -> List[Account]:
        pass

    @abstractmethod
    async def find_options(
        self,
        delta: float,
        offsets: Sequence[int],
        right: str,
        as_of: Optional[date] = None,
    ) -> List[OptionContract]:
        """Contracts nearest to the target delta for each expiration offset (days from as_of)"""
        pass

    @abstractmethod
    async def get_index_value(self, symbol: str) -> float:
        pass

    @abstractmethod
    async def get_option_quotes(self, conids: Sequence[str]) -> List[QuoteSnapshot]:
        pass

    @abstractmethod
    async def submit_combination_order(
        self,
        account_id: str,
        legs: Sequence[OrderLeg],
        max_cost: float,
    ) -> OrderResult:
        pass

    @abstractmethod
    async def submit_dependent_order(
        self,
        account_id: str,
        parent_order_id: str,
        target_price: float,
    ) -> OrderResult:
        """Limit order attached to a filled parent; used for take-profit"""
        pass

    @abstractmethod
    async def cancel_order(self, account_id: str, order_id: str) -> bool:
        pass

    @abstractmethod
    async def submit_market_order(
        self,
        account_id: str,
        conid: str,
        side: str,
        quantity: int,
    ) -> OrderResult:
        pass

    @abstractmethod
    async def get_order_status(self, account_id: str, order_id: str) -> OrderStatus:
        pass

    async def close(self) -> None:
        """Release transport resources"""
        return None

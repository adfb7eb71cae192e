from datetime import date
from typing import Optional, List, Literal
from pydantic import BaseModel, Field


class Account(BaseModel):
    """Brokerage account"""
    id: str = Field(..., description="Account id used in order routes")
    account_id: str = Field(..., alias="accountId")
    account_title: Optional[str] = Field(None, alias="accountTitle")

    model_config = {"populate_by_name": True}


class OptionContract(BaseModel):
    """Option contract with a quote snapshot"""
    conid: str = Field(..., description="Broker contract id")
    symbol: str = Field(..., description="Option symbol")
    right: str = Field(default="P", description="P or C")
    strike: float
    expiry: date
    delta: Optional[float] = None
    bid: float = 0.0
    ask: float = 0.0
    last: Optional[float] = None

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


class OrderLeg(BaseModel):
    conid: str
    side: Literal["BUY", "SELL"]
    quantity: int = Field(..., gt=0)


class OrderResult(BaseModel):
    """Outcome of an order submission; id is set only on acceptance"""
    id: Optional[str] = None
    status: str = "submitted"
    message: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.id) and not self.error

    @classmethod
    def failed(cls, error: str) -> "OrderResult":
        return cls(id=None, status="error", error=error)


OrderState = Literal["submitted", "filled", "cancelled", "rejected", "unknown"]


class OrderStatus(BaseModel):
    """Remote status of a previously submitted order"""
    order_id: str
    status: OrderState = "unknown"
    filled_quantity: float = 0.0
    avg_price: Optional[float] = None

    @property
    def is_filled(self) -> bool:
        return self.status == "filled"

    @property
    def is_dead(self) -> bool:
        return self.status in ("cancelled", "rejected")


class QuoteSnapshot(BaseModel):
    conid: str
    bid: float = 0.0
    ask: float = 0.0
    last: Optional[float] = None

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2

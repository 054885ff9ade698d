from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from apps.api.app.schemas.trade import TradeOut


class PartialExitOut(BaseModel):
    trade_id: str
    percentage: Decimal
    price: Decimal
    amount: Decimal
    timestamp: datetime

    class Config:
        from_attributes = True


class CycleOut(BaseModel):
    id: str
    user_id: str
    token: str
    state: str
    entry_price: Decimal
    entry_amount: Decimal
    exit_price: Optional[Decimal] = None
    entry_trade_id: Optional[str] = None
    exit_trade_id: Optional[str] = None
    pnl: Optional[Decimal] = None
    pnl_percentage: Optional[Decimal] = None
    partial_exits: list[PartialExitOut] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ActiveCycleOut(CycleOut):
    current_price: Optional[Decimal] = None
    remaining_amount: Decimal
    unrealized_pnl: Optional[Decimal] = None
    unrealized_pnl_percentage: Optional[Decimal] = None


class CycleTrackRequest(BaseModel):
    token: str
    entry_price: Decimal = Field(gt=0)
    amount: Decimal = Field(gt=0)
    initial_state: Literal["entry", "hold"] = "hold"


class CycleSellRequest(BaseModel):
    percentage: Decimal = Field(gt=0, le=100)


class CycleSellOut(BaseModel):
    trade: TradeOut
    cycle: CycleOut

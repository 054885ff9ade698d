from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class TradeOut(BaseModel):
    id: str
    user_id: str
    signal_id: Optional[str] = None
    cycle_id: Optional[str] = None
    type: str
    token: str
    price: Decimal
    amount: Decimal
    status: str
    auto_executed: bool
    created_at: datetime

    class Config:
        from_attributes = True

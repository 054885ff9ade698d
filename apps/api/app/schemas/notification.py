from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel


class NotificationOut(BaseModel):
    id: str
    type: str
    message: str
    related_id: Optional[str] = None
    priority: str
    read: bool
    created_at: datetime

    class Config:
        from_attributes = True


class ActivityOut(BaseModel):
    id: str
    action: str
    token: str
    status: str
    details: Optional[str] = None
    price: Optional[Decimal] = None
    amount: Optional[Decimal] = None
    error_message: Optional[str] = None
    signal_id: Optional[str] = None
    trade_id: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True

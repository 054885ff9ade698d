from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator


ALLOWED_EXCHANGES = {"BINANCE", "BTCC"}


class UserOut(BaseModel):
    id: str
    telegram_id: Optional[int] = None
    username: Optional[str] = None
    role: str
    risk_level: str
    auto_trade_enabled: bool
    exchange: Optional[str] = None
    exchange_connected: bool
    created_at: datetime

    class Config:
        from_attributes = True


class UserSettingsUpdate(BaseModel):
    risk_level: Optional[Literal["low", "medium", "high"]] = None
    auto_trade_enabled: Optional[bool] = None


class ExchangeConnectRequest(BaseModel):
    exchange: str
    api_key: str
    api_secret: str

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, value: str):
        normalized = value.upper()
        if normalized not in ALLOWED_EXCHANGES:
            raise ValueError("exchange must be BINANCE or BTCC")
        return normalized

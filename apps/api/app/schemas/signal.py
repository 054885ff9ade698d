from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


class SignalCreate(BaseModel):
    type: Literal["BUY", "SELL"]
    token: str
    price: Decimal = Field(gt=0)
    risk_level: Literal["low", "medium", "high"] = "medium"
    expires_at: Optional[datetime] = None
    link: Optional[str] = None
    positives: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value: str):
        return str(value).upper()

    @field_validator("token")
    @classmethod
    def normalize_token(cls, value: str):
        normalized = value.strip().upper()
        if not normalized.isalnum():
            raise ValueError("token must be alphanumeric (e.g. BTC)")
        return normalized


class SignalOut(BaseModel):
    id: str
    type: str
    token: str
    price: Decimal
    risk_level: str
    created_at: datetime
    expires_at: datetime
    auto_executed: bool
    link: Optional[str] = None

    class Config:
        from_attributes = True


class SignalRegisterOut(BaseModel):
    created: bool
    signal: SignalOut


class SignalActionOut(BaseModel):
    signal_id: str
    action: str
    executed: bool
    detail: Optional[dict] = None

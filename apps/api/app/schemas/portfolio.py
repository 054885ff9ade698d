from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class Holding(BaseModel):
    token: str
    amount: Decimal
    average_price: Decimal = Decimal("0")
    current_price: Decimal = Decimal("0")
    value: Decimal = Decimal("0")
    pnl: Decimal = Decimal("0")
    pnl_percentage: Decimal = Decimal("0")


class PortfolioSnapshot(BaseModel):
    total_value: Decimal = Decimal("0")
    free_capital: Decimal = Decimal("0")
    allocated_capital: Decimal = Decimal("0")
    holdings: list[Holding] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class PortfolioSummary(BaseModel):
    total_value: Decimal = Decimal("0")
    realized_pnl: Decimal = Decimal("0")
    unrealized_pnl: Decimal = Decimal("0")
    open_cycles: int = 0
    closed_cycles: int = 0
    winning_cycles: int = 0

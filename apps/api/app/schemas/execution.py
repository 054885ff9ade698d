from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field


class ExecutionDetail(BaseModel):
    signal_id: str
    user_id: Optional[str] = None
    token: str
    action: str
    status: str  # success | failed | skipped
    success: bool = False
    amount: Optional[Decimal] = None
    price: Optional[Decimal] = None
    trade_id: Optional[str] = None
    cycle_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None


class RunSummary(BaseModel):
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    budget_exhausted: bool = False
    details: list[ExecutionDetail] = Field(default_factory=list)

    def record(self, detail: ExecutionDetail):
        if detail.status == "success":
            self.successful += 1
        elif detail.status == "skipped":
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(detail)


class SignalNotifyResult(BaseModel):
    signal_id: str
    signal: str
    users_notified: int = 0
    error: Optional[str] = None


class NotifierSummary(BaseModel):
    total_signals: int = 0
    total_users_notified: int = 0
    results: list[SignalNotifyResult] = Field(default_factory=list)

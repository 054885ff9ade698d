from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.models.activity_log import ActivityLog


ACTIVITY_STATUSES = ("success", "failure", "skipped")


def record_activity(
    db: Session,
    *,
    user_id: str,
    action: str,
    token: str,
    status: str,
    details: Optional[str] = None,
    price: Optional[Decimal] = None,
    amount: Optional[Decimal] = None,
    error_message: Optional[str] = None,
    signal_id: Optional[str] = None,
    trade_id: Optional[str] = None,
) -> ActivityLog:
    if status not in ACTIVITY_STATUSES:
        raise ValueError(f"Invalid activity status: {status}")

    row = ActivityLog(
        user_id=user_id,
        action=action,
        token=token,
        status=status,
        details=details,
        price=price,
        amount=amount,
        error_message=error_message,
        signal_id=signal_id,
        trade_id=trade_id,
    )
    db.add(row)
    db.flush()
    return row


def list_activity(db: Session, user_id: str, limit: int = 50) -> list[ActivityLog]:
    return (
        db.execute(
            select(ActivityLog)
            .where(ActivityLog.user_id == user_id)
            .order_by(ActivityLog.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )

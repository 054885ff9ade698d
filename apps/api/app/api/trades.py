from typing import Literal, Optional

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user
from apps.api.app.db.session import get_db
from apps.api.app.models.trade import Trade
from apps.api.app.models.user import User
from apps.api.app.schemas.trade import TradeOut


router = APIRouter(prefix="/trades", tags=["trades"])


@router.get("", response_model=list[TradeOut])
def list_trades(
    token: Optional[str] = None,
    type: Optional[Literal["BUY", "SELL"]] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    stmt = select(Trade).where(Trade.user_id == current_user.id)
    if token:
        stmt = stmt.where(Trade.token == token.upper())
    if type:
        stmt = stmt.where(Trade.type == type)
    stmt = stmt.order_by(Trade.created_at.desc(), Trade.id.desc()).limit(max(1, min(limit, 200)))
    return db.execute(stmt).scalars().all()

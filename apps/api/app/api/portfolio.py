import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user, get_runtime
from apps.api.app.core.errors import GatewayError
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.portfolio import PortfolioSnapshot, PortfolioSummary
from apps.api.app.services.cycles import realized_cycle_stats
from apps.api.app.services.portfolio import ZERO, get_portfolio, refresh_portfolio_snapshot, to_snapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/portfolio", tags=["portfolio"])


@router.get("", response_model=PortfolioSnapshot)
def read_portfolio(
    refresh: bool = False,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runtime=Depends(get_runtime),
):
    if refresh or get_portfolio(db, current_user.id) is None:
        if not current_user.exchange_connected:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No exchange connected")
        try:
            return refresh_portfolio_snapshot(db, current_user.id, runtime.gateway)
        except (GatewayError, SQLAlchemyError) as exc:
            db.rollback()
            logger.warning("Portfolio refresh failed for user %s: %s", current_user.id, exc)
            cached = to_snapshot(get_portfolio(db, current_user.id))
            if cached is None:
                raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
            return cached

    return to_snapshot(get_portfolio(db, current_user.id))


@router.get("/summary", response_model=PortfolioSummary)
def read_portfolio_summary(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    snapshot = to_snapshot(get_portfolio(db, current_user.id))
    unrealized = ZERO
    total_value = ZERO
    if snapshot is not None:
        total_value = snapshot.total_value
        # holdings without a cost basis carry no meaningful PnL
        unrealized = sum((h.pnl for h in snapshot.holdings if h.average_price > ZERO), ZERO)

    return PortfolioSummary(
        total_value=total_value,
        unrealized_pnl=unrealized,
        **realized_cycle_stats(db, current_user.id),
    )

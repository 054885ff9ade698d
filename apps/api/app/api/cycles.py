import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user, get_runtime
from apps.api.app.core.config import settings
from apps.api.app.core.errors import CycleStateError, GatewayError, PersistenceError, SizingError
from apps.api.app.db.session import get_db
from apps.api.app.models.cycle import OPEN_STATES, Cycle
from apps.api.app.models.trade import Trade
from apps.api.app.models.user import User
from apps.api.app.schemas.cycle import (
    ActiveCycleOut,
    CycleOut,
    CycleSellOut,
    CycleSellRequest,
    CycleTrackRequest,
)
from apps.api.app.schemas.trade import TradeOut
from apps.api.app.services.cycles import CycleStateMachine
from apps.api.app.services.portfolio import calculate_holding_pnl
from apps.worker.app.engine.gateway import symbol_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cycles", tags=["cycles"])

cycles = CycleStateMachine()


@router.get("/active", response_model=list[ActiveCycleOut])
def list_active_cycles(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runtime=Depends(get_runtime),
):
    rows = (
        db.execute(
            select(Cycle)
            .where(Cycle.user_id == current_user.id, Cycle.state.in_(OPEN_STATES))
            .order_by(Cycle.created_at.desc())
        )
        .scalars()
        .all()
    )

    out = []
    for cycle in rows:
        remaining = cycles.remaining_amount(cycle)
        item = ActiveCycleOut.model_validate(
            {**CycleOut.model_validate(cycle).model_dump(), "remaining_amount": remaining}
        )
        try:
            price = runtime.gateway.get_price(current_user.id, symbol_for(cycle.token, settings.QUOTE_ASSET))
        except GatewayError as exc:
            # still list the cycle, just without live numbers
            logger.warning("No live price for %s (user %s): %s", cycle.token, current_user.id, exc)
        else:
            holding = calculate_holding_pnl(cycle.token, remaining, cycle.entry_price, price)
            item.current_price = price
            item.unrealized_pnl = holding.pnl
            item.unrealized_pnl_percentage = holding.pnl_percentage
        out.append(item)
    return out


@router.post("", response_model=CycleOut, status_code=status.HTTP_201_CREATED)
def track_cycle(
    payload: CycleTrackRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    token = payload.token.strip().upper()
    if cycles.find_open(db, current_user.id, token) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"An open {token} cycle already exists")

    cycle = cycles.open_on_buy(
        db,
        current_user.id,
        token,
        None,
        payload.entry_price,
        amount=payload.amount,
        state=payload.initial_state,
    )
    db.commit()
    return cycle


@router.post("/{cycle_id}/sell", response_model=CycleSellOut)
def sell_cycle(
    cycle_id: str,
    payload: CycleSellRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runtime=Depends(get_runtime),
):
    cycle = db.execute(
        select(Cycle).where(Cycle.id == cycle_id, Cycle.user_id == current_user.id)
    ).scalar_one_or_none()
    if cycle is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Cycle not found")
    if cycle.state not in OPEN_STATES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cycle is already closed")

    try:
        trade_id = runtime.executor.sell_cycle(current_user.id, cycle.id, payload.percentage)
    except GatewayError as exc:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    except CycleStateError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message)
    except SizingError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message)
    except PersistenceError as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)

    trade = db.get(Trade, trade_id)
    db.refresh(cycle)
    return CycleSellOut(trade=TradeOut.model_validate(trade), cycle=CycleOut.model_validate(cycle))

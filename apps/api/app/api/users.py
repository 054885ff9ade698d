from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.user import ExchangeConnectRequest, UserOut, UserSettingsUpdate
from apps.api.app.services.credentials import connect_exchange, disconnect_exchange


router = APIRouter(prefix="/users", tags=["users"])


@router.get("/me", response_model=UserOut)
def me(current_user: User = Depends(get_current_user)):
    return current_user


@router.patch("/me/settings", response_model=UserOut)
def update_my_settings(
    payload: UserSettingsUpdate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    if payload.risk_level is not None:
        current_user.risk_level = payload.risk_level
    if payload.auto_trade_enabled is not None:
        current_user.auto_trade_enabled = payload.auto_trade_enabled
    db.commit()
    db.refresh(current_user)
    return current_user


@router.put("/me/exchange", response_model=UserOut)
def connect_my_exchange(
    payload: ExchangeConnectRequest,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    try:
        connect_exchange(db, current_user, payload.exchange, payload.api_key, payload.api_secret)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    db.commit()
    db.refresh(current_user)
    return current_user


@router.delete("/me/exchange", response_model=UserOut)
def disconnect_my_exchange(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    disconnect_exchange(db, current_user)
    db.commit()
    db.refresh(current_user)
    return current_user

from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from apps.api.app.api.deps import get_current_user, get_runtime, require_cron_secret
from apps.api.app.core.time import as_utc, utc_now
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User
from apps.api.app.schemas.signal import SignalActionOut, SignalCreate, SignalOut, SignalRegisterOut
from apps.api.app.services.activity_log import record_activity
from apps.api.app.services.signals import SignalRepository


router = APIRouter(prefix="/signals", tags=["signals"])

repository = SignalRepository()


def _signal_or_404(db: Session, signal_id: str):
    signal = repository.get(db, signal_id)
    if signal is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signal not found")
    return signal


@router.post("", response_model=SignalRegisterOut, dependencies=[Depends(require_cron_secret)])
def register_signal(
    payload: SignalCreate,
    db: Session = Depends(get_db),
):
    try:
        signal, created = repository.register_signal(db, payload)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    return SignalRegisterOut(created=created, signal=SignalOut.model_validate(signal))


@router.get("/active", response_model=list[SignalOut])
def list_active_signals(
    type: Optional[Literal["BUY", "SELL"]] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return repository.find_active(
        db,
        utc_now(),
        risk_level=current_user.risk_level,
        signal_type=type,
        limit=max(1, min(limit, 200)),
    )


@router.get("/{signal_id}", response_model=SignalOut)
def get_signal(
    signal_id: str,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
):
    return _signal_or_404(db, signal_id)


@router.post("/{signal_id}/{action}", response_model=SignalActionOut)
def act_on_signal(
    signal_id: str,
    action: Literal["accept", "skip"],
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
    runtime=Depends(get_runtime),
):
    signal = _signal_or_404(db, signal_id)
    if as_utc(signal.expires_at) <= utc_now():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Decision window has closed")
    if repository.get_user_decision(db, signal.id, current_user.id) is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Signal already decided")

    if action == "skip":
        if not repository.claim_user_decision(db, signal.id, current_user.id, "skip"):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Signal already decided")
        record_activity(
            db,
            user_id=current_user.id,
            action=f"SKIP_{signal.type}",
            token=signal.token,
            status="skipped",
            details="skipped by user",
            signal_id=signal.id,
        )
        db.commit()
        return SignalActionOut(signal_id=signal.id, action=action, executed=False)

    eligible = runtime.engine.eligibility.find_eligible(db, signal, require_auto_trade=False)
    if current_user.id not in {u.id for u in eligible}:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Signal is not available for this user")

    detail = runtime.executor.execute_for_user(signal, current_user.id, auto_executed=False)
    if detail.reason == "already_claimed":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Signal already decided")
    return SignalActionOut(
        signal_id=signal.id,
        action=action,
        executed=detail.success,
        detail=detail.model_dump(mode="json"),
    )

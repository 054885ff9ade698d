import json
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.time import as_utc, utc_now
from apps.api.app.models.signal import Signal, SignalAction
from apps.api.app.models.user import UserSignalToken
from apps.api.app.schemas.signal import SignalCreate

logger = logging.getLogger(__name__)


class SignalRepository:
    def get(self, db: Session, signal_id: str) -> Optional[Signal]:
        return db.execute(select(Signal).where(Signal.id == signal_id)).scalar_one_or_none()

    def claim_expired(self, db: Session, now: datetime, limit: Optional[int] = None) -> list[Signal]:
        """Atomically flips ``auto_executed`` on expired, unclaimed signals.

        One conditional UPDATE does the find and the flip, so two concurrent
        runs can never both see the same row go false -> true. Only the rows
        this call flipped are returned.
        """
        candidates = (
            select(Signal.id)
            .where(Signal.expires_at <= now, Signal.auto_executed.is_(False))
            .order_by(Signal.expires_at)
        )
        if limit:
            candidates = candidates.limit(limit)

        if db.get_bind().dialect.update_returning:
            stmt = (
                update(Signal)
                .where(Signal.id.in_(candidates), Signal.auto_executed.is_(False))
                .values(auto_executed=True, claimed_at=now)
                .returning(Signal.id)
                .execution_options(synchronize_session=False)
            )
            claimed_ids = list(db.execute(stmt).scalars().all())
        else:
            claimed_ids = []
            for signal_id in db.execute(candidates).scalars().all():
                result = db.execute(
                    update(Signal)
                    .where(Signal.id == signal_id, Signal.auto_executed.is_(False))
                    .values(auto_executed=True, claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(signal_id)
        db.commit()

        if not claimed_ids:
            return []
        logger.info("Claimed %d expired signal(s): %s", len(claimed_ids), ", ".join(claimed_ids))
        return (
            db.execute(
                select(Signal).where(Signal.id.in_(claimed_ids)).order_by(Signal.expires_at)
            )
            .scalars()
            .all()
        )

    def find_active(
        self,
        db: Session,
        now: datetime,
        risk_level: Optional[str] = None,
        signal_type: Optional[str] = None,
        limit: int = 50,
    ) -> list[Signal]:
        query = select(Signal).where(Signal.expires_at > now)
        if risk_level:
            query = query.where(Signal.risk_level == risk_level)
        if signal_type:
            query = query.where(Signal.type == signal_type.upper())
        return db.execute(query.order_by(Signal.created_at.desc()).limit(limit)).scalars().all()

    def find_recent_active(self, db: Session, now: datetime, lookback: timedelta) -> list[Signal]:
        return (
            db.execute(
                select(Signal)
                .where(Signal.created_at >= now - lookback, Signal.expires_at > now)
                .order_by(Signal.created_at.desc())
            )
            .scalars()
            .all()
        )

    def register_signal(
        self,
        db: Session,
        payload: SignalCreate,
        now: Optional[datetime] = None,
    ) -> tuple[Signal, bool]:
        now = now or utc_now()
        dedup_since = now - timedelta(minutes=settings.SIGNAL_REGISTER_DEDUP_MINUTES)
        existing = (
            db.execute(
                select(Signal).where(
                    Signal.token == payload.token,
                    Signal.type == payload.type,
                    Signal.price == payload.price,
                    Signal.created_at >= dedup_since,
                )
            )
            .scalars()
            .first()
        )
        if existing is not None:
            logger.info("Signal already registered for %s %s at %s", payload.type, payload.token, payload.price)
            return existing, False

        expires_at = as_utc(payload.expires_at) or now + timedelta(minutes=settings.SIGNAL_WINDOW_MINUTES)
        if expires_at <= now:
            raise ValueError("expires_at must be after the signal creation time")

        signal = Signal(
            type=payload.type,
            token=payload.token,
            price=payload.price,
            risk_level=payload.risk_level,
            created_at=now,
            expires_at=expires_at,
            auto_executed=False,
            link=payload.link,
            positives=json.dumps(payload.positives),
            warnings=json.dumps(payload.warnings),
        )
        db.add(signal)
        db.commit()
        logger.info(
            "Registered %s signal %s for %s at %s (risk=%s, expires=%s)",
            signal.type,
            signal.id,
            signal.token,
            signal.price,
            signal.risk_level,
            expires_at.isoformat(),
        )
        return signal, True

    def claim_user_decision(self, db: Session, signal_id: str, user_id: str, action: str) -> bool:
        """Records the one allowed decision (accept/skip/auto) of a user on a signal.

        Returns False when a decision already exists: whoever inserts first
        owns the signal for that user.
        """
        db.add(SignalAction(signal_id=signal_id, user_id=user_id, action=action))
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return False
        return True

    def get_user_decision(self, db: Session, signal_id: str, user_id: str) -> Optional[SignalAction]:
        return db.execute(
            select(SignalAction).where(
                SignalAction.signal_id == signal_id,
                SignalAction.user_id == user_id,
            )
        ).scalar_one_or_none()

    def remember_signal_token(self, db: Session, user_id: str, signal: Signal, now: Optional[datetime] = None) -> bool:
        """Appends a BUY signal to the user's recent-token list once per signal."""
        if signal.type != "BUY":
            return False
        already = db.execute(
            select(UserSignalToken.id).where(
                UserSignalToken.user_id == user_id,
                UserSignalToken.signal_id == signal.id,
            )
        ).first()
        if already:
            return False
        db.add(
            UserSignalToken(
                user_id=user_id,
                token=signal.token,
                signal_id=signal.id,
                shown_at=now or utc_now(),
            )
        )
        db.flush()
        return True

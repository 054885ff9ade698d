import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.core.time import as_utc, utc_now
from apps.api.app.models.portfolio import Portfolio
from apps.api.app.models.signal import Signal, SignalAction
from apps.api.app.models.user import User
from apps.api.app.services.portfolio import ZERO, find_holding, to_snapshot

logger = logging.getLogger(__name__)


class EligibilityFilter:
    def __init__(
        self,
        suppression_window: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.suppression_window = suppression_window
        self._clock = clock

    def is_recently_signaled(
        self,
        user: User,
        token: str,
        now: Optional[datetime] = None,
        exclude_signal_id: Optional[str] = None,
    ) -> bool:
        now = now or self._clock()
        for entry in user.last_signal_tokens:
            if entry.token != token:
                continue
            # surfacing a signal must not suppress that same signal later
            if exclude_signal_id and entry.signal_id == exclude_signal_id:
                continue
            if now - as_utc(entry.shown_at) < self.suppression_window:
                return True
        return False

    def find_eligible(
        self,
        db: Session,
        signal: Signal,
        *,
        require_auto_trade: bool = True,
        now: Optional[datetime] = None,
    ) -> list[User]:
        now = now or self._clock()
        decided = select(SignalAction.user_id).where(SignalAction.signal_id == signal.id)

        query = select(User).where(
            User.exchange_connected.is_(True),
            User.id.not_in(decided),
        )
        if require_auto_trade:
            query = query.where(User.auto_trade_enabled.is_(True))

        if signal.type == "BUY":
            candidates = (
                db.execute(query.where(User.risk_level == signal.risk_level).order_by(User.created_at))
                .scalars()
                .all()
            )
            return [
                u for u in candidates
                if not self.is_recently_signaled(u, signal.token, now=now, exclude_signal_id=signal.id)
            ]

        if signal.type == "SELL":
            # risk appetite is irrelevant when telling a holder to exit
            # inner join: no portfolio record means not eligible
            rows = db.execute(
                query.add_columns(Portfolio)
                .join(Portfolio, Portfolio.user_id == User.id)
                .order_by(User.created_at)
            ).all()
            eligible = []
            for user, portfolio in rows:
                holding = find_holding(to_snapshot(portfolio), signal.token)
                if holding is not None and holding.amount > ZERO:
                    eligible.append(user)
            return eligible

        logger.warning("Unknown signal type %s on signal %s", signal.type, signal.id)
        return []

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


class Signal(Base):
    __tablename__ = "signals"
    __table_args__ = {"extend_existing": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    type = Column(String, nullable=False)                      # BUY | SELL
    token = Column(String, index=True, nullable=False)         # e.g. "BTC"
    price = Column(Numeric(28, 10), nullable=False)            # quote currency units
    risk_level = Column(String, index=True, nullable=False)    # low | medium | high

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    expires_at = Column(DateTime(timezone=True), index=True, nullable=False)

    # flips false -> true once, by the claim statement only
    auto_executed = Column(Boolean, index=True, nullable=False, default=False)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    link = Column(String, nullable=True)
    positives = Column(Text, nullable=True)                    # json list
    warnings = Column(Text, nullable=True)                     # json list


class SignalAction(Base):
    """One decision per (signal, user): accept, skip or auto.

    The unique constraint is what keeps the manual-accept path and the
    auto-execution run from both trading the same signal for the same user.
    """

    __tablename__ = "signal_actions"
    __table_args__ = (
        UniqueConstraint("signal_id", "user_id", name="uq_signal_action_user"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    signal_id = Column(String, index=True, nullable=False)
    user_id = Column(String, index=True, nullable=False)
    action = Column(String, nullable=False)  # accept | skip | auto
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, text
from sqlalchemy.orm import relationship

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


OPEN_STATES = ("entry", "hold")
_OPEN_PREDICATE = text("state IN ('entry', 'hold')")


class Cycle(Base):
    __tablename__ = "cycles"
    __table_args__ = (
        # at most one open cycle per (user, token)
        Index(
            "uq_cycles_open_user_token",
            "user_id",
            "token",
            unique=True,
            sqlite_where=_OPEN_PREDICATE,
            postgresql_where=_OPEN_PREDICATE,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    token = Column(String, index=True, nullable=False)

    state = Column(String, index=True, nullable=False, default="entry")  # entry | hold | exit

    entry_trade_id = Column(String, nullable=True)
    entry_price = Column(Numeric(28, 10), nullable=False)
    entry_amount = Column(Numeric(28, 10), nullable=False)

    exit_trade_id = Column(String, nullable=True)
    exit_price = Column(Numeric(28, 10), nullable=True)
    pnl = Column(Numeric(28, 10), nullable=True)
    pnl_percentage = Column(Numeric(28, 10), nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    partial_exits = relationship(
        "CyclePartialExit",
        order_by="CyclePartialExit.timestamp",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class CyclePartialExit(Base):
    __tablename__ = "cycle_partial_exits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    cycle_id = Column(String, ForeignKey("cycles.id", ondelete="CASCADE"), index=True, nullable=False)
    trade_id = Column(String, nullable=False)
    percentage = Column(Numeric(10, 4), nullable=False)  # 0-100
    price = Column(Numeric(28, 10), nullable=False)
    amount = Column(Numeric(28, 10), nullable=False)
    timestamp = Column(DateTime(timezone=True), default=utc_now, nullable=False)

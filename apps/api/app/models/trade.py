import uuid

from sqlalchemy import Boolean, Column, DateTime, Numeric, String

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


class Trade(Base):
    __tablename__ = "trades"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    user_id = Column(String, index=True, nullable=False)
    signal_id = Column(String, index=True, nullable=True)
    cycle_id = Column(String, index=True, nullable=True)  # backfilled after the cycle transition

    type = Column(String, nullable=False)  # BUY | SELL
    token = Column(String, index=True, nullable=False)
    price = Column(Numeric(28, 10), nullable=False)
    amount = Column(Numeric(28, 10), nullable=False)

    status = Column(String, nullable=False, default="completed")  # pending | completed | failed
    order_id = Column(String, nullable=True)
    auto_executed = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

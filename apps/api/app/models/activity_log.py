import uuid

from sqlalchemy import Column, DateTime, Numeric, String, Text

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


class ActivityLog(Base):
    __tablename__ = "activity_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    action = Column(String, index=True, nullable=False)  # e.g. AUTO_BUY, MANUAL_SELL
    token = Column(String, nullable=False)
    status = Column(String, nullable=False)  # success | failure | skipped
    details = Column(Text, nullable=True)
    price = Column(Numeric(28, 10), nullable=True)
    amount = Column(Numeric(28, 10), nullable=True)
    error_message = Column(Text, nullable=True)
    signal_id = Column(String, nullable=True)
    trade_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

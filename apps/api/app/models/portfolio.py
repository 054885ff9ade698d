import uuid

from sqlalchemy import Column, DateTime, Numeric, String, Text

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


class Portfolio(Base):
    __tablename__ = "portfolios"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, unique=True, index=True, nullable=False)

    total_value = Column(Numeric(28, 10), nullable=False, default=0)
    free_capital = Column(Numeric(28, 10), nullable=False, default=0)
    allocated_capital = Column(Numeric(28, 10), nullable=False, default=0)
    holdings_json = Column(Text, nullable=False, default="[]")

    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

import uuid

from sqlalchemy import BigInteger, Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


RISK_LEVELS = ("low", "medium", "high")


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=True)
    username = Column(String, nullable=True)
    role = Column(String, default="trader")

    risk_level = Column(String, index=True, nullable=False, default="medium")  # low | medium | high
    auto_trade_enabled = Column(Boolean, nullable=False, default=True)

    # exchange link; credentials are Fernet-encrypted at rest
    exchange = Column(String, nullable=True)  # BINANCE | BTCC
    exchange_connected = Column(Boolean, index=True, nullable=False, default=False)
    api_key_encrypted = Column(Text, nullable=True)
    api_secret_encrypted = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False)

    last_signal_tokens = relationship(
        "UserSignalToken",
        order_by="UserSignalToken.shown_at",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class UserSignalToken(Base):
    """Rolling record of BUY signals surfaced to a user, used for repeat suppression."""

    __tablename__ = "user_signal_tokens"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    token = Column(String, index=True, nullable=False)
    signal_id = Column(String, index=True, nullable=True)
    shown_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)

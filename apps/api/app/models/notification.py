import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, UniqueConstraint

from apps.api.app.core.time import utc_now
from apps.api.app.db.session import Base


class Notification(Base):
    __tablename__ = "notifications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, index=True, nullable=False)
    type = Column(String, nullable=False)  # signal | trade | cycle | system
    message = Column(Text, nullable=False)
    related_id = Column(String, index=True, nullable=True)
    priority = Column(String, nullable=False, default="medium")
    data_json = Column(Text, nullable=True)
    read = Column(Boolean, index=True, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=utc_now, nullable=False)


class NotificationDedupEntry(Base):
    __tablename__ = "notification_dedup"
    __table_args__ = (
        UniqueConstraint(
            "user_id",
            "notification_type",
            "related_id",
            name="uq_notification_dedup_key",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, nullable=False)
    notification_type = Column(String, nullable=False)
    related_id = Column(String, nullable=False)
    last_sent_at = Column(DateTime(timezone=True), index=True, nullable=False)

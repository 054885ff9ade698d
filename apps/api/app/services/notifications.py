import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from apps.api.app.core.errors import RepositoryUnavailable
from apps.api.app.core.time import utc_now
from apps.api.app.models.notification import Notification, NotificationDedupEntry

logger = logging.getLogger(__name__)

NOTIFICATION_TYPES = ("signal", "trade", "cycle", "system")


class NotificationDeduplicator:
    def __init__(
        self,
        session_factory: sessionmaker,
        cooldown: timedelta = timedelta(minutes=30),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._session_factory = session_factory
        self.cooldown = cooldown
        self._clock = clock

    def _key_filter(self, user_id: str, notification_type: str, related_entity_id: str):
        return (
            NotificationDedupEntry.user_id == user_id,
            NotificationDedupEntry.notification_type == notification_type,
            NotificationDedupEntry.related_id == related_entity_id,
        )

    def should_notify(
        self,
        user_id: str,
        notification_type: str,
        related_entity_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        if not related_entity_id:
            # free-form messages are never deduplicated
            return True

        now = now or self._clock()
        cutoff = now - self.cooldown
        key = self._key_filter(user_id, notification_type, related_entity_id)

        db = self._session_factory()
        try:
            # second pass only happens if a purge removed the row in between
            for _ in range(2):
                db.add(
                    NotificationDedupEntry(
                        user_id=user_id,
                        notification_type=notification_type,
                        related_id=related_entity_id,
                        last_sent_at=now,
                    )
                )
                try:
                    db.commit()
                    return True
                except IntegrityError:
                    db.rollback()

                refreshed = db.execute(
                    update(NotificationDedupEntry)
                    .where(*key, NotificationDedupEntry.last_sent_at <= cutoff)
                    .values(last_sent_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if refreshed.rowcount == 1:
                    return True

                still_there = db.execute(select(NotificationDedupEntry.id).where(*key)).first()
                if still_there:
                    logger.debug(
                        "Suppressed duplicate %s notification user=%s related=%s",
                        notification_type,
                        user_id,
                        related_entity_id,
                    )
                    return False
            return False
        finally:
            db.close()

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or self._clock()) - self.cooldown
        db = self._session_factory()
        try:
            # strictly older than the cutoff; a row refreshed concurrently is never matched
            result = db.execute(
                delete(NotificationDedupEntry).where(NotificationDedupEntry.last_sent_at < cutoff)
            )
            db.commit()
            purged = int(result.rowcount or 0)
        except SQLAlchemyError as exc:
            db.rollback()
            raise RepositoryUnavailable(f"Could not purge notification dedup entries: {exc}") from exc
        finally:
            db.close()
        if purged:
            logger.info("Purged %d expired notification dedup entries", purged)
        return purged


class NotificationService:
    def __init__(self, deduplicator: NotificationDeduplicator, channel):
        self.deduplicator = deduplicator
        self.channel = channel

    def notify(
        self,
        user_id: str,
        notification_type: str,
        message: str,
        related_id: Optional[str] = None,
        priority: str = "medium",
        data: Optional[dict[str, Any]] = None,
    ) -> bool:
        if notification_type not in NOTIFICATION_TYPES:
            raise ValueError(f"Unknown notification type: {notification_type}")
        if not self.deduplicator.should_notify(user_id, notification_type, related_id):
            return False

        metadata = {
            "type": notification_type,
            "related_id": related_id,
            "priority": priority,
            "data": data or {},
        }
        delivered = self.channel.deliver(user_id, message, metadata)
        if not delivered:
            logger.warning("No channel delivered %s notification to user %s", notification_type, user_id)
        return delivered


def list_notifications(db: Session, user_id: str, limit: int = 50) -> list[Notification]:
    return (
        db.execute(
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def list_unread(db: Session, user_id: str, limit: int = 10) -> list[Notification]:
    return (
        db.execute(
            select(Notification)
            .where(Notification.user_id == user_id, Notification.read.is_(False))
            .order_by(Notification.created_at.desc())
            .limit(limit)
        )
        .scalars()
        .all()
    )


def mark_read(db: Session, user_id: str, notification_id: str) -> Optional[Notification]:
    row = db.execute(
        select(Notification).where(
            Notification.id == notification_id,
            Notification.user_id == user_id,
        )
    ).scalar_one_or_none()
    if row is None:
        return None
    row.read = True
    db.flush()
    return row


def mark_all_read(db: Session, user_id: str) -> int:
    result = db.execute(
        update(Notification)
        .where(Notification.user_id == user_id, Notification.read.is_(False))
        .values(read=True)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)

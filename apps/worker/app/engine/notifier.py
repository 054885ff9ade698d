import json
import logging
from typing import Callable, Iterable, Optional

import requests
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from apps.api.app.models.notification import Notification

logger = logging.getLogger(__name__)


class NotificationChannel:
    def deliver(self, user_id: str, message: str, metadata: Optional[dict] = None) -> bool:
        raise NotImplementedError


class InboxChannel(NotificationChannel):
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def deliver(self, user_id: str, message: str, metadata: Optional[dict] = None) -> bool:
        metadata = metadata or {}
        db = self._session_factory()
        try:
            db.add(
                Notification(
                    user_id=user_id,
                    type=metadata.get("type", "system"),
                    message=message,
                    related_id=metadata.get("related_id"),
                    priority=metadata.get("priority", "medium"),
                    data_json=json.dumps(metadata.get("data") or {}, default=str),
                )
            )
            db.commit()
            return True
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Inbox delivery failed for user %s: %s", user_id, exc)
            return False
        finally:
            db.close()


class TelegramChannel(NotificationChannel):
    def __init__(
        self,
        bot_token: str,
        chat_id_for_user: Callable[[str], Optional[int]],
        timeout: float = 8.0,
    ):
        self.bot_token = bot_token
        self._chat_id_for_user = chat_id_for_user
        self.timeout = timeout

    def deliver(self, user_id: str, message: str, metadata: Optional[dict] = None) -> bool:
        if not self.bot_token:
            return False
        chat_id = self._chat_id_for_user(user_id)
        if not chat_id:
            return False

        url = f"https://api.telegram.org/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": message,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        try:
            response = requests.post(url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Telegram delivery failed for user %s: %s", user_id, exc)
            return False
        if response.status_code >= 400:
            logger.warning("Telegram delivery rejected for user %s: %s", user_id, response.text)
            return False
        return True


class FanoutChannel(NotificationChannel):
    """True when at least one sub-channel delivered."""

    def __init__(self, channels: Iterable[NotificationChannel]):
        self.channels = list(channels)

    def deliver(self, user_id: str, message: str, metadata: Optional[dict] = None) -> bool:
        delivered = False
        for channel in self.channels:
            try:
                if channel.deliver(user_id, message, metadata):
                    delivered = True
            except Exception:
                logger.exception("%s raised while delivering to user %s", type(channel).__name__, user_id)
        return delivered

import base64
import hashlib
from typing import Optional

from cryptography.fernet import Fernet
from sqlalchemy import select
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.models.user import User


SUPPORTED_EXCHANGES = ("BINANCE", "BTCC")


def _fernet_from_settings() -> Fernet:
    # Accepts any ENCRYPTION_KEY string and derives a stable Fernet key.
    digest = hashlib.sha256(settings.ENCRYPTION_KEY.encode("utf-8")).digest()
    return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_value(plain_text: str) -> str:
    return _fernet_from_settings().encrypt(plain_text.encode("utf-8")).decode("utf-8")


def decrypt_value(cipher_text: str) -> str:
    return _fernet_from_settings().decrypt(cipher_text.encode("utf-8")).decode("utf-8")


def connect_exchange(
    db: Session,
    user: User,
    exchange: str,
    api_key: str,
    api_secret: str,
) -> User:
    normalized_exchange = exchange.upper()
    if normalized_exchange not in SUPPORTED_EXCHANGES:
        raise ValueError(f"Unsupported exchange: {exchange}")

    user.exchange = normalized_exchange
    user.api_key_encrypted = encrypt_value(api_key)
    user.api_secret_encrypted = encrypt_value(api_secret)
    user.exchange_connected = True
    db.flush()
    return user


def disconnect_exchange(db: Session, user: User) -> User:
    user.api_key_encrypted = None
    user.api_secret_encrypted = None
    user.exchange_connected = False
    db.flush()
    return user


def get_exchange_credentials(db: Session, user_id: str) -> Optional[dict[str, str]]:
    row = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
    if not row or not row.exchange_connected or not row.api_key_encrypted:
        return None

    return {
        "exchange": row.exchange,
        "api_key": decrypt_value(row.api_key_encrypted),
        "api_secret": decrypt_value(row.api_secret_encrypted),
    }


def get_user_exchange(db: Session, user_id: str) -> Optional[str]:
    return db.execute(select(User.exchange).where(User.id == user_id)).scalar_one_or_none()

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from apps.api.app.core.config import settings
from apps.api.app.core.security import access_token_subject
from apps.api.app.db.session import get_db
from apps.api.app.models.user import User


# tokens are issued by the Telegram login handshake, not by this service
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/telegram")


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    user_id = access_token_subject(token)
    if user_id is None:
        raise _unauthorized("Invalid authentication credentials")

    user = db.get(User, user_id)
    if user is None:
        raise _unauthorized("Unknown user")
    if user.role == "disabled":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User is disabled")
    return user


def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    """Guards scheduler and ingestion endpoints with ``Bearer <CRON_SECRET>``."""
    if not settings.CRON_SECRET:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Scheduler endpoints are disabled")
    if not authorization or not hmac.compare_digest(authorization, f"Bearer {settings.CRON_SECRET}"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid scheduler credentials")


def get_runtime(request: Request):
    return request.app.state.runtime

import uuid
from datetime import timedelta
from typing import Optional

from jose import JWTError, jwt

from apps.api.app.core.config import settings
from apps.api.app.core.time import utc_now


ALGORITHM = "HS256"
ACCESS_TOKEN_TTL = timedelta(minutes=60)


def create_access_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a bearer token for ``user_id``.

    Production tokens come from the Telegram login handshake with the same
    claims; this is used by admin tooling and the test suite.
    """
    issued = utc_now()
    claims = {
        "sub": user_id,
        "typ": "access",
        "iat": issued,
        "exp": issued + (expires_delta or ACCESS_TOKEN_TTL),
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=ALGORITHM)


def access_token_subject(token: str) -> Optional[str]:
    """User id carried by a valid access token, else None."""
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if claims.get("typ") != "access":
        return None
    return claims.get("sub") or None

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from jose import JWTError, jwt

from tourpay.core.config import settings


def create_access_token(subject: str, expires_delta: timedelta | None = None) -> str:
    """Issue an access token in the format the platform auth service signs.

    Production tokens come from that service; this is for tests and local tooling.
    """
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.access_token_exp_minutes))
    to_encode = {"sub": subject, "type": "access", "exp": expire}
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[dict[str, Any]]:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

"""Bearer tokens for storefront customers and shop operators."""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from orderflow.core_settings import get_settings

ADMIN_ROLE = "admin"
USER_ROLE = "user"


def create_access_token(subject: str, role: str = USER_ROLE, expires_minutes: int = 60) -> str:
    settings = get_settings()
    issued = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "role": role,
        "iat": issued,
        "exp": issued + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a valid token; None when it is expired, forged or malformed."""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG],
                          options={"require": ["sub", "exp"]})
    except jwt.PyJWTError:
        return None

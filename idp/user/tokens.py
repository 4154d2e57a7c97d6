"""
Session tokens issued by the surrounding application's login flow.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from idp.config import settings

SESSION_TOKEN_ALGORITHM = "HS256"


def create_token(user, lifetime: timedelta = timedelta(days=7)) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": user.user_id,
        "iat": now,
        "exp": now + lifetime,
        "typ": "session",
    }
    return jwt.encode(payload, settings.session_secret, algorithm=SESSION_TOKEN_ALGORITHM)


def get_user_id_from_token(token: str) -> Optional[str]:
    """
    Return the session subject, or None for any invalid/expired token.
    """
    try:
        payload = jwt.decode(token, settings.session_secret, algorithms=[SESSION_TOKEN_ALGORITHM])
    except jwt.InvalidTokenError:
        return None
    if payload.get("typ") != "session":
        return None
    return payload.get("sub")

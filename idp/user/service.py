"""
User directory lookups and the current-user dependency.
"""

from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from idp.config import settings
from idp.database import get_db_session
from idp.user.schemas import User
from idp.user.tokens import get_user_id_from_token


async def find_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    return (await db.execute(select(User).where(User.user_id == user_id))).scalar_one_or_none()


def _session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(settings.session_cookie_name)
    if token:
        return token
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip()
    return None


def get_current_user(raise_not_found: bool = True):
    """
    Dependency factory resolving the signed-in user from the session token.
    """

    async def _get_current_user(
        request: Request,
        db: AsyncSession = Depends(get_db_session),
    ) -> Optional[User]:
        token = _session_token(request)
        user = None
        if token:
            user_id = get_user_id_from_token(token)
            if user_id:
                user = await find_user_by_id(db, user_id)
        if user and not user.is_active:
            user = None
        if not user and raise_not_found:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )
        return user

    return _get_current_user

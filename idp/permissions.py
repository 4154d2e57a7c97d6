"""
Permissions bitmask stuff, plus the authorization policy the controllers
consult before any state-mutating operation.
"""

from fastapi import HTTPException, status
from pydantic import BaseModel


class Role(BaseModel):
    bitmask: int
    description: str


class Permissioning:
    oauth_admin = Role(
        bitmask=1 << 0,
        description="OAuth admin -- review, approve, suspend and delete any OAuth client.",
    )
    client_developer = Role(
        bitmask=1 << 1,
        description="Client developer -- register and manage own OAuth clients.",
    )

    @classmethod
    def enabled(cls, user, role):
        return user.permissions_bitmask & role.bitmask == role.bitmask

    @classmethod
    def enable(cls, user, role):
        user.permissions_bitmask |= role.bitmask

    @classmethod
    def disable(cls, user, role):
        user.permissions_bitmask &= ~role.bitmask


class AuthorizationPolicy:
    """
    Role checks used by the routers; independent of the HTTP transport so
    tests can exercise them directly.
    """

    def is_admin(self, user) -> bool:
        return user is not None and Permissioning.enabled(user, Permissioning.oauth_admin)

    def require_user(self, user):
        if user is None:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required",
            )
        return user

    def require_admin(self, user):
        self.require_user(user)
        if not self.is_admin(user):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="This action can only be performed by OAuth admin accounts.",
            )
        return user

    def can_manage_client(self, user, client) -> bool:
        return user is not None and (client.owner_user_id == user.user_id or self.is_admin(user))


policy = AuthorizationPolicy()

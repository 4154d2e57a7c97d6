"""
Read-only view of the user directory owned by the surrounding application.
"""

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from idp.database import Base, generate_uuid, utcnow

ACCOUNT_ACTIVE = "active"
ACCOUNT_SUSPENDED = "suspended"


class User(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=True)
    username = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    email_verified = Column(Boolean, default=False, nullable=False)
    account_status = Column(String, default=ACCOUNT_ACTIVE, nullable=False)
    permissions_bitmask = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @property
    def is_active(self) -> bool:
        return not self.account_status or self.account_status == ACCOUNT_ACTIVE

    @property
    def preferred_username(self) -> str:
        if self.username:
            return self.username
        return (self.email or "").split("@")[0]

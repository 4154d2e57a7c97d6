"""
Refresh token persistence.

Refresh tokens are opaque: ort_{token_id}.{secret}. The token_id gives an
O(1) primary key lookup, the secret is stored argon2-hashed. Every rotation
keeps the family_id of the original grant so reuse of a rotated token can
revoke the whole chain.
"""

import re
import secrets
import string
from typing import Optional

from passlib.hash import argon2
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text

from idp.constants import REFRESH_TOKEN_PREFIX
from idp.database import Base, generate_uuid, utcnow


class RefreshToken(Base):
    """OAuth2 refresh token."""

    __tablename__ = "oauth_refresh_tokens"

    token_id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String, nullable=False)
    user_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    scope = Column(Text, nullable=False)
    family_id = Column(String, nullable=False, index=True)
    rotation_count = Column(Integer, nullable=False, default=0)
    previous_token_id = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    issued_at = Column(DateTime, default=utcnow)
    last_used_at = Column(DateTime, nullable=True)
    rotated_at = Column(DateTime, nullable=True)
    is_revoked = Column(Boolean, nullable=False, default=False)
    revoked_at = Column(DateTime, nullable=True)
    revocation_reason = Column(String, nullable=True)
    device_id = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(Text, nullable=True)

    @classmethod
    def generate_token(cls, token_id: str) -> str:
        """
        Generate a secure refresh token with embedded token_id for O(1) lookup.
        Format: ort_{token_id}.{secret}
        """
        secret = "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(48))
        return f"{REFRESH_TOKEN_PREFIX}{token_id}.{secret}"

    @classmethod
    def hash_token(cls, token: str) -> str:
        _, secret = cls.parse_token(token)
        return argon2.hash(secret or token)

    @classmethod
    def parse_token(cls, token: str) -> tuple[Optional[str], Optional[str]]:
        """
        Parse a token string into (token_id, secret), (None, None) if malformed.
        """
        if not token or not token.startswith(REFRESH_TOKEN_PREFIX):
            return None, None
        parts = token[len(REFRESH_TOKEN_PREFIX) :].split(".", 1)
        if len(parts) != 2 or not parts[0] or not parts[1]:
            return None, None
        return parts[0], parts[1]

    @staticmethod
    def could_be_valid(token: str) -> bool:
        """Fast format check, no database access."""
        token_id, secret = RefreshToken.parse_token(token)
        return (
            token_id is not None
            and len(token_id) == 36
            and len(secret) == 48
            and re.match(r"^[a-zA-Z0-9]+$", secret) is not None
        )

    def verify_secret(self, token: str) -> bool:
        _, secret = self.parse_token(token)
        if not secret:
            return False
        try:
            return argon2.verify(secret, self.token_hash)
        except ValueError:
            return False

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []

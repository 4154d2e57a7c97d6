"""
Authorization code persistence.

Codes are stored by SHA-256 hash only; the plaintext is returned to the
client exactly once. A code is redeemable while used_at is null and
expires_at is in the future.
"""

import hashlib
import secrets
import string
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import Column, DateTime, String, Text

from idp.database import Base, generate_uuid, utcnow


class AuthorizationCode(Base):
    """Single-use OAuth2 authorization code bound to a PKCE challenge."""

    __tablename__ = "oauth_authorization_codes"

    code_id = Column(String, primary_key=True, default=generate_uuid)
    code_hash = Column(String(64), nullable=False, unique=True, index=True)
    client_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    redirect_uri = Column(Text, nullable=False)
    scope = Column(Text, nullable=False)
    code_challenge = Column(String(128), nullable=False)
    code_challenge_method = Column(String(10), nullable=False, default="S256")
    nonce = Column(String(200), nullable=True)
    state = Column(String(500), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    used_at = Column(DateTime, nullable=True)
    used_from_ip = Column(String, nullable=True)
    request_ip = Column(String, nullable=True)
    request_user_agent = Column(Text, nullable=True)
    issued_at = Column(DateTime, default=utcnow)

    @staticmethod
    def generate_code() -> str:
        """Generate a secure authorization code."""
        return "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(64))

    @staticmethod
    def hash_code(code: str) -> str:
        return hashlib.sha256(code.encode()).hexdigest()


class AuthorizeParams(BaseModel):
    """Raw /authorize query parameters."""

    response_type: Optional[str] = None
    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    scope: Optional[str] = None
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    nonce: Optional[str] = None
    prompt: Optional[str] = None


class PendingAuthorization(BaseModel):
    """
    Validated authorization request awaiting the user's consent decision,
    kept in redis under PENDING_AUTH_KEY until approved, denied or expired.
    """

    pending_id: str
    user_id: str
    client_id: str
    redirect_uri: str
    scopes: list[str]
    state: Optional[str] = None
    code_challenge: str
    code_challenge_method: str = "S256"
    nonce: Optional[str] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "PendingAuthorization":
        if isinstance(data, bytes):
            data = data.decode()
        return cls.model_validate_json(data)


class ConsentDecision(BaseModel):
    """Body of POST /oauth/authorize/consent and /deny."""

    pending_id: str
    scopes: Optional[list[str]] = None

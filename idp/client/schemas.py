"""
Database and request models for OAuth client registrations.

Status workflow:
- pending -> approved (admin approve)
- pending -> rejected (admin reject)
- approved -> suspended (admin suspend)
- suspended -> approved (admin reactivate)
"""

import re
import secrets
import string
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from passlib.hash import argon2
from pydantic import BaseModel, field_validator
from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from idp.config import settings
from idp.constants import (
    CLIENT_ID_PREFIX,
    CLIENT_SECRET_PREFIX,
    DEFAULT_CLIENT_SCOPES,
    MAX_REDIRECT_URIS,
    SUPPORTED_SCOPES,
)
from idp.database import Base, utcnow


class ClientStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


APPLICATION_TYPES = ("web", "native")
LOCALHOST_NAMES = ("localhost", "127.0.0.1", "::1")


def validate_redirect_uri_format(uri: str) -> str:
    """
    Absolute http(s) URI without fragment; plain http only for localhost
    outside production.
    """
    parsed = urlparse(uri)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError(f"Invalid redirect URI: {uri}")
    if parsed.fragment:
        raise ValueError(f"Redirect URI must not contain a fragment: {uri}")
    if parsed.scheme == "http":
        if settings.production or parsed.hostname not in LOCALHOST_NAMES:
            raise ValueError(f"Redirect URI must use https: {uri}")
    return uri


def _validate_redirect_uris(uris: List[str]) -> List[str]:
    if not uris:
        raise ValueError("At least one redirect URI is required")
    if len(uris) > MAX_REDIRECT_URIS:
        raise ValueError(f"Maximum {MAX_REDIRECT_URIS} redirect URIs allowed")
    return [validate_redirect_uri_format(uri) for uri in uris]


def _validate_name(name: str) -> str:
    name = name.strip()
    if len(name) < 3 or len(name) > 100:
        raise ValueError("Name must be between 3 and 100 characters")
    if not re.match(r"^[\w\s\-\.]+$", name):
        raise ValueError("Name can only contain letters, numbers, spaces, hyphens, and periods")
    return name


class OAuthClientCreateRequest(BaseModel):
    """Request model for registering an OAuth client."""

    name: str
    description: Optional[str] = None
    redirect_uris: List[str]
    scopes: List[str] = list(DEFAULT_CLIENT_SCOPES)
    application_type: str = "web"
    is_first_party: bool = False
    homepage_url: Optional[str] = None
    logo_uri: Optional[str] = None
    metadata: Dict[str, Any] = {}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        return _validate_name(v)

    @field_validator("description")
    @classmethod
    def validate_description(cls, v):
        if v is not None and len(v) > 1000:
            raise ValueError("Description cannot exceed 1000 characters")
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        return _validate_redirect_uris(v)

    @field_validator("scopes")
    @classmethod
    def validate_scopes(cls, v):
        unknown = [s for s in v if s not in SUPPORTED_SCOPES]
        if unknown:
            raise ValueError(f"Unsupported scopes: {', '.join(unknown)}")
        if "openid" not in v:
            raise ValueError("Clients must be allowed the openid scope")
        return list(dict.fromkeys(v))

    @field_validator("application_type")
    @classmethod
    def validate_application_type(cls, v):
        if v not in APPLICATION_TYPES:
            raise ValueError("application_type must be web or native")
        return v

    @field_validator("logo_uri", "homepage_url")
    @classmethod
    def validate_urls(cls, v):
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid URL: {v}")
        return v


class OAuthClientUpdateRequest(BaseModel):
    """Request model for updating an OAuth client (owner editable fields only)."""

    name: Optional[str] = None
    description: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    homepage_url: Optional[str] = None
    logo_uri: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if v is not None:
            return _validate_name(v)
        return v

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if v is not None:
            return _validate_redirect_uris(v)
        return v


class ClientReviewRequest(BaseModel):
    """Admin review notes attached to a lifecycle transition."""

    notes: Optional[str] = None


class OAuthClient(Base):
    """OAuth2 client registration."""

    __tablename__ = "oauth_clients"

    client_id = Column(String, primary_key=True)
    client_secret_hash = Column(String, nullable=False)
    client_name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    redirect_uris = Column(JSON, nullable=False, default=list)
    scopes = Column(JSON, nullable=False, default=list)
    application_type = Column(String, nullable=False, default="web")
    client_type = Column(String, nullable=False, default="confidential")
    is_first_party = Column(Boolean, nullable=False, default=False)
    status = Column(String, nullable=False, default=ClientStatus.PENDING.value, index=True)
    owner_user_id = Column(String, nullable=False, index=True)
    owner_email = Column(String, nullable=True)
    homepage_url = Column(String, nullable=True)
    logo_uri = Column(String, nullable=True)
    client_metadata = Column("metadata", JSON, nullable=True, default=dict)
    approved_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    failed_auth_attempts = Column(Integer, nullable=False, default=0)
    token_count = Column(Integer, nullable=False, default=0)
    last_used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def generate_client_id(cls) -> str:
        """Generate a unique client ID."""
        suffix = "".join(secrets.choice(string.ascii_lowercase + string.digits) for _ in range(24))
        return f"{CLIENT_ID_PREFIX}{suffix}"

    @classmethod
    def generate_client_secret(cls) -> str:
        """Generate a secure client secret."""
        secret = "".join(secrets.choice(string.ascii_letters + string.digits) for _ in range(48))
        return f"{CLIENT_SECRET_PREFIX}{secret}"

    def verify_secret(self, secret: str) -> bool:
        """Verify the client secret."""
        if not secret or not self.client_secret_hash:
            return False
        try:
            return argon2.verify(secret, self.client_secret_hash)
        except ValueError:
            return False

    def set_secret(self, secret: str):
        self.client_secret_hash = argon2.hash(secret)

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """Exact match against the registered redirect URIs."""
        return uri in (self.redirect_uris or [])

    def has_scope(self, scope: str) -> bool:
        return scope in (self.scopes or [])

    @property
    def is_approved(self) -> bool:
        return self.status == ClientStatus.APPROVED.value

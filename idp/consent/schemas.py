"""
Per-(user, client) consent records.
"""

from typing import List

from pydantic import BaseModel
from sqlalchemy import JSON, Boolean, Column, DateTime, String, Text, UniqueConstraint

from idp.constants import SCOPE_EMAIL, SCOPE_OFFLINE_ACCESS, SCOPE_OPENID, SCOPE_PROFILE
from idp.database import Base, generate_uuid, utcnow

SCOPE_DESCRIPTIONS = {
    SCOPE_OPENID: {
        "name": "Authentication",
        "description": "Verify your identity",
        "icon": "user-check",
    },
    SCOPE_PROFILE: {
        "name": "Profile",
        "description": "Access your name, username and profile picture",
        "icon": "user",
    },
    SCOPE_EMAIL: {
        "name": "Email",
        "description": "Access your email address",
        "icon": "mail",
    },
    SCOPE_OFFLINE_ACCESS: {
        "name": "Offline access",
        "description": "Stay signed in and access your data while you are away",
        "icon": "refresh-cw",
    },
}

HISTORY_GRANTED = "granted"
HISTORY_REVOKED = "revoked"
HISTORY_SCOPES_REVOKED = "scopes_revoked"
HISTORY_DETAIL_LIMIT = 10


def describe_scope(scope: str) -> dict:
    described = SCOPE_DESCRIPTIONS.get(
        scope,
        {"name": scope, "description": f"Access to {scope}", "icon": "key"},
    )
    return {"scope": scope, **described}


def describe_scopes(scopes: List[str]) -> List[dict]:
    return [describe_scope(scope) for scope in scopes]


class UserConsent(Base):
    """Scopes a user has granted to one client, with an audit trail."""

    __tablename__ = "oauth_user_consents"

    consent_id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, nullable=False, index=True)
    client_id = Column(String, nullable=False, index=True)
    granted_scopes = Column(JSON, nullable=False, default=list)
    is_active = Column(Boolean, nullable=False, default=True)
    first_granted_at = Column(DateTime, default=utcnow)
    last_updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    revoked_at = Column(DateTime, nullable=True)
    history = Column(JSON, nullable=False, default=list)
    initial_ip = Column(String, nullable=True)
    initial_user_agent = Column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "client_id", name="constraint_user_client_consent"),
    )


class ConsentCheck(BaseModel):
    needs_consent: bool
    missing_scopes: List[str] = []
    existing_scopes: List[str] = []


class RevokeScopesRequest(BaseModel):
    scopes: List[str]


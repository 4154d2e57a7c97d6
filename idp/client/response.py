"""
Response models for OAuth client endpoints.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class OAuthClientPublicResponse(BaseModel):
    """Information safe to show to any user, e.g. on a consent screen."""

    model_config = ConfigDict(from_attributes=True)

    client_id: str
    client_name: str
    description: Optional[str] = None
    logo_uri: Optional[str] = None
    homepage_url: Optional[str] = None
    is_first_party: bool
    status: str


class OAuthClientResponse(OAuthClientPublicResponse):
    """Owner/admin view; never includes the secret."""

    redirect_uris: List[str]
    scopes: List[str]
    application_type: str
    client_type: str
    owner_user_id: str
    owner_email: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("client_metadata", "metadata")
    )
    approved_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_notes: Optional[str] = None
    token_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OAuthClientCreationResponse(OAuthClientResponse):
    """Returned once at registration, includes the plain secret."""

    client_secret: Optional[str] = None


class OAuthClientSecretResponse(BaseModel):
    client_id: str
    client_secret: str


class OAuthClientStatsResponse(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
    suspended: int

"""
Response models for the token, revocation and introspection endpoints.
"""

from typing import Optional

from pydantic import BaseModel


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749 / OIDC Core."""

    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None


class IntrospectionResponse(BaseModel):
    """RFC 7662 introspection response; only `active` for inactive tokens."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    sub: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    iss: Optional[str] = None
    token_type: Optional[str] = None

"""
OIDC discovery, JWKS and UserInfo endpoints.
"""

import jwt
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from idp.config import settings
from idp.constants import (
    DISCOVERY_CACHE_CONTROL,
    JWKS_CACHE_CONTROL,
    NO_STORE_HEADERS,
    PKCE_METHODS,
    PROMPT_VALUES,
    RESPONSE_TYPES_SUPPORTED,
    SCOPE_EMAIL,
    SCOPE_PROFILE,
    SIGNING_ALGORITHM,
    SUPPORTED_GRANT_TYPES,
    SUPPORTED_SCOPES,
    TOKEN_ENDPOINT_AUTH_METHODS,
)
from idp.database import get_db_session
from idp.exceptions import InvalidTokenError
from idp.keys import get_signing_keys
from idp.token.service import email_claims, profile_claims, split_scope, verify_access_token
from idp.user.service import find_user_by_id
from idp.util import get_bearer_token

well_known_router = APIRouter()
router = APIRouter()

CLAIMS_SUPPORTED = [
    "sub",
    "iss",
    "aud",
    "exp",
    "iat",
    "auth_time",
    "nonce",
    "at_hash",
    "name",
    "preferred_username",
    "picture",
    "updated_at",
    "email",
    "email_verified",
]


def discovery_document() -> dict:
    base = settings.base_url
    return {
        "issuer": settings.issuer,
        "authorization_endpoint": f"{base}/oauth/authorize",
        "token_endpoint": f"{base}/oauth/token",
        "userinfo_endpoint": f"{base}/oauth/userinfo",
        "revocation_endpoint": f"{base}/oauth/revoke",
        "introspection_endpoint": f"{base}/oauth/introspect",
        "jwks_uri": f"{settings.issuer.rstrip('/')}/.well-known/jwks.json",
        "response_types_supported": list(RESPONSE_TYPES_SUPPORTED),
        "response_modes_supported": ["query"],
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [SIGNING_ALGORITHM],
        "scopes_supported": list(SUPPORTED_SCOPES),
        "claims_supported": CLAIMS_SUPPORTED,
        "code_challenge_methods_supported": list(PKCE_METHODS),
        "token_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
        "revocation_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
        "introspection_endpoint_auth_methods_supported": list(TOKEN_ENDPOINT_AUTH_METHODS),
        "prompt_values_supported": list(PROMPT_VALUES),
    }


@well_known_router.get("/openid-configuration")
async def openid_configuration():
    return JSONResponse(
        content=discovery_document(),
        headers={"Cache-Control": DISCOVERY_CACHE_CONTROL},
    )


@well_known_router.get("/jwks.json")
async def jwks():
    return JSONResponse(
        content=get_signing_keys().jwks(),
        headers={"Cache-Control": JWKS_CACHE_CONTROL},
    )


@router.api_route("/userinfo", methods=["GET", "POST"])
async def userinfo(
    request: Request,
    db: AsyncSession = Depends(get_db_session),
):
    """OpenID Connect UserInfo Endpoint."""
    token = get_bearer_token(request)
    if not token:
        raise InvalidTokenError("Missing bearer token")
    try:
        payload = verify_access_token(token)
    except jwt.InvalidTokenError:
        raise InvalidTokenError("Invalid or expired token")

    user = await find_user_by_id(db, payload["sub"])
    if not user or not user.is_active:
        raise InvalidTokenError("User not found or inactive")

    scopes = split_scope(payload.get("scope"))
    claims = {"sub": user.user_id}
    if SCOPE_PROFILE in scopes:
        claims.update(profile_claims(user))
    if SCOPE_EMAIL in scopes:
        claims.update(email_claims(user))
    return JSONResponse(content=claims, headers=NO_STORE_HEADERS)

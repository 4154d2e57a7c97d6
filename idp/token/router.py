"""
OAuth2 token, revocation (RFC 7009) and introspection (RFC 7662) endpoints.
"""

from datetime import timezone
from typing import Optional

import jwt
from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from idp.authorize.service import redeem_authorization_code, verify_pkce
from idp.client.schemas import OAuthClient
from idp.client.service import record_token_issued, validate_client
from idp.config import settings
from idp.constants import (
    GRANT_AUTHORIZATION_CODE,
    NO_STORE_HEADERS,
    REVOKE_USER_LOGOUT,
    SECURITY_EVENT_PKCE_FAILURE,
    SUPPORTED_GRANT_TYPES,
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
)
from idp.database import get_db_session, utcnow
from idp.exceptions import (
    INVALID_GRANT,
    INVALID_REQUEST,
    INVALID_SCOPE,
    UNSUPPORTED_GRANT_TYPE,
    InvalidClientError,
    OAuthError,
)
from idp.token.response import IntrospectionResponse, TokenResponse
from idp.token.service import (
    RefreshTokenReuse,
    TokenContext,
    build_refresh_token_response,
    build_token_response,
    load_refresh_token,
    revoke_refresh_token,
    split_scope,
    validate_refresh_token,
    verify_access_token,
)
from idp.user.service import find_user_by_id
from idp.util import get_client_ip, get_user_agent, parse_basic_auth

router = APIRouter()


async def authenticate_client(
    request: Request,
    db: AsyncSession,
    client_id: Optional[str],
    client_secret: Optional[str],
) -> OAuthClient:
    """
    client_secret_basic or client_secret_post; invalid_client on any failure.
    """
    basic_id, basic_secret = parse_basic_auth(request)
    if basic_id:
        if client_id and client_id != basic_id:
            raise InvalidClientError("client_id does not match the Authorization header")
        client_id, client_secret = basic_id, basic_secret
    if not client_id or not client_secret:
        raise InvalidClientError("Client authentication required")
    result = await validate_client(db, client_id, client_secret)
    if not result.is_valid:
        raise InvalidClientError()
    return result.client


def _token_context(request: Request) -> TokenContext:
    return TokenContext(
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
        device_id=request.headers.get("x-device-id"),
    )


def _token_response(body: dict) -> JSONResponse:
    return JSONResponse(
        content=TokenResponse(**body).model_dump(exclude_none=True),
        headers=NO_STORE_HEADERS,
    )


async def _active_user(db: AsyncSession, user_id: str):
    user = await find_user_by_id(db, user_id)
    if not user or not user.is_active:
        raise OAuthError(INVALID_GRANT, "User account is not active")
    return user


@router.post("/token")
async def token_endpoint(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db_session),
):
    """OAuth2 Token Endpoint."""
    if not grant_type:
        raise OAuthError(INVALID_REQUEST, "Missing required parameter: grant_type")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise OAuthError(UNSUPPORTED_GRANT_TYPE, f"Unsupported grant_type: {grant_type}")

    client = await authenticate_client(request, db, client_id, client_secret)
    context = _token_context(request)

    if grant_type == GRANT_AUTHORIZATION_CODE:
        if not code or not redirect_uri or not code_verifier:
            raise OAuthError(INVALID_REQUEST, "code, redirect_uri and code_verifier are required")

        # Marked used before anything else; a failed PKCE check leaves it burned.
        auth_code = await redeem_authorization_code(
            db, code, client.client_id, redirect_uri, used_from_ip=context.ip_address
        )
        if not auth_code:
            raise OAuthError(INVALID_GRANT, "Invalid or expired authorization code")
        if not verify_pkce(
            code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
        ):
            logger.warning(
                f"SECURITY: {SECURITY_EVENT_PKCE_FAILURE} client_id={client.client_id} "
                f"user_id={auth_code.user_id} code_id={auth_code.code_id} ip={context.ip_address}"
            )
            raise OAuthError(INVALID_GRANT, "Invalid or expired authorization code")

        user = await _active_user(db, auth_code.user_id)
        body = await build_token_response(
            db, user, client.client_id, auth_code.scope, nonce=auth_code.nonce, context=context
        )
        await record_token_issued(db, client.client_id)
        return _token_response(body)

    # refresh_token grant
    if not refresh_token:
        raise OAuthError(INVALID_REQUEST, "Missing required parameter: refresh_token")
    validation = await validate_refresh_token(db, refresh_token, client.client_id)
    if not validation.is_valid:
        raise OAuthError(INVALID_GRANT, "Invalid refresh token")
    old = validation.refresh_token

    requested = split_scope(scope)
    if requested and any(s not in old.scopes for s in requested):
        raise OAuthError(INVALID_SCOPE, "Requested scope exceeds the original grant")

    user = await _active_user(db, old.user_id)
    try:
        body = await build_refresh_token_response(
            db, old, user, scope=" ".join(requested) or None, context=context
        )
    except RefreshTokenReuse:
        raise OAuthError(INVALID_GRANT, "Invalid refresh token")
    await record_token_issued(db, client.client_id)
    return _token_response(body)


@router.post("/revoke")
async def revoke_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db_session),
):
    """
    OAuth2 Token Revocation Endpoint (RFC 7009). Revokes the whole refresh
    token family; unknown tokens still get a 200.
    """
    client = await authenticate_client(request, db, client_id, client_secret)
    if not token:
        raise OAuthError(INVALID_REQUEST, "Missing required parameter: token")
    await revoke_refresh_token(db, token, REVOKE_USER_LOGOUT, client_id=client.client_id)
    return JSONResponse(content={}, headers=NO_STORE_HEADERS)


async def _introspect(db: AsyncSession, token: str, client: OAuthClient) -> IntrospectionResponse:
    try:
        payload = verify_access_token(token)
        return IntrospectionResponse(
            active=True,
            scope=payload.get("scope"),
            client_id=payload.get("client_id"),
            sub=payload.get("sub"),
            exp=payload.get("exp"),
            iat=payload.get("iat"),
            iss=payload.get("iss"),
            token_type=TOKEN_TYPE_ACCESS,
        )
    except jwt.InvalidTokenError:
        pass

    record = await load_refresh_token(db, token)
    if (
        not record
        or record.client_id != client.client_id
        or record.rotated_at is not None
        or record.is_revoked
        or record.expires_at <= utcnow()
    ):
        return IntrospectionResponse(active=False)
    return IntrospectionResponse(
        active=True,
        scope=record.scope,
        client_id=record.client_id,
        sub=record.user_id,
        exp=int(record.expires_at.replace(tzinfo=timezone.utc).timestamp()),
        iat=(
            int(record.issued_at.replace(tzinfo=timezone.utc).timestamp())
            if record.issued_at
            else None
        ),
        iss=settings.issuer,
        token_type=TOKEN_TYPE_REFRESH,
    )


@router.post("/introspect")
async def introspect_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    db: AsyncSession = Depends(get_db_session),
):
    """
    OAuth2 Token Introspection Endpoint (RFC 7662). Any failure is reported
    as {"active": false} with no further detail.
    """
    client = await authenticate_client(request, db, client_id, client_secret)
    if not token:
        return JSONResponse(content={"active": False}, headers=NO_STORE_HEADERS)
    result = await _introspect(db, token, client)
    return JSONResponse(content=result.model_dump(exclude_none=True), headers=NO_STORE_HEADERS)

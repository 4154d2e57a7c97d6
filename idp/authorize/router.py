"""
OAuth2 authorization endpoint (authorization code flow with mandatory PKCE)
and the consent approve/deny callbacks.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from idp.authorize.schemas import AuthorizeParams, ConsentDecision
from idp.authorize.service import (
    create_authorization_code,
    pop_pending_authorization,
    store_pending_authorization,
    validate_authorization_request,
)
from idp.client.service import get_client
from idp.config import settings
from idp.consent.schemas import describe_scopes
from idp.consent.service import check_consent_needed, get_consent_ui_data, grant_consent
from idp.constants import SCOPE_OPENID
from idp.database import get_db_session
from idp.exceptions import (
    ACCESS_DENIED,
    CONSENT_REQUIRED,
    INVALID_REQUEST,
    INVALID_SCOPE,
    UNAUTHORIZED_CLIENT,
    OAuthError,
    RedirectableOAuthError,
    build_redirect,
)
from idp.user.schemas import User
from idp.user.service import get_current_user
from idp.util import get_client_ip, get_user_agent

router = APIRouter()


def authorize_params(
    response_type: Optional[str] = Query(None),
    client_id: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
    scope: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    code_challenge: Optional[str] = Query(None),
    code_challenge_method: Optional[str] = Query(None),
    nonce: Optional[str] = Query(None),
    prompt: Optional[str] = Query(None),
) -> AuthorizeParams:
    return AuthorizeParams(
        response_type=response_type,
        client_id=client_id,
        redirect_uri=redirect_uri,
        scope=scope,
        state=state,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        nonce=nonce,
        prompt=prompt,
    )


def _require_user(user: Optional[User]) -> User:
    if not user:
        raise OAuthError(ACCESS_DENIED, "User not authenticated", status_code=401)
    return user


def _code_redirect(redirect_uri: str, code: str, state: Optional[str]) -> RedirectResponse:
    return RedirectResponse(
        url=build_redirect(redirect_uri, {"code": code, "state": state}),
        status_code=302,
    )


@router.get("/authorize")
async def authorize(
    request: Request,
    params: AuthorizeParams = Depends(authorize_params),
    db: AsyncSession = Depends(get_db_session),
    current_user: Optional[User] = Depends(get_current_user(raise_not_found=False)),
):
    """
    OAuth2 Authorization Endpoint.

    Redirects with a code when no consent is outstanding, otherwise returns
    the consent descriptor plus a pending_id for the approve/deny callbacks.
    """
    auth_request = await validate_authorization_request(db, params)
    user = _require_user(current_user)
    client = auth_request.client

    check = await check_consent_needed(
        db, user.user_id, client.client_id, auth_request.scopes, client.is_first_party
    )
    needs_consent = check.needs_consent or (
        auth_request.prompt == "consent" and not client.is_first_party
    )
    if needs_consent:
        if auth_request.prompt == "none":
            raise RedirectableOAuthError(
                CONSENT_REQUIRED,
                "User consent required",
                auth_request.redirect_uri,
                auth_request.state,
            )
        pending = await store_pending_authorization(user.user_id, auth_request)
        return {
            "requires_consent": True,
            "pending_id": pending.pending_id,
            "expires_in": settings.pending_auth_lifetime,
            "consent_data": get_consent_ui_data(client, auth_request.scopes, check),
        }

    code = await create_authorization_code(
        db,
        user_id=user.user_id,
        client_id=client.client_id,
        redirect_uri=auth_request.redirect_uri,
        scope=auth_request.scope,
        code_challenge=auth_request.code_challenge,
        code_challenge_method=auth_request.code_challenge_method,
        nonce=auth_request.nonce,
        state=auth_request.state,
        request_ip=get_client_ip(request),
        request_user_agent=get_user_agent(request),
    )
    return _code_redirect(auth_request.redirect_uri, code, auth_request.state)


@router.get("/authorize/validate")
async def validate_authorize(
    params: AuthorizeParams = Depends(authorize_params),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Validate authorization parameters for a consent page; never redirects.
    """
    try:
        auth_request = await validate_authorization_request(db, params)
    except RedirectableOAuthError as exc:
        raise OAuthError(exc.error, exc.description)
    client = auth_request.client
    return {
        "valid": True,
        "client": {
            "client_id": client.client_id,
            "client_name": client.client_name,
            "description": client.description,
            "logo_uri": client.logo_uri,
            "homepage_url": client.homepage_url,
            "is_first_party": client.is_first_party,
        },
        "scopes": describe_scopes(auth_request.scopes),
        "redirect_uri": auth_request.redirect_uri,
        "state": auth_request.state,
    }


@router.post("/authorize/consent")
async def approve_consent(
    request: Request,
    args: ConsentDecision,
    db: AsyncSession = Depends(get_db_session),
    current_user: Optional[User] = Depends(get_current_user(raise_not_found=False)),
):
    """
    Approve a pending authorization, optionally for a subset of its scopes.
    """
    user = _require_user(current_user)
    pending = await pop_pending_authorization(args.pending_id, user.user_id)
    if not pending:
        raise OAuthError(INVALID_REQUEST, "No pending authorization request")

    client = await get_client(db, pending.client_id)
    if not client or not client.is_approved:
        raise OAuthError(UNAUTHORIZED_CLIENT, "Client is no longer approved")
    if not client.is_valid_redirect_uri(pending.redirect_uri):
        raise OAuthError(INVALID_REQUEST, "redirect_uri is no longer registered for this client")

    scopes = list(dict.fromkeys(args.scopes)) if args.scopes else pending.scopes
    if SCOPE_OPENID not in scopes or any(scope not in pending.scopes for scope in scopes):
        raise RedirectableOAuthError(
            INVALID_SCOPE,
            "Approved scopes must include openid and be a subset of the requested scopes",
            pending.redirect_uri,
            pending.state,
        )

    await grant_consent(
        db,
        user.user_id,
        client.client_id,
        scopes,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    code = await create_authorization_code(
        db,
        user_id=user.user_id,
        client_id=client.client_id,
        redirect_uri=pending.redirect_uri,
        scope=" ".join(scopes),
        code_challenge=pending.code_challenge,
        code_challenge_method=pending.code_challenge_method,
        nonce=pending.nonce,
        state=pending.state,
        request_ip=get_client_ip(request),
        request_user_agent=get_user_agent(request),
    )
    return _code_redirect(pending.redirect_uri, code, pending.state)


@router.post("/authorize/deny")
async def deny_consent(
    args: ConsentDecision,
    current_user: Optional[User] = Depends(get_current_user(raise_not_found=False)),
):
    user = _require_user(current_user)
    pending = await pop_pending_authorization(args.pending_id, user.user_id)
    if not pending:
        raise OAuthError(INVALID_REQUEST, "No pending authorization request")
    raise RedirectableOAuthError(
        ACCESS_DENIED,
        "User denied consent",
        pending.redirect_uri,
        pending.state,
    )

"""
Authorization request validation, PKCE, authorization codes and the
time-boxed pending-consent state.
"""

import base64
import hashlib
import hmac
import re
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from idp.authorize.schemas import AuthorizationCode, AuthorizeParams, PendingAuthorization
from idp.client.schemas import OAuthClient
from idp.client.service import validate_redirect_uri, validate_scopes
from idp.config import settings
from idp.constants import (
    MAX_NONCE_LENGTH,
    MAX_PKCE_LENGTH,
    MAX_STATE_LENGTH,
    MIN_PKCE_LENGTH,
    PENDING_AUTH_KEY,
    PKCE_METHODS,
    PROMPT_VALUES,
    RESPONSE_TYPES_SUPPORTED,
    SCOPE_OPENID,
)
from idp.database import utcnow
from idp.exceptions import (
    INVALID_REQUEST,
    INVALID_SCOPE,
    UNAUTHORIZED_CLIENT,
    UNSUPPORTED_RESPONSE_TYPE,
    OAuthError,
    RedirectableOAuthError,
)

PKCE_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]+$")


@dataclass
class AuthorizationRequest:
    """An /authorize request whose client, redirect_uri and parameters check out."""

    client: OAuthClient
    redirect_uri: str
    scopes: List[str]
    code_challenge: str
    code_challenge_method: str = "S256"
    state: Optional[str] = None
    nonce: Optional[str] = None
    prompt: Optional[str] = None

    @property
    def scope(self) -> str:
        return " ".join(self.scopes)


def s256_challenge(code_verifier: str) -> str:
    """RFC 7636: BASE64URL(SHA256(code_verifier))."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def is_valid_pkce_value(value: Optional[str]) -> bool:
    return (
        bool(value)
        and MIN_PKCE_LENGTH <= len(value) <= MAX_PKCE_LENGTH
        and bool(PKCE_PATTERN.match(value))
    )


def verify_pkce(code_verifier: Optional[str], code_challenge: str, method: str = "S256") -> bool:
    if method not in PKCE_METHODS or not is_valid_pkce_value(code_verifier):
        return False
    return hmac.compare_digest(s256_challenge(code_verifier), code_challenge)


async def validate_authorization_request(
    db: AsyncSession, params: AuthorizeParams
) -> AuthorizationRequest:
    """
    Errors found before client_id and redirect_uri are both verified are
    raised as direct OAuthError; afterwards as RedirectableOAuthError.
    """
    if not params.client_id or not params.redirect_uri:
        raise OAuthError(INVALID_REQUEST, "Missing required parameter: client_id and redirect_uri")

    checked = await validate_redirect_uri(db, params.client_id, params.redirect_uri)
    if not checked.is_valid:
        if checked.client and checked.client.is_approved:
            raise OAuthError(INVALID_REQUEST, "redirect_uri is not registered for this client")
        raise OAuthError(UNAUTHORIZED_CLIENT, checked.error)
    client = checked.client

    state = params.state if params.state and len(params.state) <= MAX_STATE_LENGTH else None

    def fail(error: str, description: str):
        return RedirectableOAuthError(error, description, params.redirect_uri, state)

    if params.state and len(params.state) > MAX_STATE_LENGTH:
        raise fail(INVALID_REQUEST, f"state must be at most {MAX_STATE_LENGTH} characters")
    if not params.response_type:
        raise fail(INVALID_REQUEST, "Missing required parameter: response_type")
    if params.response_type not in RESPONSE_TYPES_SUPPORTED:
        raise fail(UNSUPPORTED_RESPONSE_TYPE, "Only response_type=code is supported")
    if not params.code_challenge:
        raise fail(INVALID_REQUEST, "PKCE code_challenge is required")
    method = params.code_challenge_method or "S256"
    if method not in PKCE_METHODS:
        raise fail(INVALID_REQUEST, "Only code_challenge_method=S256 is supported")
    if not is_valid_pkce_value(params.code_challenge):
        raise fail(
            INVALID_REQUEST,
            f"code_challenge must be {MIN_PKCE_LENGTH}-{MAX_PKCE_LENGTH} base64url characters",
        )
    if params.nonce and len(params.nonce) > MAX_NONCE_LENGTH:
        raise fail(INVALID_REQUEST, f"nonce must be at most {MAX_NONCE_LENGTH} characters")
    if params.prompt and params.prompt not in PROMPT_VALUES:
        raise fail(INVALID_REQUEST, f"Unsupported prompt value: {params.prompt}")

    requested = list(dict.fromkeys((params.scope or "").split()))
    if SCOPE_OPENID not in requested:
        raise fail(INVALID_SCOPE, "scope must include openid")
    scope_check = validate_scopes(client, requested)
    if not scope_check.is_valid:
        raise fail(INVALID_SCOPE, f"Unsupported scopes: {', '.join(scope_check.denied)}")

    return AuthorizationRequest(
        client=client,
        redirect_uri=params.redirect_uri,
        scopes=scope_check.granted,
        code_challenge=params.code_challenge,
        code_challenge_method=method,
        state=state,
        nonce=params.nonce,
        prompt=params.prompt,
    )


async def create_authorization_code(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    code_challenge: str,
    code_challenge_method: str = "S256",
    nonce: Optional[str] = None,
    state: Optional[str] = None,
    request_ip: Optional[str] = None,
    request_user_agent: Optional[str] = None,
) -> str:
    """
    Persist a single-use code (hash only) and return the plaintext.
    """
    code = AuthorizationCode.generate_code()
    db.add(
        AuthorizationCode(
            code_hash=AuthorizationCode.hash_code(code),
            client_id=client_id,
            user_id=user_id,
            redirect_uri=redirect_uri,
            scope=scope,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            nonce=nonce,
            state=state,
            expires_at=utcnow() + timedelta(seconds=settings.auth_code_lifetime),
            request_ip=request_ip,
            request_user_agent=request_user_agent,
        )
    )
    await db.commit()
    return code


async def redeem_authorization_code(
    db: AsyncSession,
    code: str,
    client_id: str,
    redirect_uri: str,
    used_from_ip: Optional[str] = None,
) -> Optional[AuthorizationCode]:
    """
    Atomically find an unused, unexpired code issued to (client_id,
    redirect_uri) and mark it used. Returns None unless this call won.
    """
    code_hash = AuthorizationCode.hash_code(code)
    now = utcnow()
    result = await db.execute(
        update(AuthorizationCode)
        .where(
            AuthorizationCode.code_hash == code_hash,
            AuthorizationCode.client_id == client_id,
            AuthorizationCode.redirect_uri == redirect_uri,
            AuthorizationCode.used_at.is_(None),
            AuthorizationCode.expires_at > now,
        )
        .values(used_at=now, used_from_ip=used_from_ip)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        return None
    return (
        await db.execute(
            select(AuthorizationCode)
            .where(AuthorizationCode.code_hash == code_hash)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


def _pending_key(pending_id: str) -> str:
    return PENDING_AUTH_KEY.format(pending_id=pending_id)


async def store_pending_authorization(
    user_id: str, request: AuthorizationRequest
) -> PendingAuthorization:
    pending = PendingAuthorization(
        pending_id=str(uuid.uuid4()),
        user_id=user_id,
        client_id=request.client.client_id,
        redirect_uri=request.redirect_uri,
        scopes=request.scopes,
        state=request.state,
        code_challenge=request.code_challenge,
        code_challenge_method=request.code_challenge_method,
        nonce=request.nonce,
    )
    await settings.redis_client.set(
        _pending_key(pending.pending_id),
        pending.to_json(),
        ex=settings.pending_auth_lifetime,
    )
    return pending


async def pop_pending_authorization(
    pending_id: str, user_id: str
) -> Optional[PendingAuthorization]:
    """
    Consume the pending authorization; it is only returned to the user who
    started it.
    """
    key = _pending_key(pending_id)
    data = await settings.redis_client.get(key)
    if not data:
        return None
    pending = PendingAuthorization.from_json(data)
    if pending.user_id != user_id:
        logger.warning(f"Pending authorization {pending_id[:8]} presented by a different user")
        return None
    # Only the caller whose delete removed the key may use it.
    if not await settings.redis_client.delete(key):
        return None
    return pending

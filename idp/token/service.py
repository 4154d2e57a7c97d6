"""
Token issuance and verification: RS256 access and ID tokens (stateless JWTs)
and database-backed refresh tokens with rotation and reuse detection.
"""

import base64
import hashlib
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta, timezone
from typing import List, Optional

import jwt
from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from idp.config import settings
from idp.constants import (
    REVOKE_EXPIRED,
    REVOKE_TOKEN_REUSE,
    SCOPE_EMAIL,
    SCOPE_OFFLINE_ACCESS,
    SCOPE_OPENID,
    SCOPE_PROFILE,
    SECURITY_EVENT_REFRESH_REUSE,
    TOKEN_TYPE_ACCESS,
)
from idp.database import generate_uuid, utcnow
from idp.keys import get_signing_keys
from idp.token.schemas import RefreshToken
from idp.user.schemas import User


class InsufficientScope(jwt.InvalidTokenError): ...


class RefreshTokenReuse(Exception):
    """A rotated refresh token was presented again; its family is revoked."""

    def __init__(self, family_id: str):
        super().__init__(f"Refresh token reuse detected in family {family_id}")
        self.family_id = family_id


@dataclass
class TokenContext:
    """Request details recorded alongside issued refresh tokens."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_id: Optional[str] = None


@dataclass
class RefreshValidation:
    is_valid: bool
    refresh_token: Optional[RefreshToken] = None
    error: Optional[str] = None
    security_event: Optional[str] = None
    family_id: Optional[str] = None


def split_scope(scope: Optional[str]) -> List[str]:
    return scope.split() if scope else []


def compute_at_hash(access_token: str) -> str:
    """Left-most half of SHA-256(access_token), base64url without padding."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest[: len(digest) // 2]).rstrip(b"=").decode("ascii")


def generate_access_token(user: User, client_id: str, scope: str) -> tuple[str, int]:
    """
    Sign a short-lived access token, returns (token, expires_in).
    """
    now = int(time.time())
    lifetime = settings.access_token_lifetime
    payload = {
        "iss": settings.issuer,
        "sub": user.user_id,
        "aud": client_id,
        "exp": now + lifetime,
        "iat": now,
        "jti": str(uuid.uuid4()),
        "scope": scope,
        "client_id": client_id,
        "token_type": TOKEN_TYPE_ACCESS,
    }
    return get_signing_keys().sign(payload), lifetime


def verify_access_token(token: str, required_scope: Optional[str] = None) -> dict:
    """
    Verify signature, issuer, expiry and token_type of an access token, and
    optionally that it carries required_scope.

    Raises jwt.InvalidTokenError (or InsufficientScope) on failure.
    """
    payload = get_signing_keys().verify(token, issuer=settings.issuer)
    if payload.get("token_type") != TOKEN_TYPE_ACCESS:
        raise jwt.InvalidTokenError("Invalid token type")
    if required_scope and required_scope not in split_scope(payload.get("scope")):
        raise InsufficientScope(f"Token missing required scope: {required_scope}")
    return payload


def generate_id_token(
    user: User,
    client_id: str,
    scope: str,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
    auth_time: Optional[int] = None,
) -> str:
    """
    Sign an OIDC ID token. Profile and email claims are only included when
    the matching scope was granted.
    """
    now = int(time.time())
    scopes = split_scope(scope)
    payload = {
        "iss": settings.issuer,
        "sub": user.user_id,
        "aud": client_id,
        "exp": now + settings.id_token_lifetime,
        "iat": now,
        "auth_time": auth_time or now,
    }
    if nonce:
        payload["nonce"] = nonce
    if access_token:
        payload["at_hash"] = compute_at_hash(access_token)
    if SCOPE_PROFILE in scopes:
        payload.update(profile_claims(user))
    if SCOPE_EMAIL in scopes:
        payload.update(email_claims(user))
    return get_signing_keys().sign(payload)


def profile_claims(user: User) -> dict:
    claims = {
        "name": user.name,
        "preferred_username": user.preferred_username,
        "picture": user.avatar,
    }
    if user.updated_at:
        claims["updated_at"] = int(user.updated_at.replace(tzinfo=timezone.utc).timestamp())
    return {k: v for k, v in claims.items() if v is not None}


def email_claims(user: User) -> dict:
    return {"email": user.email, "email_verified": bool(user.email_verified)}


async def generate_refresh_token(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    scope: str,
    context: Optional[TokenContext] = None,
    family_id: Optional[str] = None,
    previous: Optional[RefreshToken] = None,
) -> tuple[str, RefreshToken]:
    """
    Create a refresh token, either starting a new family or continuing one
    (when previous is given). Added to the session, caller commits.
    """
    context = context or TokenContext()
    token_id = generate_uuid()
    plain = RefreshToken.generate_token(token_id)
    record = RefreshToken(
        token_id=token_id,
        token_hash=RefreshToken.hash_token(plain),
        user_id=user_id,
        client_id=client_id,
        scope=scope,
        family_id=previous.family_id if previous else (family_id or generate_uuid()),
        rotation_count=previous.rotation_count + 1 if previous else 0,
        previous_token_id=previous.token_id if previous else None,
        expires_at=utcnow() + timedelta(seconds=settings.refresh_token_lifetime),
        issued_at=utcnow(),
        ip_address=context.ip_address,
        user_agent=context.user_agent,
        device_id=context.device_id,
    )
    db.add(record)
    return plain, record


async def revoke_family(db: AsyncSession, family_id: str, reason: str) -> int:
    """
    Revoke every not-yet-revoked token of a family. Caller commits.
    """
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.family_id == family_id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow(), revocation_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def _report_reuse(
    db: AsyncSession, user_id: str, client_id: str, family_id: str, token_id: str
):
    revoked = await revoke_family(db, family_id, REVOKE_TOKEN_REUSE)
    await db.commit()
    logger.warning(
        f"SECURITY: {SECURITY_EVENT_REFRESH_REUSE} user_id={user_id} client_id={client_id} "
        f"family_id={family_id} token_id={token_id} revoked={revoked}"
    )


async def load_refresh_token(db: AsyncSession, token: str) -> Optional[RefreshToken]:
    """
    Look up a refresh token by its embedded id and verify the secret.
    """
    if not RefreshToken.could_be_valid(token):
        return None
    token_id, _ = RefreshToken.parse_token(token)
    record = (
        await db.execute(
            select(RefreshToken)
            .where(RefreshToken.token_id == token_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if not record or not record.verify_secret(token):
        return None
    return record


async def validate_refresh_token(db: AsyncSession, token: str, client_id: str) -> RefreshValidation:
    """
    Validation order: exists, belongs to client, not rotated (reuse), not
    revoked, not expired. Presenting an already rotated token revokes the
    whole family.
    """
    record = await load_refresh_token(db, token)
    if not record:
        return RefreshValidation(is_valid=False, error="Refresh token not found")

    if record.client_id != client_id:
        return RefreshValidation(
            is_valid=False, error="Refresh token was not issued to this client"
        )

    if record.rotated_at is not None:
        await _report_reuse(db, record.user_id, record.client_id, record.family_id, record.token_id)
        return RefreshValidation(
            is_valid=False,
            error="Refresh token has already been used",
            security_event=SECURITY_EVENT_REFRESH_REUSE,
            family_id=record.family_id,
        )

    if record.is_revoked:
        return RefreshValidation(is_valid=False, error="Refresh token has been revoked")

    if record.expires_at <= utcnow():
        record.is_revoked = True
        record.revoked_at = utcnow()
        record.revocation_reason = REVOKE_EXPIRED
        await db.commit()
        return RefreshValidation(is_valid=False, error="Refresh token has expired")

    return RefreshValidation(is_valid=True, refresh_token=record)


async def rotate_refresh_token(
    db: AsyncSession,
    old: RefreshToken,
    context: Optional[TokenContext] = None,
) -> tuple[str, RefreshToken]:
    """
    Mark old as rotated and issue its successor in the same family, in one
    transaction. The conditional update guarantees a single winner when the
    same token is presented concurrently; the loser is treated as reuse.
    """
    now = utcnow()
    identity = (old.user_id, old.client_id, old.family_id, old.token_id)
    result = await db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.token_id == old.token_id,
            RefreshToken.rotated_at.is_(None),
            RefreshToken.is_revoked.is_(False),
        )
        .values(rotated_at=now, last_used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await _report_reuse(db, *identity)
        raise RefreshTokenReuse(identity[2])
    plain, record = await generate_refresh_token(
        db, old.user_id, old.client_id, old.scope, context=context, previous=old
    )
    await db.commit()
    return plain, record


async def revoke_refresh_token(
    db: AsyncSession, token: str, reason: str, client_id: Optional[str] = None
) -> bool:
    """
    Revoke the family of a presented refresh token. Returns False when the
    token is unknown or belongs to another client.
    """
    record = await load_refresh_token(db, token)
    if not record or (client_id and record.client_id != client_id):
        return False
    await revoke_family(db, record.family_id, reason)
    await db.commit()
    logger.info(f"Revoked refresh token family {record.family_id} ({reason})")
    return True


async def revoke_user_client_tokens(
    db: AsyncSession, user_id: str, client_id: str, reason: str
) -> int:
    result = await db.execute(
        update(RefreshToken)
        .where(
            RefreshToken.user_id == user_id,
            RefreshToken.client_id == client_id,
            RefreshToken.is_revoked.is_(False),
        )
        .values(is_revoked=True, revoked_at=utcnow(), revocation_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def revoke_client_tokens(db: AsyncSession, client_id: str, reason: str) -> int:
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.client_id == client_id, RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=utcnow(), revocation_reason=reason)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def build_token_response(
    db: AsyncSession,
    user: User,
    client_id: str,
    scope: str,
    nonce: Optional[str] = None,
    context: Optional[TokenContext] = None,
) -> dict:
    """
    Token response for a redeemed authorization code: access token always,
    ID token with openid, refresh token with offline_access.
    """
    scopes = split_scope(scope)
    access_token, expires_in = generate_access_token(user, client_id, scope)
    response = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
        "scope": scope,
    }
    if SCOPE_OPENID in scopes:
        response["id_token"] = generate_id_token(
            user, client_id, scope, nonce=nonce, access_token=access_token
        )
    if SCOPE_OFFLINE_ACCESS in scopes:
        plain, _ = await generate_refresh_token(db, user.user_id, client_id, scope, context=context)
        await db.commit()
        response["refresh_token"] = plain
    return response


async def build_refresh_token_response(
    db: AsyncSession,
    old: RefreshToken,
    user: User,
    scope: Optional[str] = None,
    context: Optional[TokenContext] = None,
) -> dict:
    """
    Rotate old and issue fresh tokens. scope may narrow the access token; the
    rotated refresh token keeps the original grant.
    """
    access_scope = scope or old.scope
    plain, _ = await rotate_refresh_token(db, old, context=context)
    access_token, expires_in = generate_access_token(user, old.client_id, access_scope)
    response = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
        "scope": access_scope,
        "refresh_token": plain,
    }
    if SCOPE_OPENID in old.scopes:
        response["id_token"] = generate_id_token(
            user, old.client_id, access_scope, access_token=access_token
        )
    return response

"""
Unit tests for access/ID token issuance and refresh token rotation.
"""

import base64
import hashlib
from datetime import timedelta

import jwt
import pytest
from sqlalchemy import select

from idp.config import settings
from idp.constants import (
    REVOKE_EXPIRED,
    REVOKE_TOKEN_REUSE,
    REVOKE_USER_LOGOUT,
    SECURITY_EVENT_REFRESH_REUSE,
)
from idp.database import utcnow
from idp.keys import get_signing_keys
from idp.token.schemas import RefreshToken
from idp.token.service import (
    InsufficientScope,
    RefreshTokenReuse,
    TokenContext,
    build_refresh_token_response,
    build_token_response,
    compute_at_hash,
    generate_access_token,
    generate_id_token,
    generate_refresh_token,
    revoke_refresh_token,
    rotate_refresh_token,
    validate_refresh_token,
    verify_access_token,
)
from idp.user.schemas import User


async def _family(db, family_id):
    return (
        (
            await db.execute(
                select(RefreshToken)
                .where(RefreshToken.family_id == family_id)
                .order_by(RefreshToken.rotation_count)
                .execution_options(populate_existing=True)
            )
        )
        .scalars()
        .all()
    )


async def _issue(db, user, client_id="cid_test", scope="openid offline_access"):
    plain, record = await generate_refresh_token(
        db, user.user_id, client_id, scope, context=TokenContext(ip_address="10.0.0.1")
    )
    await db.commit()
    return plain, record


@pytest.fixture
def person():
    return User(
        user_id="user-1",
        email="alice@example.com",
        name="Alice Martin",
        username="alice",
        avatar="https://cdn.example.com/alice.png",
        email_verified=True,
        account_status="active",
        updated_at=utcnow(),
    )


class TestAccessToken:
    def test_claims(self, person):
        token, expires_in = generate_access_token(person, "cid_test", "openid profile")
        assert expires_in == settings.access_token_lifetime
        claims = verify_access_token(token)
        assert claims["iss"] == settings.issuer
        assert claims["sub"] == person.user_id
        assert claims["aud"] == "cid_test"
        assert claims["client_id"] == "cid_test"
        assert claims["scope"] == "openid profile"
        assert claims["token_type"] == "access_token"
        assert claims["exp"] - claims["iat"] == settings.access_token_lifetime
        assert claims["jti"]

    def test_jti_is_unique(self, person):
        first, _ = generate_access_token(person, "cid_test", "openid")
        second, _ = generate_access_token(person, "cid_test", "openid")
        assert verify_access_token(first)["jti"] != verify_access_token(second)["jti"]

    def test_required_scope(self, person):
        token, _ = generate_access_token(person, "cid_test", "openid email")
        assert verify_access_token(token, required_scope="email")
        with pytest.raises(InsufficientScope):
            verify_access_token(token, required_scope="profile")

    def test_id_token_is_not_an_access_token(self, person):
        id_token = generate_id_token(person, "cid_test", "openid")
        with pytest.raises(jwt.InvalidTokenError):
            verify_access_token(id_token)

    def test_tampered_token(self, person):
        token, _ = generate_access_token(person, "cid_test", "openid")
        header, payload, signature = token.split(".")
        with pytest.raises(jwt.InvalidTokenError):
            verify_access_token(f"{header}.{payload}.{signature[::-1]}")


class TestIdToken:
    def _decode(self, token, audience="cid_test"):
        return get_signing_keys().verify(token, issuer=settings.issuer, audience=audience)

    def test_minimal_claims(self, person):
        claims = self._decode(generate_id_token(person, "cid_test", "openid"))
        assert claims["sub"] == person.user_id
        assert claims["aud"] == "cid_test"
        assert claims["auth_time"] <= claims["iat"]
        for claim in ("nonce", "at_hash", "email", "name", "preferred_username"):
            assert claim not in claims

    def test_nonce_and_at_hash(self, person):
        access_token, _ = generate_access_token(person, "cid_test", "openid")
        claims = self._decode(
            generate_id_token(
                person, "cid_test", "openid", nonce="n-0S6_WzA2Mj", access_token=access_token
            )
        )
        assert claims["nonce"] == "n-0S6_WzA2Mj"
        assert claims["at_hash"] == compute_at_hash(access_token)

    def test_scope_gated_claims(self, person):
        claims = self._decode(generate_id_token(person, "cid_test", "openid profile email"))
        assert claims["name"] == "Alice Martin"
        assert claims["preferred_username"] == "alice"
        assert claims["picture"] == "https://cdn.example.com/alice.png"
        assert isinstance(claims["updated_at"], int)
        assert claims["email"] == "alice@example.com"
        assert claims["email_verified"] is True

        email_only = self._decode(generate_id_token(person, "cid_test", "openid email"))
        assert "email" in email_only
        assert "name" not in email_only

    def test_at_hash_known_value(self):
        assert compute_at_hash("jHkWEdUXMU1BwAsC4vtUsZwnNmZp6M52") == "w82_vFn-GcLWwL0kLxDPYw"

    def test_at_hash_is_left_half_of_sha256(self):
        token = "access-token-value"
        left_half = hashlib.sha256(token.encode()).digest()[:16]
        expected = base64.urlsafe_b64encode(left_half).decode().rstrip("=")
        assert compute_at_hash(token) == expected
        assert len(expected) == 22


class TestRefreshTokens:
    @pytest.mark.asyncio
    async def test_generate_stores_only_a_hash(self, db, user):
        plain, record = await _issue(db, user)
        assert plain.startswith("ort_")
        assert RefreshToken.could_be_valid(plain)
        assert plain not in record.token_hash
        assert record.verify_secret(plain)
        assert record.rotation_count == 0
        assert record.ip_address == "10.0.0.1"

    @pytest.mark.asyncio
    async def test_validate(self, db, user):
        plain, record = await _issue(db, user)
        result = await validate_refresh_token(db, plain, "cid_test")
        assert result.is_valid
        assert result.refresh_token.token_id == record.token_id

    @pytest.mark.asyncio
    async def test_validate_wrong_client_or_secret(self, db, user):
        plain, _ = await _issue(db, user)
        assert not (await validate_refresh_token(db, plain, "cid_other")).is_valid
        assert not (await validate_refresh_token(db, plain[:-4] + "XXXX", "cid_test")).is_valid
        assert not (await validate_refresh_token(db, "not-a-token", "cid_test")).is_valid

    @pytest.mark.asyncio
    async def test_validate_expired(self, db, user):
        plain, record = await _issue(db, user)
        record.expires_at = utcnow() - timedelta(seconds=1)
        await db.commit()
        result = await validate_refresh_token(db, plain, "cid_test")
        assert not result.is_valid
        assert "expired" in result.error
        await db.refresh(record)
        assert record.is_revoked
        assert record.revocation_reason == REVOKE_EXPIRED

    @pytest.mark.asyncio
    async def test_rotation_keeps_family(self, db, user):
        plain, record = await _issue(db, user)
        new_plain, new_record = await rotate_refresh_token(db, record)
        assert new_plain != plain
        assert new_record.family_id == record.family_id
        assert new_record.previous_token_id == record.token_id
        assert new_record.rotation_count == 1
        assert new_record.scope == record.scope

        family = await _family(db, record.family_id)
        assert family[0].rotated_at is not None
        assert family[1].rotated_at is None

    @pytest.mark.asyncio
    async def test_reuse_revokes_family(self, db, user):
        plain, record = await _issue(db, user)
        new_plain, _ = await rotate_refresh_token(db, record)

        result = await validate_refresh_token(db, plain, "cid_test")
        assert not result.is_valid
        assert result.security_event == SECURITY_EVENT_REFRESH_REUSE
        assert result.family_id == record.family_id

        family = await _family(db, record.family_id)
        assert all(token.is_revoked for token in family)
        assert {token.revocation_reason for token in family} == {REVOKE_TOKEN_REUSE}
        assert not (await validate_refresh_token(db, new_plain, "cid_test")).is_valid

    @pytest.mark.asyncio
    async def test_concurrent_rotation_has_one_winner(self, db, user):
        plain, record = await _issue(db, user)
        await rotate_refresh_token(db, record)
        with pytest.raises(RefreshTokenReuse):
            await rotate_refresh_token(db, record)
        family = await _family(db, record.family_id)
        assert len(family) == 2
        assert all(token.is_revoked for token in family)

    @pytest.mark.asyncio
    async def test_revoke_refresh_token(self, db, user):
        plain, record = await _issue(db, user)
        assert not await revoke_refresh_token(db, plain, REVOKE_USER_LOGOUT, client_id="cid_other")
        assert await revoke_refresh_token(db, plain, REVOKE_USER_LOGOUT, client_id="cid_test")
        assert not await revoke_refresh_token(db, "ort_unknown.secret", REVOKE_USER_LOGOUT)
        family = await _family(db, record.family_id)
        assert family[0].is_revoked
        assert family[0].revocation_reason == REVOKE_USER_LOGOUT


class TestTokenResponses:
    @pytest.mark.asyncio
    async def test_offline_access_adds_refresh_token(self, db, user):
        body = await build_token_response(
            db, user, "cid_test", "openid offline_access", nonce="abc"
        )
        assert body["token_type"] == "Bearer"
        assert body["refresh_token"].startswith("ort_")
        assert body["id_token"]
        assert body["scope"] == "openid offline_access"

    @pytest.mark.asyncio
    async def test_without_offline_access(self, db, user):
        body = await build_token_response(db, user, "cid_test", "openid profile")
        assert "refresh_token" not in body
        assert "id_token" in body

    @pytest.mark.asyncio
    async def test_refresh_response_narrows_access_scope_only(self, db, user):
        plain, record = await _issue(db, user, scope="openid email offline_access")
        body = await build_refresh_token_response(db, record, user, scope="openid")
        assert verify_access_token(body["access_token"])["scope"] == "openid"
        assert body["id_token"]
        rotated = await validate_refresh_token(db, body["refresh_token"], "cid_test")
        assert rotated.is_valid
        assert rotated.refresh_token.scope == "openid email offline_access"

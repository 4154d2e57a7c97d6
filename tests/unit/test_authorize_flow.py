"""
Authorization endpoint tests over HTTP: parameter validation, consent
pending state and the approve/deny callbacks.
"""

from urllib.parse import parse_qs, urlparse

import pytest
from sqlalchemy import select

from conftest import REDIRECT_URI, auth_headers, client_request, make_pkce_pair
from idp.authorize.schemas import AuthorizationCode
from idp.client.schemas import OAuthClientUpdateRequest
from idp.client.service import register_client, update_client
from idp.consent.service import get_consent, grant_consent
from idp.constants import PENDING_AUTH_KEY

AUTHORIZE = "/api/oauth/authorize"


def authorize_params(client_id, challenge, **overrides):
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": REDIRECT_URI,
        "scope": "openid email",
        "state": "af0ifjsldkj",
        "code_challenge": challenge,
        "code_challenge_method": "S256",
        "nonce": "n-0S6_WzA2Mj",
    }
    params.update(overrides)
    return {k: v for k, v in params.items() if v is not None}


def redirect_query(response) -> dict:
    assert response.status_code == 302
    location = response.headers["location"]
    assert location.startswith(REDIRECT_URI)
    return {k: v[0] for k, v in parse_qs(urlparse(location).query).items()}


async def start_consent(http, user, client_id, challenge, **overrides):
    response = await http.get(
        AUTHORIZE,
        params=authorize_params(client_id, challenge, **overrides),
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["requires_consent"] is True
    return body


class TestAuthorizeValidation:
    @pytest.mark.asyncio
    async def test_unknown_client_gets_direct_error(self, http, user):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE, params=authorize_params("cid_missing", challenge), headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "unauthorized_client"
        assert "location" not in response.headers

    @pytest.mark.asyncio
    async def test_unregistered_redirect_uri_never_redirects(self, http, user, oauth_client):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(
                oauth_client[0], challenge, redirect_uri="https://evil.example.com/cb"
            ),
            headers=auth_headers(user),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "location" not in response.headers

    @pytest.mark.asyncio
    async def test_missing_client_id(self, http, user):
        response = await http.get(
            AUTHORIZE, params={"response_type": "code"}, headers=auth_headers(user)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_missing_code_challenge_redirects(self, http, user, oauth_client):
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(oauth_client[0], None, state="xyz"),
            headers=auth_headers(user),
        )
        query = redirect_query(response)
        assert query["error"] == "invalid_request"
        assert query["state"] == "xyz"
        assert "code" not in query

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides,error",
        [
            ({"code_challenge_method": "plain"}, "invalid_request"),
            ({"code_challenge": "too-short"}, "invalid_request"),
            ({"response_type": "token"}, "unsupported_response_type"),
            ({"response_type": None}, "invalid_request"),
            ({"scope": "email"}, "invalid_scope"),
            ({"scope": "openid admin"}, "invalid_scope"),
            ({"prompt": "select_account"}, "invalid_request"),
            ({"nonce": "n" * 201}, "invalid_request"),
        ],
    )
    async def test_parameter_errors_redirect(self, http, user, oauth_client, overrides, error):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(oauth_client[0], challenge, **overrides),
            headers=auth_headers(user),
        )
        query = redirect_query(response)
        assert query["error"] == error
        assert query["state"] == "af0ifjsldkj"

    @pytest.mark.asyncio
    async def test_oversized_state_is_not_echoed(self, http, user, oauth_client):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(oauth_client[0], challenge, state="s" * 501),
            headers=auth_headers(user),
        )
        query = redirect_query(response)
        assert query["error"] == "invalid_request"
        assert "state" not in query

    @pytest.mark.asyncio
    async def test_requires_signed_in_user(self, http, oauth_client):
        _, challenge = make_pkce_pair()
        response = await http.get(AUTHORIZE, params=authorize_params(oauth_client[0], challenge))
        assert response.status_code == 401
        assert response.json()["error"] == "access_denied"

    @pytest.mark.asyncio
    async def test_validate_endpoint(self, http, oauth_client):
        _, challenge = make_pkce_pair()
        response = await http.get(
            f"{AUTHORIZE}/validate", params=authorize_params(oauth_client[0], challenge)
        )
        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["client"]["client_name"] == "Study Planner"
        assert [s["scope"] for s in body["scopes"]] == ["openid", "email"]
        assert body["state"] == "af0ifjsldkj"

        response = await http.get(
            f"{AUTHORIZE}/validate", params=authorize_params(oauth_client[0], None)
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestPendingClientApproval:
    @pytest.mark.asyncio
    async def test_pending_client_then_admin_approval(self, http, db, user, developer, admin):
        client, _ = await register_client(db, client_request(), developer)
        _, challenge = make_pkce_pair()
        params = authorize_params(client.client_id, challenge)

        response = await http.get(AUTHORIZE, params=params, headers=auth_headers(user))
        assert response.status_code == 400
        assert response.json()["error"] == "unauthorized_client"

        response = await http.post(
            f"/api/oauth/admin/clients/{client.client_id}/approve", headers=auth_headers(admin)
        )
        assert response.status_code == 200
        assert response.json()["status"] == "approved"

        body = await start_consent(http, user, client.client_id, challenge)
        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(user),
        )
        assert redirect_query(response)["code"]


class TestConsentFlow:
    @pytest.mark.asyncio
    async def test_consent_descriptor_and_pending_state(self, http, user, oauth_client, fake_redis):
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, oauth_client[0], challenge)
        assert body["expires_in"] == 600
        assert body["consent_data"]["client"]["client_id"] == oauth_client[0]
        assert [s["scope"] for s in body["consent_data"]["new_scopes"]] == ["openid", "email"]
        ttl = await fake_redis.ttl(PENDING_AUTH_KEY.format(pending_id=body["pending_id"]))
        assert 0 < ttl <= 600

    @pytest.mark.asyncio
    async def test_approve_issues_code_and_records_consent(self, http, db, user, oauth_client):
        client_id, _ = oauth_client
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, client_id, challenge)
        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(user),
        )
        query = redirect_query(response)
        assert query["state"] == "af0ifjsldkj"

        code = (
            await db.execute(
                select(AuthorizationCode).where(
                    AuthorizationCode.code_hash == AuthorizationCode.hash_code(query["code"])
                )
            )
        ).scalar_one()
        assert code.user_id == user.user_id
        assert code.scope == "openid email"
        assert code.code_challenge == challenge
        assert code.nonce == "n-0S6_WzA2Mj"
        assert code.used_at is None

        consent = await get_consent(db, user.user_id, client_id)
        assert consent.granted_scopes == ["openid", "email"]

        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(user),
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_approve_subset(self, http, db, user, oauth_client):
        client_id, _ = oauth_client
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, client_id, challenge, scope="openid profile email")
        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"], "scopes": ["openid", "email"]},
            headers=auth_headers(user),
        )
        redirect_query(response)
        consent = await get_consent(db, user.user_id, client_id)
        assert consent.granted_scopes == ["openid", "email"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("scopes", [["email"], ["openid", "offline_access"]])
    async def test_approve_rejects_scopes_outside_request(self, http, user, oauth_client, scopes):
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, oauth_client[0], challenge)
        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"], "scopes": scopes},
            headers=auth_headers(user),
        )
        assert redirect_query(response)["error"] == "invalid_scope"

    @pytest.mark.asyncio
    async def test_pending_state_belongs_to_its_user(self, http, user, developer, oauth_client):
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, oauth_client[0], challenge)
        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(developer),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(user),
        )
        assert redirect_query(response)["code"]

    @pytest.mark.asyncio
    async def test_approve_rejects_redirect_uri_removed_meanwhile(
        self, http, db, user, developer, oauth_client
    ):
        client_id, _ = oauth_client
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, client_id, challenge)
        await update_client(
            db,
            client_id,
            developer.user_id,
            OAuthClientUpdateRequest(redirect_uris=["https://planner.example.com/v2/callback"]),
        )

        response = await http.post(
            f"{AUTHORIZE}/consent",
            json={"pending_id": body["pending_id"]},
            headers=auth_headers(user),
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        assert "location" not in response.headers
        codes = (await db.execute(select(AuthorizationCode))).scalars().all()
        assert codes == []

    @pytest.mark.asyncio
    async def test_deny(self, http, db, user, oauth_client):
        _, challenge = make_pkce_pair()
        body = await start_consent(http, user, oauth_client[0], challenge)
        response = await http.post(
            f"{AUTHORIZE}/deny", json={"pending_id": body["pending_id"]}, headers=auth_headers(user)
        )
        query = redirect_query(response)
        assert query["error"] == "access_denied"
        assert query["state"] == "af0ifjsldkj"
        assert await get_consent(db, user.user_id, oauth_client[0]) is None

    @pytest.mark.asyncio
    async def test_existing_consent_skips_screen(self, http, db, user, oauth_client):
        client_id, _ = oauth_client
        await grant_consent(db, user.user_id, client_id, ["openid", "email"])
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(client_id, challenge, scope="openid"),
            headers=auth_headers(user),
        )
        assert redirect_query(response)["code"]

        response = await http.get(
            AUTHORIZE,
            params=authorize_params(client_id, challenge, prompt="consent"),
            headers=auth_headers(user),
        )
        assert response.status_code == 200
        assert response.json()["requires_consent"] is True

    @pytest.mark.asyncio
    async def test_prompt_none_without_consent(self, http, user, oauth_client):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(oauth_client[0], challenge, prompt="none"),
            headers=auth_headers(user),
        )
        query = redirect_query(response)
        assert query["error"] == "consent_required"
        assert query["state"] == "af0ifjsldkj"

    @pytest.mark.asyncio
    async def test_first_party_skips_consent(self, http, user, first_party_client):
        _, challenge = make_pkce_pair()
        response = await http.get(
            AUTHORIZE,
            params=authorize_params(first_party_client[0], challenge, prompt="consent"),
            headers=auth_headers(user),
        )
        assert redirect_query(response)["code"]

"""
Unit test conftest - file-backed SQLite stores, fakeredis pending state, and
an ASGI client wired to the same database.
"""

import os

os.environ.setdefault("IDP_SQLALCHEMY", "sqlite+aiosqlite://")
os.environ.setdefault("IDP_ISSUER", "https://idp.test")
os.environ.setdefault("IDP_SESSION_SECRET", "unit-test-session-secret-with-enough-length-for-hs256")

import base64
import hashlib
import secrets

import fakeredis.aioredis
import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from idp.client.schemas import OAuthClientCreateRequest
from idp.client.service import approve_client, register_client
from idp.config import settings
from idp.database import Base, get_db_session
from idp.main import create_app
from idp.permissions import Permissioning
from idp.user.schemas import User
from idp.user.tokens import create_token

# Import for table registration.
import idp.authorize.schemas  # noqa: F401
import idp.consent.schemas  # noqa: F401
import idp.token.schemas  # noqa: F401

REDIRECT_URI = "https://planner.example.com/callback"
ALL_SCOPES = ["openid", "profile", "email", "offline_access"]


def make_pkce_pair():
    """Generate a PKCE code_verifier and S256 code_challenge pair."""
    verifier = secrets.token_urlsafe(48)
    challenge = (
        base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).rstrip(b"=").decode()
    )
    return verifier, challenge


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_token(user)}"}


def basic_auth(client_id: str, client_secret: str) -> dict:
    encoded = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    return {"Authorization": f"Basic {encoded}"}


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'idp.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def fake_redis():
    client = fakeredis.aioredis.FakeRedis()
    settings._redis_client = client
    yield client
    settings._redis_client = None


async def _create_user(db, email, name, username, bitmask=0, status="active"):
    user = User(
        email=email,
        name=name,
        username=username,
        avatar=f"https://cdn.example.com/{username}.png",
        email_verified=True,
        account_status=status,
        permissions_bitmask=bitmask,
    )
    db.add(user)
    await db.commit()
    return user


@pytest_asyncio.fixture
async def user(db):
    return await _create_user(db, "alice@example.com", "Alice Martin", "alice")


@pytest_asyncio.fixture
async def developer(db):
    return await _create_user(
        db, "dev@example.com", "Dana Dev", "dana", bitmask=Permissioning.client_developer.bitmask
    )


@pytest_asyncio.fixture
async def admin(db):
    return await _create_user(
        db, "admin@example.com", "Ada Admin", "ada", bitmask=Permissioning.oauth_admin.bitmask
    )


def client_request(**overrides) -> OAuthClientCreateRequest:
    args = {
        "name": "Study Planner",
        "description": "Plans study sessions",
        "redirect_uris": [REDIRECT_URI],
        "scopes": list(ALL_SCOPES),
    }
    args.update(overrides)
    return OAuthClientCreateRequest(**args)


@pytest_asyncio.fixture
async def oauth_client(db, developer, admin):
    """Approved third-party client, returns (client_id, client_secret)."""
    client, secret = await register_client(db, client_request(), developer)
    await approve_client(db, client.client_id, admin.user_id)
    return client.client_id, secret


@pytest_asyncio.fixture
async def first_party_client(db, admin):
    client, secret = await register_client(
        db, client_request(name="Campus Portal", is_first_party=True), admin
    )
    return client.client_id, secret


@pytest.fixture
def app(session_maker):
    application = create_app()

    async def _db_session():
        async with session_maker() as session:
            yield session

    application.dependency_overrides[get_db_session] = _db_session
    return application


@pytest_asyncio.fixture
async def http(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="https://idp.test") as client:
        yield client

"""
Application factory: routers, protocol error rendering and startup checks.
"""

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger

from idp.authorize.router import router as authorize_router
from idp.client.router import admin_router as client_admin_router
from idp.client.router import router as client_router
from idp.config import settings, validate_oauth_config
from idp.consent.router import router as consent_router
from idp.constants import NO_STORE_HEADERS
from idp.discovery.router import router as userinfo_router
from idp.discovery.router import well_known_router
from idp.exceptions import SERVER_ERROR, OAuthError, RedirectableOAuthError
from idp.keys import get_signing_keys
from idp.token.router import router as token_router


@asynccontextmanager
async def lifespan(_: FastAPI):
    validate_oauth_config(settings)
    keys = get_signing_keys()
    logger.info(f"Identity provider ready: issuer={settings.issuer} kid={keys.kid}")
    yield


async def oauth_error_handler(request: Request, exc: OAuthError):
    if isinstance(exc, RedirectableOAuthError):
        return RedirectResponse(url=exc.location, status_code=302)
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers={**NO_STORE_HEADERS, **exc.headers},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": SERVER_ERROR, "error_description": "An unexpected error occurred"},
        headers=NO_STORE_HEADERS,
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Identity Provider",
        description="OAuth 2.1 / OpenID Connect identity provider",
        lifespan=lifespan,
    )
    base = settings.api_base_path.rstrip("/")
    app.include_router(well_known_router, prefix="/.well-known", tags=["Discovery"])
    app.include_router(authorize_router, prefix=f"{base}/oauth", tags=["OAuth"])
    app.include_router(token_router, prefix=f"{base}/oauth", tags=["OAuth"])
    app.include_router(userinfo_router, prefix=f"{base}/oauth", tags=["OAuth"])
    app.include_router(consent_router, prefix=f"{base}/oauth/user/authorizations", tags=["Consent"])
    app.include_router(client_router, prefix=f"{base}/oauth/clients", tags=["Clients"])
    app.include_router(client_admin_router, prefix=f"{base}/oauth/admin/clients", tags=["Admin"])
    app.add_exception_handler(OAuthError, oauth_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()


def run():
    uvicorn.run(app, host=settings.host, port=settings.port, workers=1)

"""
Account-settings view of the applications a user has authorized.
"""

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from idp.consent.schemas import RevokeScopesRequest
from idp.consent.service import (
    get_consent_details,
    list_user_consents,
    revoke_consent,
    revoke_scopes,
)
from idp.database import get_db_session
from idp.user.schemas import User
from idp.user.service import get_current_user
from idp.util import get_client_ip, get_user_agent

router = APIRouter()


@router.get("")
async def list_authorizations(
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    """List the applications the current user has granted access to."""
    return {"authorizations": await list_user_consents(db, current_user.user_id)}


@router.get("/{client_id}")
async def get_authorization(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    details = await get_consent_details(db, current_user.user_id, client_id)
    if not details:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Authorization not found",
        )
    return details


@router.delete("/{client_id}")
async def revoke_authorization(
    client_id: str,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    """Revoke an application's access, including its refresh tokens."""
    revoked = await revoke_consent(
        db,
        current_user.user_id,
        client_id,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    if not revoked:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Authorization not found",
        )
    return {"client_id": client_id, "revoked": True}


@router.post("/{client_id}/revoke-scopes")
async def revoke_authorization_scopes(
    client_id: str,
    args: RevokeScopesRequest,
    request: Request,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    consent = await revoke_scopes(
        db,
        current_user.user_id,
        client_id,
        args.scopes,
        ip_address=get_client_ip(request),
        user_agent=get_user_agent(request),
    )
    if not consent:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Authorization not found",
        )
    return {
        "client_id": client_id,
        "is_active": consent.is_active,
        "granted_scopes": consent.granted_scopes if consent.is_active else [],
    }

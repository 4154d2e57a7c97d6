"""
OAuth client registration (developers) and approval workflow (admins).
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from idp.client.response import (
    OAuthClientCreationResponse,
    OAuthClientPublicResponse,
    OAuthClientResponse,
    OAuthClientSecretResponse,
    OAuthClientStatsResponse,
)
from idp.client.schemas import (
    ClientReviewRequest,
    ClientStatus,
    OAuthClientCreateRequest,
    OAuthClientUpdateRequest,
)
from idp.client.service import (
    ClientNotFound,
    NotClientOwner,
    approve_client,
    delete_client,
    get_client,
    get_client_stats,
    list_clients,
    list_owner_clients,
    list_pending_clients,
    reactivate_client,
    register_client,
    reject_client,
    rotate_client_secret,
    suspend_client,
    update_client,
)
from idp.consent.service import get_client_consent_stats
from idp.database import get_db_session
from idp.exceptions import InvalidTransition
from idp.permissions import policy
from idp.user.schemas import User
from idp.user.service import get_current_user

router = APIRouter()
admin_router = APIRouter()


def _not_found():
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail="Client not found",
    )


@router.post("", response_model=OAuthClientCreationResponse, status_code=status.HTTP_201_CREATED)
async def create_client(
    args: OAuthClientCreateRequest,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    """Register a new OAuth client; the secret is only ever shown here."""
    if args.is_first_party and not policy.is_admin(current_user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only OAuth admins can register first-party clients.",
        )
    client, client_secret = await register_client(db, args, current_user)
    response = OAuthClientCreationResponse.model_validate(client)
    response.client_secret = client_secret
    return response


@router.get("", response_model=list[OAuthClientResponse])
async def list_my_clients(
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    clients = await list_owner_clients(db, current_user.user_id)
    return [OAuthClientResponse.model_validate(client) for client in clients]


@router.get("/{client_id}/info", response_model=OAuthClientPublicResponse)
async def get_client_info(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
):
    """Public client information, no authentication required."""
    client = await get_client(db, client_id)
    if not client or client.status != ClientStatus.APPROVED.value:
        raise _not_found()
    return OAuthClientPublicResponse.model_validate(client)


@router.get("/{client_id}", response_model=OAuthClientResponse)
async def get_my_client(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    client = await get_client(db, client_id)
    if not client or not policy.can_manage_client(current_user, client):
        raise _not_found()
    return OAuthClientResponse.model_validate(client)


@router.patch("/{client_id}", response_model=OAuthClientResponse)
async def update_my_client(
    client_id: str,
    args: OAuthClientUpdateRequest,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    try:
        client = await update_client(db, client_id, current_user.user_id, args)
    except (ClientNotFound, NotClientOwner):
        raise _not_found()
    return OAuthClientResponse.model_validate(client)


@router.delete("/{client_id}")
async def delete_my_client(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    """Delete a client (owner or admin), revoking everything issued to it."""
    client = await get_client(db, client_id)
    if not client or not policy.can_manage_client(current_user, client):
        raise _not_found()
    return await delete_client(db, client_id)


@router.post("/{client_id}/rotate-secret", response_model=OAuthClientSecretResponse)
async def rotate_my_client_secret(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    try:
        new_secret = await rotate_client_secret(db, client_id, current_user.user_id)
    except (ClientNotFound, NotClientOwner):
        raise _not_found()
    return OAuthClientSecretResponse(client_id=client_id, client_secret=new_secret)


@admin_router.get("", response_model=list[OAuthClientResponse])
async def admin_list_clients(
    client_status: Optional[ClientStatus] = Query(None, alias="status"),
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    policy.require_admin(current_user)
    clients = await list_clients(db, client_status.value if client_status else None)
    return [OAuthClientResponse.model_validate(client) for client in clients]


@admin_router.get("/stats", response_model=OAuthClientStatsResponse)
async def admin_client_stats(
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    policy.require_admin(current_user)
    return await get_client_stats(db)


@admin_router.get("/pending", response_model=list[OAuthClientResponse])
async def admin_pending_clients(
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    policy.require_admin(current_user)
    return [OAuthClientResponse.model_validate(client) for client in await list_pending_clients(db)]


@admin_router.get("/{client_id}/consents")
async def admin_client_consents(
    client_id: str,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    policy.require_admin(current_user)
    if not await get_client(db, client_id):
        raise _not_found()
    return await get_client_consent_stats(db, client_id)


_TRANSITION_HANDLERS = {
    "approve": approve_client,
    "reject": reject_client,
    "suspend": suspend_client,
    "reactivate": reactivate_client,
}


async def _admin_transition(action, client_id, args, db, current_user):
    policy.require_admin(current_user)
    try:
        client = await _TRANSITION_HANDLERS[action](
            db, client_id, current_user.user_id, args.notes if args else None
        )
    except ClientNotFound:
        raise _not_found()
    except InvalidTransition as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        )
    return OAuthClientResponse.model_validate(client)


@admin_router.post("/{client_id}/approve", response_model=OAuthClientResponse)
async def admin_approve_client(
    client_id: str,
    args: Optional[ClientReviewRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    return await _admin_transition("approve", client_id, args, db, current_user)


@admin_router.post("/{client_id}/reject", response_model=OAuthClientResponse)
async def admin_reject_client(
    client_id: str,
    args: Optional[ClientReviewRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    return await _admin_transition("reject", client_id, args, db, current_user)


@admin_router.post("/{client_id}/suspend", response_model=OAuthClientResponse)
async def admin_suspend_client(
    client_id: str,
    args: Optional[ClientReviewRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    return await _admin_transition("suspend", client_id, args, db, current_user)


@admin_router.post("/{client_id}/reactivate", response_model=OAuthClientResponse)
async def admin_reactivate_client(
    client_id: str,
    args: Optional[ClientReviewRequest] = None,
    db: AsyncSession = Depends(get_db_session),
    current_user: User = Depends(get_current_user()),
):
    return await _admin_transition("reactivate", client_id, args, db, current_user)

"""
Service layer for OAuth client registration and lifecycle.
"""

from dataclasses import dataclass, field
from typing import List, Optional

from loguru import logger
from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from idp.authorize.schemas import AuthorizationCode
from idp.client.schemas import (
    ClientStatus,
    OAuthClient,
    OAuthClientCreateRequest,
    OAuthClientUpdateRequest,
)
from idp.constants import REVOKE_CLIENT_DELETED
from idp.consent.service import revoke_all_client_consents
from idp.database import utcnow
from idp.exceptions import InvalidTransition
from idp.token.service import revoke_client_tokens

FAILED_AUTH_WARNING_THRESHOLD = 5

# action -> (required current status, resulting status)
TRANSITIONS = {
    "approve": (ClientStatus.PENDING, ClientStatus.APPROVED),
    "reject": (ClientStatus.PENDING, ClientStatus.REJECTED),
    "suspend": (ClientStatus.APPROVED, ClientStatus.SUSPENDED),
    "reactivate": (ClientStatus.SUSPENDED, ClientStatus.APPROVED),
}


class ClientNotFound(Exception): ...


class NotClientOwner(Exception): ...


@dataclass
class ClientValidation:
    is_valid: bool
    client: Optional[OAuthClient] = None
    error: Optional[str] = None


@dataclass
class ScopeValidation:
    granted: List[str] = field(default_factory=list)
    denied: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.denied


async def get_client(db: AsyncSession, client_id: str) -> Optional[OAuthClient]:
    if not client_id:
        return None
    return (
        await db.execute(
            select(OAuthClient)
            .where(OAuthClient.client_id == client_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _require_client(db: AsyncSession, client_id: str) -> OAuthClient:
    client = await get_client(db, client_id)
    if not client:
        raise ClientNotFound(client_id)
    return client


async def register_client(
    db: AsyncSession, args: OAuthClientCreateRequest, owner
) -> tuple[OAuthClient, str]:
    """
    Create a client with generated credentials. Third-party clients start
    pending admin review, first-party clients are approved immediately.
    Returns (client, plain_secret); the secret is never retrievable again.
    """
    client_secret = OAuthClient.generate_client_secret()
    now = utcnow()
    client = OAuthClient(
        client_id=OAuthClient.generate_client_id(),
        client_name=args.name,
        description=args.description,
        redirect_uris=list(args.redirect_uris),
        scopes=list(args.scopes),
        application_type=args.application_type,
        client_type="confidential",
        is_first_party=args.is_first_party,
        status=ClientStatus.APPROVED.value if args.is_first_party else ClientStatus.PENDING.value,
        approved_at=now if args.is_first_party else None,
        owner_user_id=owner.user_id,
        owner_email=owner.email,
        homepage_url=args.homepage_url,
        logo_uri=args.logo_uri,
        client_metadata=dict(args.metadata or {}),
        failed_auth_attempts=0,
        token_count=0,
    )
    client.set_secret(client_secret)
    db.add(client)
    await db.commit()
    logger.info(
        f"OAuth client registered: {client.client_id} ({client.client_name}) "
        f"owner={owner.user_id} status={client.status}"
    )
    return client, client_secret


async def validate_client(
    db: AsyncSession, client_id: str, client_secret: Optional[str] = None
) -> ClientValidation:
    """
    Load an approved client and, when a secret is supplied, verify it.
    Failed secret checks are counted on the client record.
    """
    client = await get_client(db, client_id)
    if not client:
        return ClientValidation(is_valid=False, error="Client not found")
    if not client.is_approved:
        return ClientValidation(is_valid=False, client=client, error=f"Client is {client.status}")
    if client_secret is not None:
        if not client.verify_secret(client_secret):
            await db.execute(
                update(OAuthClient)
                .where(OAuthClient.client_id == client_id)
                .values(failed_auth_attempts=OAuthClient.failed_auth_attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            attempts = (client.failed_auth_attempts or 0) + 1
            if attempts >= FAILED_AUTH_WARNING_THRESHOLD:
                logger.warning(f"SECURITY: {attempts} failed secret checks for client {client_id}")
            return ClientValidation(is_valid=False, client=client, error="Invalid client secret")
        if client.failed_auth_attempts:
            client.failed_auth_attempts = 0
            await db.commit()
    return ClientValidation(is_valid=True, client=client)


async def validate_redirect_uri(
    db: AsyncSession, client_id: str, redirect_uri: str
) -> ClientValidation:
    """
    Approved client whose registered redirect URIs contain redirect_uri exactly.
    """
    result = await validate_client(db, client_id)
    if not result.is_valid:
        return result
    if not redirect_uri or not result.client.is_valid_redirect_uri(redirect_uri):
        return ClientValidation(is_valid=False, client=result.client, error="Invalid redirect_uri")
    return result


def validate_scopes(client: OAuthClient, requested: List[str]) -> ScopeValidation:
    """Partition requested scopes against the client's allow-list."""
    result = ScopeValidation()
    for scope in requested:
        if client.has_scope(scope):
            result.granted.append(scope)
        else:
            result.denied.append(scope)
    return result


async def _transition(
    db: AsyncSession, client_id: str, action: str, admin_id: str, notes: Optional[str] = None
) -> OAuthClient:
    client = await _require_client(db, client_id)
    required, target = TRANSITIONS[action]
    if client.status != required.value:
        raise InvalidTransition(client_id, client.status, action)
    now = utcnow()
    client.status = target.value
    client.reviewed_by = admin_id
    client.reviewed_at = now
    if notes is not None:
        client.review_notes = notes
    if target == ClientStatus.APPROVED and not client.approved_at:
        client.approved_at = now
    await db.commit()
    logger.info(
        f"OAuth client {client_id} {action}: {required.value} -> {target.value} by {admin_id}"
    )
    return client


async def approve_client(
    db: AsyncSession, client_id: str, admin_id: str, notes: Optional[str] = None
):
    return await _transition(db, client_id, "approve", admin_id, notes)


async def reject_client(
    db: AsyncSession, client_id: str, admin_id: str, notes: Optional[str] = None
):
    return await _transition(db, client_id, "reject", admin_id, notes)


async def suspend_client(
    db: AsyncSession, client_id: str, admin_id: str, notes: Optional[str] = None
):
    return await _transition(db, client_id, "suspend", admin_id, notes)


async def reactivate_client(
    db: AsyncSession, client_id: str, admin_id: str, notes: Optional[str] = None
):
    return await _transition(db, client_id, "reactivate", admin_id, notes)


async def rotate_client_secret(db: AsyncSession, client_id: str, owner_id: str) -> str:
    """
    Replace the client secret. Owner only; returns the new secret once.
    """
    client = await _require_client(db, client_id)
    if client.owner_user_id != owner_id:
        raise NotClientOwner(client_id)
    new_secret = OAuthClient.generate_client_secret()
    client.set_secret(new_secret)
    client.failed_auth_attempts = 0
    await db.commit()
    logger.info(f"OAuth client secret rotated: {client_id}")
    return new_secret


async def update_client(
    db: AsyncSession, client_id: str, owner_id: str, args: OAuthClientUpdateRequest
) -> OAuthClient:
    client = await _require_client(db, client_id)
    if client.owner_user_id != owner_id:
        raise NotClientOwner(client_id)
    if args.name is not None:
        client.client_name = args.name
    if args.description is not None:
        client.description = args.description
    if args.redirect_uris is not None:
        client.redirect_uris = list(args.redirect_uris)
    if args.homepage_url is not None:
        client.homepage_url = args.homepage_url
    if args.logo_uri is not None:
        client.logo_uri = args.logo_uri
    if args.metadata is not None:
        client.client_metadata = dict(args.metadata)
    await db.commit()
    return client


async def delete_client(db: AsyncSession, client_id: str) -> dict:
    """
    Delete a client, revoking every refresh token family and consent issued
    for it and dropping its outstanding authorization codes.
    """
    client = await _require_client(db, client_id)
    tokens = await revoke_client_tokens(db, client_id, REVOKE_CLIENT_DELETED)
    consents = await revoke_all_client_consents(db, client_id)
    codes = await db.execute(
        delete(AuthorizationCode)
        .where(AuthorizationCode.client_id == client_id)
        .execution_options(synchronize_session=False)
    )
    await db.delete(client)
    await db.commit()
    logger.info(
        f"OAuth client deleted: {client_id} refresh_tokens_revoked={tokens} "
        f"consents_revoked={consents} codes_deleted={codes.rowcount or 0}"
    )
    return {
        "client_id": client_id,
        "deleted": True,
        "refresh_tokens_revoked": tokens,
        "consents_revoked": consents,
    }


async def record_token_issued(db: AsyncSession, client_id: str):
    await db.execute(
        update(OAuthClient)
        .where(OAuthClient.client_id == client_id)
        .values(token_count=OAuthClient.token_count + 1, last_used_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def list_owner_clients(db: AsyncSession, owner_id: str) -> List[OAuthClient]:
    return (
        (
            await db.execute(
                select(OAuthClient)
                .where(OAuthClient.owner_user_id == owner_id)
                .order_by(OAuthClient.created_at.desc())
            )
        )
        .scalars()
        .all()
    )


async def list_clients(db: AsyncSession, status: Optional[str] = None) -> List[OAuthClient]:
    query = select(OAuthClient)
    if status:
        query = query.where(OAuthClient.status == status)
    return (await db.execute(query.order_by(OAuthClient.created_at.desc()))).scalars().all()


async def list_pending_clients(db: AsyncSession) -> List[OAuthClient]:
    return (
        (
            await db.execute(
                select(OAuthClient)
                .where(OAuthClient.status == ClientStatus.PENDING.value)
                .order_by(OAuthClient.created_at.asc())
            )
        )
        .scalars()
        .all()
    )


async def get_client_stats(db: AsyncSession) -> dict:
    rows = (
        await db.execute(select(OAuthClient.status, func.count()).group_by(OAuthClient.status))
    ).all()
    counts = {status: count for status, count in rows}
    stats = {status.value: counts.get(status.value, 0) for status in ClientStatus}
    stats["total"] = sum(counts.values())
    return stats

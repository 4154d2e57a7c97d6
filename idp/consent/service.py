"""
Consent decisions, grants, revocation and account-settings listings.
"""

from collections import Counter
from typing import List, Optional

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from idp.client.schemas import OAuthClient
from idp.constants import REVOKE_CLIENT_DELETED, REVOKE_USER_REVOKED
from idp.consent.schemas import (
    HISTORY_DETAIL_LIMIT,
    HISTORY_GRANTED,
    HISTORY_REVOKED,
    HISTORY_SCOPES_REVOKED,
    ConsentCheck,
    UserConsent,
    describe_scopes,
)
from idp.database import utcnow
from idp.token.service import revoke_user_client_tokens


def _history_entry(
    action: str, scopes: List[str], ip_address=None, user_agent=None, reason=None
) -> dict:
    entry = {
        "action": action,
        "scopes": list(scopes),
        "timestamp": utcnow().isoformat(),
        "ip_address": ip_address,
        "user_agent": user_agent,
    }
    if reason:
        entry["reason"] = reason
    return entry


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


async def get_consent(db: AsyncSession, user_id: str, client_id: str) -> Optional[UserConsent]:
    return (
        await db.execute(
            select(UserConsent)
            .where(UserConsent.user_id == user_id, UserConsent.client_id == client_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def check_consent_needed(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    requested_scopes: List[str],
    is_first_party: bool = False,
) -> ConsentCheck:
    """
    First-party clients never need consent. Otherwise any requested scope not
    in the user's active grant makes consent necessary.
    """
    if is_first_party:
        return ConsentCheck(needs_consent=False, existing_scopes=list(requested_scopes))
    consent = await get_consent(db, user_id, client_id)
    if not consent or not consent.is_active:
        return ConsentCheck(needs_consent=True, missing_scopes=list(requested_scopes))
    granted = consent.granted_scopes or []
    missing = [scope for scope in requested_scopes if scope not in granted]
    return ConsentCheck(
        needs_consent=bool(missing), missing_scopes=missing, existing_scopes=list(granted)
    )


def get_consent_ui_data(
    client: OAuthClient, requested_scopes: List[str], check: ConsentCheck
) -> dict:
    """
    Descriptor rendered by the consent screen.
    """
    return {
        "client": {
            "client_id": client.client_id,
            "client_name": client.client_name,
            "description": client.description,
            "logo_uri": client.logo_uri,
            "homepage_url": client.homepage_url,
            "is_first_party": client.is_first_party,
        },
        "scopes": describe_scopes(requested_scopes),
        "new_scopes": describe_scopes(check.missing_scopes),
        "existing_scopes": describe_scopes(check.existing_scopes),
    }


async def grant_consent(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    scopes: List[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> UserConsent:
    """
    Upsert the consent for (user, client), extending the granted set. A
    previously revoked consent is reactivated with just the new scopes.
    """
    consent = await get_consent(db, user_id, client_id)
    entry = _history_entry(HISTORY_GRANTED, scopes, ip_address, user_agent)
    if not consent:
        consent = UserConsent(
            user_id=user_id,
            client_id=client_id,
            granted_scopes=list(dict.fromkeys(scopes)),
            is_active=True,
            history=[entry],
            initial_ip=ip_address,
            initial_user_agent=user_agent,
        )
        db.add(consent)
    else:
        existing = consent.granted_scopes if consent.is_active else []
        consent.granted_scopes = list(dict.fromkeys(list(existing or []) + list(scopes)))
        consent.is_active = True
        consent.revoked_at = None
        consent.last_updated_at = utcnow()
        consent.history = list(consent.history or []) + [entry]
    await db.commit()
    logger.info(f"Consent granted: user_id={user_id} client_id={client_id} scopes={scopes}")
    return consent


async def revoke_consent(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    reason: str = REVOKE_USER_REVOKED,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> bool:
    """
    Deactivate the consent and revoke the refresh tokens issued under it.
    """
    consent = await get_consent(db, user_id, client_id)
    if not consent or not consent.is_active:
        return False
    consent.history = list(consent.history or []) + [
        _history_entry(
            HISTORY_REVOKED, consent.granted_scopes or [], ip_address, user_agent, reason=reason
        )
    ]
    consent.is_active = False
    consent.revoked_at = utcnow()
    consent.last_updated_at = utcnow()
    revoked = await revoke_user_client_tokens(db, user_id, client_id, reason)
    await db.commit()
    logger.info(
        f"Consent revoked: user_id={user_id} client_id={client_id} refresh_tokens_revoked={revoked}"
    )
    return True


async def revoke_scopes(
    db: AsyncSession,
    user_id: str,
    client_id: str,
    scopes: List[str],
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Optional[UserConsent]:
    """
    Remove some scopes from a grant. Outstanding refresh tokens carry the old
    scope set, so they are revoked too; the client must re-authorize.
    """
    consent = await get_consent(db, user_id, client_id)
    if not consent or not consent.is_active:
        return None
    remaining = [scope for scope in (consent.granted_scopes or []) if scope not in scopes]
    if not remaining:
        await revoke_consent(db, user_id, client_id, ip_address=ip_address, user_agent=user_agent)
        return consent
    consent.granted_scopes = remaining
    consent.last_updated_at = utcnow()
    consent.history = list(consent.history or []) + [
        _history_entry(HISTORY_SCOPES_REVOKED, scopes, ip_address, user_agent)
    ]
    await revoke_user_client_tokens(db, user_id, client_id, REVOKE_USER_REVOKED)
    await db.commit()
    logger.info(f"Consent scopes revoked: user_id={user_id} client_id={client_id} scopes={scopes}")
    return consent


async def list_user_consents(db: AsyncSession, user_id: str) -> List[dict]:
    """
    Active consents joined with public client metadata.
    """
    rows = (
        await db.execute(
            select(UserConsent, OAuthClient)
            .join(OAuthClient, OAuthClient.client_id == UserConsent.client_id)
            .where(UserConsent.user_id == user_id, UserConsent.is_active.is_(True))
            .order_by(UserConsent.last_updated_at.desc())
        )
    ).all()
    return [
        {
            "client_id": client.client_id,
            "client_name": client.client_name,
            "logo_uri": client.logo_uri,
            "homepage_url": client.homepage_url,
            "is_first_party": client.is_first_party,
            "granted_scopes": describe_scopes(consent.granted_scopes or []),
            "first_granted_at": _iso(consent.first_granted_at),
            "last_updated_at": _iso(consent.last_updated_at),
        }
        for consent, client in rows
    ]


async def get_consent_details(db: AsyncSession, user_id: str, client_id: str) -> Optional[dict]:
    consent = await get_consent(db, user_id, client_id)
    if not consent:
        return None
    client = (
        await db.execute(select(OAuthClient).where(OAuthClient.client_id == client_id))
    ).scalar_one_or_none()
    return {
        "client_id": client_id,
        "client_name": client.client_name if client else None,
        "logo_uri": client.logo_uri if client else None,
        "homepage_url": client.homepage_url if client else None,
        "is_active": consent.is_active,
        "granted_scopes": describe_scopes(consent.granted_scopes or []),
        "first_granted_at": _iso(consent.first_granted_at),
        "last_updated_at": _iso(consent.last_updated_at),
        "revoked_at": _iso(consent.revoked_at),
        "history": list(consent.history or [])[-HISTORY_DETAIL_LIMIT:],
    }


async def revoke_all_user_consents(
    db: AsyncSession, user_id: str, reason: str = REVOKE_USER_REVOKED
) -> int:
    """
    Revoke every active consent of a user (account deletion cascade).
    """
    consents = (
        (
            await db.execute(
                select(UserConsent).where(
                    UserConsent.user_id == user_id, UserConsent.is_active.is_(True)
                )
            )
        )
        .scalars()
        .all()
    )
    for consent in consents:
        consent.history = list(consent.history or []) + [
            _history_entry(HISTORY_REVOKED, consent.granted_scopes or [], reason=reason)
        ]
        consent.is_active = False
        consent.revoked_at = utcnow()
        await revoke_user_client_tokens(db, user_id, consent.client_id, reason)
    await db.commit()
    if consents:
        logger.info(f"Revoked {len(consents)} consents for user_id={user_id}")
    return len(consents)


async def revoke_all_client_consents(db: AsyncSession, client_id: str) -> int:
    """
    Deactivate every consent for a client. Caller commits.
    """
    consents = (
        (
            await db.execute(
                select(UserConsent).where(
                    UserConsent.client_id == client_id, UserConsent.is_active.is_(True)
                )
            )
        )
        .scalars()
        .all()
    )
    for consent in consents:
        consent.history = list(consent.history or []) + [
            _history_entry(
                HISTORY_REVOKED, consent.granted_scopes or [], reason=REVOKE_CLIENT_DELETED
            )
        ]
        consent.is_active = False
        consent.revoked_at = utcnow()
    return len(consents)


async def get_client_consent_stats(db: AsyncSession, client_id: str) -> dict:
    """
    Active consent count and how often each scope is granted.
    """
    consents = (
        (
            await db.execute(
                select(UserConsent).where(
                    UserConsent.client_id == client_id, UserConsent.is_active.is_(True)
                )
            )
        )
        .scalars()
        .all()
    )
    distribution = Counter(
        scope for consent in consents for scope in (consent.granted_scopes or [])
    )
    return {
        "client_id": client_id,
        "active_consents": len(consents),
        "scope_distribution": dict(distribution),
    }

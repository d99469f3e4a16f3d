"""Credential store: records, lookups and guarded lifecycle transitions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credential import Credential, CredentialStatus

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    CredentialStatus.QUEUED: (CredentialStatus.PENDING, CredentialStatus.FAILED),
    CredentialStatus.PENDING: (CredentialStatus.CONFIRMED, CredentialStatus.FAILED),
    CredentialStatus.CONFIRMED: (CredentialStatus.REVOKED,),
}

MUTABLE_FIELDS = frozenset(
    {
        "storage_ref",
        "tx_hash",
        "token_id",
        "failure_reason",
        "submitted_at",
        "confirmed_at",
        "revoked_at",
    }
)


class CredentialStoreError(Exception):
    """Base class for credential store failures."""


class CredentialNotFoundError(CredentialStoreError):
    pass


class InvalidStatusTransitionError(CredentialStoreError):
    def __init__(self, current: str, requested: str, detail: Optional[str] = None):
        self.current = current
        self.requested = requested
        message = f"Cannot move credential from {current} to {requested}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


@dataclass(frozen=True)
class BatchCursor:
    """Keyset position (created_at, id) of the last credential handed out."""

    created_at: datetime
    credential_id: str


def build_credential(
    *,
    issuer_id: str,
    recipient_wallet_address: Optional[str],
    metadata: Optional[Dict[str, Any]],
    issuer_ref_id: Optional[str] = None,
) -> Credential:
    """New QUEUED credential with no storage, transaction or token reference."""
    return Credential(
        id=str(uuid.uuid4()),
        issuer_id=issuer_id,
        recipient_wallet_address=recipient_wallet_address,
        issuer_ref_id=issuer_ref_id,
        metadata_json=metadata,
        storage_ref=None,
        tx_hash=None,
        token_id=None,
        status=CredentialStatus.QUEUED,
        created_at=datetime.now(timezone.utc),
    )


def check_transition(current: str, requested: str, fields: Dict[str, Any]) -> None:
    if requested not in ALLOWED_TRANSITIONS.get(current, ()):
        raise InvalidStatusTransitionError(current, requested)
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported credential fields: {sorted(unknown)}")
    if requested == CredentialStatus.PENDING and not fields.get("tx_hash"):
        raise InvalidStatusTransitionError(current, requested, "transaction reference is required")
    if requested == CredentialStatus.CONFIRMED and not fields.get("token_id"):
        raise InvalidStatusTransitionError(current, requested, "token id is required")
    if requested != CredentialStatus.CONFIRMED and fields.get("token_id"):
        raise InvalidStatusTransitionError(current, requested, "token id is only assigned on confirmation")


async def update_status(
    db: AsyncSession,
    credential_id: str,
    *,
    expected_status: str,
    new_status: str,
    **fields: Any,
) -> bool:
    """Compare-and-set status write in the caller's transaction.

    Returns False when the row is no longer in ``expected_status`` (another writer
    got there first); nothing is changed in that case. The caller commits.
    """
    check_transition(expected_status, new_status, fields)
    values = dict(fields)
    values["status"] = new_status
    values["updated_at"] = datetime.now(timezone.utc)
    result = await db.execute(
        update(Credential)
        .where(Credential.id == credential_id, Credential.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    updated = result.rowcount == 1
    if not updated:
        logger.warning(
            "Credential %s was not %s; skipped transition to %s", credential_id, expected_status, new_status
        )
    return updated


async def create_credential(
    db: AsyncSession,
    *,
    issuer_id: str,
    recipient_wallet_address: Optional[str],
    metadata: Optional[Dict[str, Any]],
    issuer_ref_id: Optional[str] = None,
) -> Credential:
    """Persist a QUEUED credential without touching the ledger (admission pays via ``debit``)."""
    credential = build_credential(
        issuer_id=issuer_id,
        recipient_wallet_address=recipient_wallet_address,
        metadata=metadata,
        issuer_ref_id=issuer_ref_id,
    )
    db.add(credential)
    await db.commit()
    return credential


async def get_credential(db: AsyncSession, credential_id: str) -> Optional[Credential]:
    result = await db.execute(
        select(Credential).where(Credential.id == credential_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_credential_by_token_id(db: AsyncSession, token_id: str) -> Optional[Credential]:
    """Verification lookup; only minted (CONFIRMED or REVOKED) credentials carry a token id."""
    result = await db.execute(
        select(Credential)
        .where(
            Credential.token_id == str(token_id).strip(),
            Credential.status.in_((CredentialStatus.CONFIRMED, CredentialStatus.REVOKED)),
        )
        .order_by(Credential.confirmed_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_by_status(
    db: AsyncSession,
    status: str,
    *,
    require_tx_ref: bool = False,
    limit: Optional[int] = None,
) -> List[Credential]:
    """Credentials in ``status``, oldest first."""
    query = select(Credential).where(Credential.status == status)
    if require_tx_ref:
        query = query.where(Credential.tx_hash.is_not(None))
    query = query.order_by(Credential.created_at.asc(), Credential.id.asc())
    if limit:
        query = query.limit(int(limit))
    result = await db.execute(query)
    return list(result.scalars().all())


async def next_batch(
    db: AsyncSession,
    status: str,
    after: Optional[BatchCursor],
    limit: int,
) -> Tuple[List[Credential], Optional[BatchCursor]]:
    """One page of ``status`` credentials strictly after ``after``, oldest first."""
    query = select(Credential).where(Credential.status == status)
    if after is not None:
        query = query.where(
            or_(
                Credential.created_at > after.created_at,
                and_(
                    Credential.created_at == after.created_at,
                    Credential.id > after.credential_id,
                ),
            )
        )
    query = query.order_by(Credential.created_at.asc(), Credential.id.asc()).limit(max(int(limit), 1))
    result = await db.execute(query)
    items = list(result.scalars().all())
    if not items:
        return items, after
    last = items[-1]
    return items, BatchCursor(created_at=last.created_at, credential_id=last.id)


async def list_by_issuer(
    db: AsyncSession,
    issuer_id: str,
    *,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[Credential]:
    query = select(Credential).where(Credential.issuer_id == issuer_id)
    if status:
        query = query.where(Credential.status == status)
    query = query.order_by(Credential.created_at.desc()).limit(max(int(limit), 1))
    result = await db.execute(query)
    return list(result.scalars().all())


async def list_by_recipient(db: AsyncSession, wallet_address: str, *, limit: int = 100) -> List[Credential]:
    address = str(wallet_address or "").strip().lower()
    result = await db.execute(
        select(Credential)
        .where(func.lower(Credential.recipient_wallet_address) == address)
        .order_by(Credential.created_at.desc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def count_by_status(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(select(Credential.status, func.count()).group_by(Credential.status))
    counts = {status: 0 for status in CredentialStatus.ALL}
    for status, count in result.all():
        counts[status] = int(count)
    return counts


async def revoke_credential(db: AsyncSession, credential_id: str, *, reason: Optional[str] = None) -> Credential:
    """Administrative CONFIRMED -> REVOKED. The token id is kept for verifiers."""
    fields: Dict[str, Any] = {"revoked_at": datetime.now(timezone.utc)}
    if reason:
        fields["failure_reason"] = f"revoked: {reason}"[:500]
    updated = await update_status(
        db,
        credential_id,
        expected_status=CredentialStatus.CONFIRMED,
        new_status=CredentialStatus.REVOKED,
        **fields,
    )
    if not updated:
        await db.rollback()
        credential = await get_credential(db, credential_id)
        if credential is None:
            raise CredentialNotFoundError(f"Credential not found: {credential_id}")
        raise InvalidStatusTransitionError(credential.status, CredentialStatus.REVOKED)
    await db.commit()
    logger.info("Credential %s revoked", credential_id)
    credential = await get_credential(db, credential_id)
    return credential


def serialize_credential(credential: Credential) -> Dict[str, Any]:
    return {
        "credential_id": credential.id,
        "issuer_id": credential.issuer_id,
        "recipient_wallet_address": credential.recipient_wallet_address,
        "issuer_ref_id": credential.issuer_ref_id,
        "metadata": credential.metadata_json,
        "storage_ref": credential.storage_ref,
        "tx_hash": credential.tx_hash,
        "token_id": credential.token_id,
        "status": credential.status,
        "failure_reason": credential.failure_reason,
        "created_at": credential.created_at.isoformat() if credential.created_at else None,
        "updated_at": credential.updated_at.isoformat() if credential.updated_at else None,
        "confirmed_at": credential.confirmed_at.isoformat() if credential.confirmed_at else None,
        "revoked_at": credential.revoked_at.isoformat() if credential.revoked_at else None,
    }

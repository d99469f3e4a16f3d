"""Credential minting, lookup, verification and revocation router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.credential import CredentialStatus
from routers.auth_scope import AuthContext, get_auth_context, require_admin
from routers.rate_limit import rate_limit
from services.admission import (
    WALLET_ADDRESS_PATTERN,
    InvalidMintRequestError,
    MintRequest,
    submit_mint_request,
)
from services.credentials import (
    CredentialNotFoundError,
    InvalidStatusTransitionError,
    get_credential,
    get_credential_by_token_id,
    list_by_issuer,
    list_by_recipient,
    revoke_credential,
    serialize_credential,
)
from services.credits import (
    CreditLedger,
    InsufficientCreditsError,
    ensure_issuer_account,
    get_credit_ledger,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class MintCredentialRequest(BaseModel):
    recipient_wallet_address: str = Field(min_length=1, max_length=42)
    issuer_ref_id: Optional[str] = Field(default=None, max_length=100)
    metadata: Dict[str, Any]


class RevokeCredentialRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=400)


@router.post("/mint", status_code=202)
async def mint_credential(
    request: MintCredentialRequest,
    _rate_limit: None = Depends(rate_limit("credentials_mint", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    await ensure_issuer_account(db, auth.issuer_id, email=auth.email, role=auth.role)
    try:
        credential = await submit_mint_request(
            db,
            ledger,
            auth.issuer_id,
            MintRequest(
                recipient_wallet_address=request.recipient_wallet_address,
                metadata=request.metadata,
                issuer_ref_id=request.issuer_ref_id,
            ),
        )
    except InvalidMintRequestError as exc:
        raise HTTPException(status_code=422, detail={"code": "INVALID_REQUEST", "message": str(exc)}) from exc
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "code": "INSUFFICIENT_CREDITS",
                "message": str(exc),
                "required": str(exc.required),
                "available": str(exc.available),
            },
        ) from exc

    return {
        "credential_id": credential.id,
        "status": credential.status,
        "message": "Credential minting request queued successfully",
    }


@router.get("")
async def list_issuer_credentials(
    status: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    if status is not None:
        status = status.strip().upper()
        if status not in CredentialStatus.ALL:
            raise HTTPException(status_code=422, detail=f"Unknown credential status: {status}")
    credentials = await list_by_issuer(db, auth.issuer_id, status=status, limit=limit)
    return {
        "issuer_id": auth.issuer_id,
        "count": len(credentials),
        "credentials": [serialize_credential(credential) for credential in credentials],
    }


@router.get("/holder/{wallet_address}")
async def list_holder_credentials(
    wallet_address: str,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
):
    if not WALLET_ADDRESS_PATTERN.match(wallet_address.strip()):
        raise HTTPException(status_code=422, detail="Invalid Ethereum wallet address format")
    credentials = await list_by_recipient(db, wallet_address, limit=limit)
    return {
        "wallet_address": wallet_address,
        "count": len(credentials),
        "credentials": [serialize_credential(credential) for credential in credentials],
    }


@router.get("/verify/{token_id}")
async def verify_credential(token_id: str, db: AsyncSession = Depends(get_db)):
    credential = await get_credential_by_token_id(db, token_id)
    if credential is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": f"No credential for token {token_id}"})
    return {
        "valid": credential.status == CredentialStatus.CONFIRMED,
        "token_id": credential.token_id,
        "status": credential.status,
        "issuer_id": credential.issuer_id,
        "recipient_wallet_address": credential.recipient_wallet_address,
        "storage_ref": credential.storage_ref,
        "tx_hash": credential.tx_hash,
        "confirmed_at": credential.confirmed_at.isoformat() if credential.confirmed_at else None,
        "revoked_at": credential.revoked_at.isoformat() if credential.revoked_at else None,
    }


@router.get("/{credential_id}")
async def get_credential_status(
    credential_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    credential = await get_credential(db, credential_id)
    if credential is None or (credential.issuer_id != auth.issuer_id and not auth.is_admin):
        raise HTTPException(status_code=404, detail="Credential not found.")
    return serialize_credential(credential)


@router.post("/{credential_id}/revoke")
async def revoke_issued_credential(
    credential_id: str,
    request: Optional[RevokeCredentialRequest] = None,
    auth: AuthContext = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    try:
        credential = await revoke_credential(db, credential_id, reason=request.reason if request else None)
    except CredentialNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Credential not found.") from exc
    except InvalidStatusTransitionError as exc:
        raise HTTPException(status_code=409, detail={"code": "INVALID_STATUS", "message": str(exc)}) from exc
    logger.info("Credential %s revoked by %s", credential_id, auth.issuer_id)
    return serialize_credential(credential)

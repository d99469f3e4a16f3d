"""Issuer credit balance, history and purchase router."""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.credit_transaction import TransactionType
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import (
    CreditLedger,
    DuplicatePaymentError,
    InvalidCreditAmountError,
    ensure_issuer_account,
    get_credit_ledger,
    get_credit_summary,
    serialize_transaction,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class CreditPurchaseRequest(BaseModel):
    amount: Decimal = Field(gt=0, le=Decimal("100000"), decimal_places=2)
    payment_reference: Optional[str] = Field(default=None, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)


@router.get("/balance")
async def credit_balance(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    await ensure_issuer_account(db, auth.issuer_id, email=auth.email, role=auth.role)
    return await get_credit_summary(db, auth.issuer_id, ledger)


@router.get("/history")
async def credit_history(
    transaction_type: Optional[str] = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    if transaction_type is not None:
        transaction_type = transaction_type.strip().upper()
        if transaction_type not in TransactionType.ALL:
            raise HTTPException(status_code=422, detail=f"Unknown transaction type: {transaction_type}")
    await ensure_issuer_account(db, auth.issuer_id, email=auth.email, role=auth.role)
    entries = await ledger.get_transaction_history(
        db,
        auth.issuer_id,
        transaction_type=transaction_type,
        limit=limit,
    )
    return {
        "issuer_id": auth.issuer_id,
        "count": len(entries),
        "transactions": [serialize_transaction(entry) for entry in entries],
    }


@router.post("/purchase", status_code=201)
async def purchase_credits(
    request: CreditPurchaseRequest,
    _rate_limit: None = Depends(rate_limit("credits_purchase", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    ledger: CreditLedger = Depends(get_credit_ledger),
):
    await ensure_issuer_account(db, auth.issuer_id, email=auth.email, role=auth.role)
    try:
        entry = await ledger.purchase(
            db,
            auth.issuer_id,
            request.amount,
            payment_reference=request.payment_reference,
            description=request.description,
        )
    except DuplicatePaymentError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "DUPLICATE_PAYMENT", "message": str(exc)},
        ) from exc
    except InvalidCreditAmountError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    transaction = serialize_transaction(entry)
    return {
        "ok": True,
        "credits_added": transaction["amount"],
        "balance_after": transaction["balance_after"],
        "transaction": transaction,
    }

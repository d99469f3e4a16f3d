"""Credit ledger: atomic, append-only issuer credit accounting.

Every balance change goes through :class:`CreditLedger`, which holds an exclusive
per-issuer guard for the read-check-write sequence, writes the new cached balance
on the issuer row and appends exactly one immutable ``CreditTransaction``.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credential import Credential
from models.credit_transaction import CreditTransaction, TransactionType
from models.issuer import IssuerAccount, IssuerRole

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


class CreditLedgerError(Exception):
    """Base class for ledger failures."""


class InsufficientCreditsError(CreditLedgerError):
    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")


class DuplicatePaymentError(CreditLedgerError):
    def __init__(self, payment_reference: str):
        self.payment_reference = payment_reference
        super().__init__(f"Duplicate payment reference: {payment_reference}")


class IssuerNotFoundError(CreditLedgerError):
    pass


class InvalidCreditAmountError(CreditLedgerError, ValueError):
    pass


def to_credit_amount(value: Any) -> Decimal:
    """Normalize a credit amount to two decimal places."""
    try:
        amount = Decimal(str(value))
    except Exception as exc:
        raise InvalidCreditAmountError(f"Invalid credit amount: {value!r}") from exc
    if not amount.is_finite():
        raise InvalidCreditAmountError(f"Invalid credit amount: {value!r}")
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def _positive_amount(value: Any, label: str) -> Decimal:
    amount = to_credit_amount(value)
    if amount <= 0:
        raise InvalidCreditAmountError(f"{label} amount must be positive: {amount}")
    return amount


class CreditLedger:
    """Per-issuer serialized credit operations.

    Exclusivity is an in-process lock keyed by issuer id plus ``SELECT ... FOR UPDATE``
    on the issuer row, so operations on one issuer serialize while different issuers
    never wait on each other. The lock is released only after the commit; callers that
    pass ``commit=False`` hold ``account_guard`` themselves across their own commit.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}
        self._owners: Dict[str, asyncio.Task] = {}

    @asynccontextmanager
    async def account_guard(self, issuer_id: str) -> AsyncIterator[None]:
        """Serialize ledger work for one issuer. Re-entrant within the owning task."""
        task = asyncio.current_task()
        if task is not None and self._owners.get(issuer_id) is task:
            yield
            return

        lock = self._locks.get(issuer_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[issuer_id] = lock
        self._holders[issuer_id] = self._holders.get(issuer_id, 0) + 1
        try:
            async with lock:
                self._owners[issuer_id] = task
                try:
                    yield
                finally:
                    self._owners.pop(issuer_id, None)
        finally:
            self._holders[issuer_id] -= 1
            if self._holders[issuer_id] <= 0:
                self._holders.pop(issuer_id, None)
                self._locks.pop(issuer_id, None)

    async def _lock_account(self, db: AsyncSession, issuer_id: str) -> IssuerAccount:
        result = await db.execute(
            select(IssuerAccount)
            .where(IssuerAccount.id == issuer_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None:
            raise IssuerNotFoundError(f"Issuer not found: {issuer_id}")
        return account

    async def _append(
        self,
        db: AsyncSession,
        account: IssuerAccount,
        *,
        transaction_type: str,
        delta: Decimal,
        credential_id: Optional[str] = None,
        description: Optional[str] = None,
        payment_reference: Optional[str] = None,
    ) -> CreditTransaction:
        available = to_credit_amount(account.credit_balance or 0)
        next_balance = available + delta
        if next_balance < 0:
            raise InsufficientCreditsError(required=-delta, available=available)

        account.credit_balance = next_balance
        entry = CreditTransaction(
            id=str(uuid.uuid4()),
            issuer_id=account.id,
            credential_id=credential_id,
            transaction_type=transaction_type,
            amount=delta,
            balance_after=next_balance,
            description=(description or "")[:500] or None,
            payment_reference=payment_reference,
            created_at=datetime.now(timezone.utc),
        )
        db.add(entry)
        await db.flush()
        return entry

    async def debit(
        self,
        db: AsyncSession,
        issuer_id: str,
        amount: Any,
        *,
        credential: Optional[Credential] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """Deduct credits, optionally persisting the credential being paid for.

        The credential insert, balance decrement and DEDUCT row commit together;
        on insufficient credits nothing is written.
        """
        cost = _positive_amount(amount, "Debit")
        async with self.account_guard(issuer_id):
            try:
                account = await self._lock_account(db, issuer_id)
                available = to_credit_amount(account.credit_balance or 0)
                if available < cost:
                    raise InsufficientCreditsError(required=cost, available=available)
                if credential is not None:
                    db.add(credential)
                    await db.flush()
                entry = await self._append(
                    db,
                    account,
                    transaction_type=TransactionType.DEDUCT,
                    delta=-cost,
                    credential_id=credential.id if credential is not None else None,
                    description=description or f"Deducted {cost} credits for minting credential",
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info("Debited %s credits from issuer %s (balance_after=%s)", cost, issuer_id, entry.balance_after)
        return entry

    async def refund(
        self,
        db: AsyncSession,
        issuer_id: str,
        amount: Any,
        credential_id: str,
        *,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> CreditTransaction:
        """Return credits for a credential. At most one REFUND row exists per credential.

        With ``commit=False`` the caller owns the transaction and must hold
        ``account_guard(issuer_id)`` until it commits or rolls back; used when the
        refund has to land atomically with a credential status change.
        """
        credit = _positive_amount(amount, "Refund")
        async with self.account_guard(issuer_id):
            try:
                entry = await self.find_refund(db, credential_id)
                if entry is not None:
                    logger.info("Credential %s already refunded by %s", credential_id, entry.id)
                else:
                    account = await self._lock_account(db, issuer_id)
                    entry = await self._append(
                        db,
                        account,
                        transaction_type=TransactionType.REFUND,
                        delta=credit,
                        credential_id=credential_id,
                        description=description or f"Refunded {credit} credits due to minting failure",
                    )
                    logger.info(
                        "Refunded %s credits to issuer %s for credential %s", credit, issuer_id, credential_id
                    )
                if commit:
                    await db.commit()
            except Exception:
                await db.rollback()
                raise
        return entry

    async def refund_deduction(
        self,
        db: AsyncSession,
        credential: Credential,
        *,
        description: Optional[str] = None,
        commit: bool = True,
    ) -> Optional[CreditTransaction]:
        """Refund the magnitude of the credential's original DEDUCT, if it had one."""
        deduction = await self.find_deduction(db, credential.id)
        if deduction is None:
            logger.warning("Credential %s has no deduction to refund", credential.id)
            if commit:
                await db.commit()
            return None
        return await self.refund(
            db,
            credential.issuer_id,
            -to_credit_amount(deduction.amount),
            credential.id,
            description=description,
            commit=commit,
        )

    async def purchase(
        self,
        db: AsyncSession,
        issuer_id: str,
        amount: Any,
        *,
        payment_reference: Optional[str] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """Add purchased credits. A reused payment reference is rejected as a conflict."""
        credit = _positive_amount(amount, "Purchase")
        reference = (payment_reference or "").strip() or None
        async with self.account_guard(issuer_id):
            try:
                if reference is not None:
                    existing = await db.execute(
                        select(CreditTransaction.id).where(CreditTransaction.payment_reference == reference)
                    )
                    if existing.scalar_one_or_none():
                        raise DuplicatePaymentError(reference)
                account = await self._lock_account(db, issuer_id)
                entry = await self._append(
                    db,
                    account,
                    transaction_type=TransactionType.PURCHASE,
                    delta=credit,
                    description=description or f"Purchased {credit} credits",
                    payment_reference=reference,
                )
                await db.commit()
            except IntegrityError as exc:
                await db.rollback()
                if reference is not None:
                    raise DuplicatePaymentError(reference) from exc
                raise
            except Exception:
                await db.rollback()
                raise
        logger.info("Issuer %s purchased %s credits (reference=%s)", issuer_id, credit, reference)
        return entry

    async def adjust(
        self,
        db: AsyncSession,
        issuer_id: str,
        amount: Any,
        *,
        description: str,
    ) -> CreditTransaction:
        """Administrative correction; may not drive the balance negative."""
        delta = to_credit_amount(amount)
        if delta == 0:
            raise InvalidCreditAmountError("Adjustment amount must be non-zero")
        async with self.account_guard(issuer_id):
            try:
                account = await self._lock_account(db, issuer_id)
                entry = await self._append(
                    db,
                    account,
                    transaction_type=TransactionType.ADJUSTMENT,
                    delta=delta,
                    description=description,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info("Adjusted issuer %s balance by %s", issuer_id, delta)
        return entry

    async def get_balance(self, db: AsyncSession, issuer_id: str) -> Decimal:
        result = await db.execute(select(IssuerAccount.credit_balance).where(IssuerAccount.id == issuer_id))
        balance = result.scalar_one_or_none()
        if balance is None:
            raise IssuerNotFoundError(f"Issuer not found: {issuer_id}")
        return to_credit_amount(balance)

    async def replay_balance(self, db: AsyncSession, issuer_id: str) -> Decimal:
        result = await db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.issuer_id == issuer_id
            )
        )
        return to_credit_amount(result.scalar() or 0)

    async def verify_balance(self, db: AsyncSession, issuer_id: str) -> bool:
        """True when the cached balance equals the replay of the transaction log."""
        return await self.get_balance(db, issuer_id) == await self.replay_balance(db, issuer_id)

    async def get_transaction_history(
        self,
        db: AsyncSession,
        issuer_id: str,
        *,
        transaction_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[CreditTransaction]:
        query = select(CreditTransaction).where(CreditTransaction.issuer_id == issuer_id)
        if transaction_type:
            query = query.where(CreditTransaction.transaction_type == transaction_type)
        query = query.order_by(CreditTransaction.created_at.desc()).limit(max(int(limit), 1))
        result = await db.execute(query)
        return list(result.scalars().all())

    async def find_deduction(self, db: AsyncSession, credential_id: str) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.credential_id == credential_id,
                CreditTransaction.transaction_type == TransactionType.DEDUCT,
            )
            .order_by(CreditTransaction.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def find_refund(self, db: AsyncSession, credential_id: str) -> Optional[CreditTransaction]:
        result = await db.execute(
            select(CreditTransaction).where(
                CreditTransaction.credential_id == credential_id,
                CreditTransaction.transaction_type == TransactionType.REFUND,
            )
        )
        return result.scalar_one_or_none()


credit_ledger = CreditLedger()


def get_credit_ledger() -> CreditLedger:
    """FastAPI dependency returning the process-wide ledger."""
    return credit_ledger


async def ensure_issuer_account(
    db: AsyncSession,
    issuer_id: str,
    *,
    email: Optional[str] = None,
    role: str = IssuerRole.ISSUER,
) -> IssuerAccount:
    """Return the issuer row, creating an empty account on first sight."""
    result = await db.execute(select(IssuerAccount).where(IssuerAccount.id == issuer_id))
    account = result.scalar_one_or_none()
    if account:
        return account

    account = IssuerAccount(
        id=issuer_id,
        email=email or f"{issuer_id}@local.invalid",
        role=role if role in IssuerRole.ALL else IssuerRole.ISSUER,
        credit_balance=Decimal("0.00"),
    )
    db.add(account)
    await db.commit()
    return account


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "transaction_type": entry.transaction_type,
        "amount": str(to_credit_amount(entry.amount)),
        "balance_after": str(to_credit_amount(entry.balance_after)),
        "description": entry.description,
        "payment_reference": entry.payment_reference,
        "credential_id": entry.credential_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(db: AsyncSession, issuer_id: str, ledger: CreditLedger) -> Dict[str, Any]:
    balance = await ledger.get_balance(db, issuer_id)
    entries = await ledger.get_transaction_history(db, issuer_id, limit=30)
    return {
        "issuer_id": issuer_id,
        "balance": str(balance),
        "mint_cost": str(to_credit_amount(settings.MINT_COST_CREDITS)),
        "recent_entries": [serialize_transaction(entry) for entry in entries],
    }

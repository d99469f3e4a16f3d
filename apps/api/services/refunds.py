"""Compensating refunds for credentials that failed after their mint fee was debited."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, exists
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from database import async_session_maker, engine
from models.credential import Credential, CredentialStatus
from models.credit_transaction import CreditTransaction, TransactionType
from services.credits import CreditLedger, credit_ledger

logger = logging.getLogger(__name__)


@dataclass
class CompensationResult:
    checked: int = 0
    refunded: int = 0
    errors: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _has_transaction(transaction_type: str):
    return exists().where(
        and_(
            CreditTransaction.credential_id == Credential.id,
            CreditTransaction.transaction_type == transaction_type,
        )
    )


async def find_unrefunded_failures(db: AsyncSession, *, limit: int = 500) -> List[Credential]:
    """FAILED credentials that were debited and have no REFUND row yet, oldest first."""
    result = await db.execute(
        select(Credential)
        .where(
            Credential.status == CredentialStatus.FAILED,
            _has_transaction(TransactionType.DEDUCT),
            ~_has_transaction(TransactionType.REFUND),
        )
        .order_by(Credential.created_at.asc(), Credential.id.asc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


class RefundCompensator:
    """Issues the single outstanding refund for every debited FAILED credential."""

    def __init__(self, session_maker: async_sessionmaker, ledger: CreditLedger, *, limit: int = 500) -> None:
        self.session_maker = session_maker
        self.ledger = ledger
        self.limit = limit

    async def run(self) -> CompensationResult:
        result = CompensationResult()
        async with self.session_maker() as db:
            candidates = await find_unrefunded_failures(db, limit=self.limit)

        for credential in candidates:
            result.checked += 1
            try:
                async with self.session_maker() as db:
                    entry = await self.ledger.refund_deduction(
                        db,
                        credential,
                        description=f"Refund for failed credential {credential.id} ({credential.failure_reason or 'failed'})",
                    )
            except Exception:
                logger.exception("Compensating refund for credential %s failed", credential.id)
                result.errors += 1
                continue
            if entry is not None:
                result.refunded += 1

        if result.checked:
            logger.info(
                "Refund compensation: checked=%s refunded=%s errors=%s",
                result.checked,
                result.refunded,
                result.errors,
            )
        return result


async def run_refund_compensation(session_maker: Optional[async_sessionmaker] = None) -> CompensationResult:
    return await RefundCompensator(session_maker or async_session_maker, credit_ledger).run()


async def _run_refund_compensation_job_async() -> Dict[str, Any]:
    try:
        result = await run_refund_compensation()
    finally:
        await engine.dispose()
    return result.as_dict()


def run_refund_compensation_job() -> Dict[str, Any]:
    """RQ worker entrypoint for a compensation sweep."""
    return asyncio.run(_run_refund_compensation_job_async())

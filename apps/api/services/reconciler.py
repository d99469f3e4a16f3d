"""Confirmation reconciler: settle PENDING credentials against chain state."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker, engine
from models.credential import Credential, CredentialStatus
from services.capabilities import (
    ChainRelayer,
    TxConfirmed,
    TxPending,
    TxRejected,
    TxStatusResult,
    TxStatusUnavailable,
    get_chain_relayer,
)
from services.credentials import find_by_status, update_status
from services.credits import CreditLedger, credit_ledger
from services.refunds import RefundCompensator
from services.run_lock import RunLock, single_flight

logger = logging.getLogger(__name__)

RECONCILER_LOCK_NAME = "confirmation-reconciler"


@dataclass
class ReconcileRunResult:
    checked: int = 0
    confirmed: int = 0
    failed: int = 0
    still_pending: int = 0
    errors: int = 0
    refunded: int = 0
    lock_acquired: bool = True

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConfirmationReconciler:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        ledger: CreditLedger,
        relayer: ChainRelayer,
        *,
        status_timeout: Optional[float] = None,
        pending_timeout_minutes: Optional[int] = None,
        limit: int = 500,
        compensate: bool = True,
        lock_ttl_seconds: Optional[int] = None,
    ) -> None:
        self.session_maker = session_maker
        self.ledger = ledger
        self.relayer = relayer
        self.status_timeout = float(status_timeout or settings.CHAIN_TIMEOUT_SECONDS)
        if pending_timeout_minutes is None:
            pending_timeout_minutes = settings.PENDING_TIMEOUT_MINUTES
        self.pending_timeout_minutes = max(int(pending_timeout_minutes), 0)
        self.limit = limit
        self.compensate = compensate
        self.lock_ttl_seconds = max(int(lock_ttl_seconds or 600), math.ceil(self.status_timeout) + 1)

    async def run(self) -> ReconcileRunResult:
        async with single_flight(RECONCILER_LOCK_NAME, ttl_seconds=self.lock_ttl_seconds) as lock:
            if not lock:
                logger.info("Reconciler run skipped: another run holds the lock")
                return ReconcileRunResult(lock_acquired=False)
            result = await self._reconcile(lock)
            if self.compensate:
                compensation = await RefundCompensator(self.session_maker, self.ledger).run()
                result.refunded += compensation.refunded
                result.errors += compensation.errors
        if result.checked or result.refunded:
            logger.info(
                "Reconciler run: checked=%s confirmed=%s failed=%s pending=%s errors=%s refunded=%s",
                result.checked,
                result.confirmed,
                result.failed,
                result.still_pending,
                result.errors,
                result.refunded,
            )
        return result

    async def _reconcile(self, lock: RunLock) -> ReconcileRunResult:
        result = ReconcileRunResult()
        async with self.session_maker() as db:
            pending = await find_by_status(db, CredentialStatus.PENDING, require_tx_ref=True, limit=self.limit)

        for credential in pending:
            if not await lock.extend():
                logger.warning("Reconciler run stopped after losing its lock")
                break
            result.checked += 1
            status = await self._query_status(credential.tx_hash)
            try:
                if isinstance(status, TxConfirmed):
                    if await self._confirm(credential, status.token_id):
                        result.confirmed += 1
                    else:
                        result.errors += 1
                elif isinstance(status, TxRejected):
                    if await self._fail(credential, f"chain_rejected: {status.reason}", result):
                        result.failed += 1
                elif isinstance(status, TxStatusUnavailable):
                    logger.warning("Status of credential %s unavailable: %s", credential.id, status.reason)
                    result.errors += 1
                elif isinstance(status, TxPending) and self._expired(credential):
                    if await self._fail(credential, "chain_timeout", result):
                        result.failed += 1
                else:
                    result.still_pending += 1
            except Exception:
                logger.exception("Reconciling credential %s failed; it stays PENDING", credential.id)
                result.errors += 1
        return result

    async def _query_status(self, tx_hash: str) -> TxStatusResult:
        try:
            return await asyncio.wait_for(self.relayer.get_transaction_status(tx_hash), timeout=self.status_timeout)
        except asyncio.TimeoutError:
            return TxStatusUnavailable(f"timed out after {self.status_timeout:g}s")
        except Exception as exc:
            return TxStatusUnavailable(str(exc) or exc.__class__.__name__)

    def _expired(self, credential: Credential) -> bool:
        if self.pending_timeout_minutes <= 0:
            return False
        started = _as_utc(credential.submitted_at) or _as_utc(credential.created_at)
        if started is None:
            return False
        return datetime.now(timezone.utc) - started > timedelta(minutes=self.pending_timeout_minutes)

    async def _confirm(self, credential: Credential, token_id: str) -> bool:
        async with self.session_maker() as db:
            try:
                updated = await update_status(
                    db,
                    credential.id,
                    expected_status=CredentialStatus.PENDING,
                    new_status=CredentialStatus.CONFIRMED,
                    token_id=str(token_id),
                    confirmed_at=datetime.now(timezone.utc),
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.error("Token id %s is already assigned; credential %s stays PENDING", token_id, credential.id)
                return False
        if updated:
            logger.info("Credential %s confirmed with token id %s", credential.id, token_id)
        return updated

    async def _fail(self, credential: Credential, reason: str, result: ReconcileRunResult) -> bool:
        """PENDING -> FAILED and the refund of its debit, committed together.

        The issuer's ledger guard is held until after the commit so no other
        ledger operation on that issuer sees the pre-refund balance.
        """
        async with self.ledger.account_guard(credential.issuer_id):
            async with self.session_maker() as db:
                updated = await update_status(
                    db,
                    credential.id,
                    expected_status=CredentialStatus.PENDING,
                    new_status=CredentialStatus.FAILED,
                    failure_reason=reason[:500],
                )
                if not updated:
                    await db.rollback()
                    return False
                refund = await self.ledger.refund_deduction(
                    db,
                    credential,
                    description=f"Refund for failed credential {credential.id} ({reason})"[:500],
                    commit=False,
                )
                await db.commit()
        if refund is not None:
            result.refunded += 1
        logger.info("Credential %s failed: %s", credential.id, reason)
        return True


def build_reconciler(session_maker: Optional[async_sessionmaker] = None) -> ConfirmationReconciler:
    return ConfirmationReconciler(session_maker or async_session_maker, credit_ledger, get_chain_relayer())


async def run_reconciliation_pass(session_maker: Optional[async_sessionmaker] = None) -> ReconcileRunResult:
    return await build_reconciler(session_maker).run()


async def _run_reconciliation_job_async() -> Dict[str, Any]:
    try:
        result = await run_reconciliation_pass()
    finally:
        await engine.dispose()
    return result.as_dict()


def run_reconciliation_job() -> Dict[str, Any]:
    """RQ worker entrypoint for an on-demand reconciliation pass."""
    return asyncio.run(_run_reconciliation_job_async())

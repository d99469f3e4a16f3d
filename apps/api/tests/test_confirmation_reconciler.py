import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import patch
from decimal import Decimal

import pytest
from sqlalchemy import update

from conftest import create_issuer
from models.credential import Credential, CredentialStatus
from models.credit_transaction import TransactionType
from services.admission import MintRequest, submit_mint_request
from services.capabilities import (
    ChainRelayer,
    SubmitSucceeded,
    TxConfirmed,
    TxPending,
    TxRejected,
    TxStatusUnavailable,
)
from services.credentials import get_credential, update_status
from services.credits import CreditLedger
from services.reconciler import ConfirmationReconciler
from services.refunds import RefundCompensator, find_unrefunded_failures

RECIPIENT = "0x" + "cd" * 20


class ScriptedRelayer(ChainRelayer):
    """Answers status queries from a tx_hash -> result mapping."""

    provider_name = "scripted"

    def __init__(self, statuses):
        self.statuses = statuses
        self.queries = []

    async def submit_mint(self, recipient_address, content_ref):
        return SubmitSucceeded(tx_hash="0x" + "0" * 64)

    async def get_transaction_status(self, tx_hash):
        self.queries.append(tx_hash)
        result = self.statuses.get(tx_hash, TxPending())
        if isinstance(result, Exception):
            raise result
        return result


async def _pending_credential(maker, ledger, issuer_id: str, tx_hash: str) -> str:
    async with maker() as session:
        credential = await submit_mint_request(
            session,
            ledger,
            issuer_id,
            MintRequest(recipient_wallet_address=RECIPIENT, metadata={"name": tx_hash[-4:]}),
        )
    async with maker() as session:
        await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.QUEUED,
            new_status=CredentialStatus.PENDING,
            storage_ref=f"ar-{tx_hash[-4:]}",
            tx_hash=tx_hash,
            submitted_at=datetime.now(timezone.utc),
        )
        await session.commit()
    return credential.id


async def _transactions(maker, ledger, issuer_id, transaction_type):
    async with maker() as session:
        return await ledger.get_transaction_history(session, issuer_id, transaction_type=transaction_type)


@pytest.mark.asyncio
async def test_confirmed_transaction_assigns_token_without_refund(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r1", balance="1.00")
    tx_hash = "0x" + "1" * 64
    credential_id = await _pending_credential(session_maker, ledger, "issuer-r1", tx_hash)
    relayer = ScriptedRelayer({tx_hash: TxConfirmed(token_id="1001", block_number=10)})

    result = await ConfirmationReconciler(session_maker, ledger, relayer).run()

    assert (result.checked, result.confirmed, result.failed, result.refunded) == (1, 1, 0, 0)
    async with session_maker() as session:
        stored = await get_credential(session, credential_id)
    assert stored.status == CredentialStatus.CONFIRMED
    assert stored.token_id == "1001"
    assert stored.confirmed_at is not None
    assert await _transactions(session_maker, ledger, "issuer-r1", TransactionType.REFUND) == []


@pytest.mark.asyncio
async def test_rejected_transaction_fails_and_refunds_the_deduction(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r2", balance="1.00")
    tx_hash = "0x" + "2" * 64
    credential_id = await _pending_credential(session_maker, ledger, "issuer-r2", tx_hash)
    relayer = ScriptedRelayer({tx_hash: TxRejected("execution reverted")})

    result = await ConfirmationReconciler(session_maker, ledger, relayer).run()

    assert result.failed == 1
    assert result.refunded == 1
    async with session_maker() as session:
        stored = await get_credential(session, credential_id)
        deduction = await ledger.find_deduction(session, credential_id)
        refund = await ledger.find_refund(session, credential_id)
        assert await ledger.get_balance(session, "issuer-r2") == Decimal("1.00")
    assert stored.status == CredentialStatus.FAILED
    assert stored.tx_hash == tx_hash
    assert stored.token_id is None
    assert stored.failure_reason == "chain_rejected: execution reverted"
    assert refund.amount == -deduction.amount


@pytest.mark.asyncio
async def test_second_pass_leaves_terminal_credentials_alone(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r3", balance="2.00")
    ok_hash = "0x" + "3" * 64
    bad_hash = "0x" + "4" * 64
    await _pending_credential(session_maker, ledger, "issuer-r3", ok_hash)
    await _pending_credential(session_maker, ledger, "issuer-r3", bad_hash)
    relayer = ScriptedRelayer({ok_hash: TxConfirmed(token_id="7"), bad_hash: TxRejected("reverted")})
    reconciler = ConfirmationReconciler(session_maker, ledger, relayer)

    await reconciler.run()
    relayer.queries.clear()
    second = await reconciler.run()

    assert second.checked == 0
    assert relayer.queries == []
    assert len(await _transactions(session_maker, ledger, "issuer-r3", TransactionType.REFUND)) == 1
    assert len(await _transactions(session_maker, ledger, "issuer-r3", TransactionType.DEDUCT)) == 2


@pytest.mark.asyncio
async def test_unavailable_status_and_query_errors_leave_credential_pending(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r4", balance="2.00")
    hash_a = "0x" + "5" * 64
    hash_b = "0x" + "6" * 64
    id_a = await _pending_credential(session_maker, ledger, "issuer-r4", hash_a)
    id_b = await _pending_credential(session_maker, ledger, "issuer-r4", hash_b)
    relayer = ScriptedRelayer({hash_a: TxStatusUnavailable("rpc timeout"), hash_b: RuntimeError("boom")})

    result = await ConfirmationReconciler(session_maker, ledger, relayer).run()

    assert result.errors == 2
    async with session_maker() as session:
        assert (await get_credential(session, id_a)).status == CredentialStatus.PENDING
        assert (await get_credential(session, id_b)).status == CredentialStatus.PENDING


@pytest.mark.asyncio
async def test_pending_past_timeout_fails_with_refund(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r5", balance="1.00")
    tx_hash = "0x" + "7" * 64
    credential_id = await _pending_credential(session_maker, ledger, "issuer-r5", tx_hash)
    async with session_maker() as session:
        await session.execute(
            update(Credential)
            .where(Credential.id == credential_id)
            .values(submitted_at=datetime.now(timezone.utc) - timedelta(hours=3))
        )
        await session.commit()

    fresh = await ConfirmationReconciler(
        session_maker, ledger, ScriptedRelayer({}), pending_timeout_minutes=0
    ).run()
    assert fresh.still_pending == 1

    result = await ConfirmationReconciler(
        session_maker, ledger, ScriptedRelayer({}), pending_timeout_minutes=60
    ).run()

    assert result.failed == 1
    async with session_maker() as session:
        stored = await get_credential(session, credential_id)
        assert await ledger.get_balance(session, "issuer-r5") == Decimal("1.00")
    assert stored.status == CredentialStatus.FAILED
    assert stored.failure_reason == "chain_timeout"


@pytest.mark.asyncio
async def test_duplicate_token_id_keeps_second_credential_pending(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r6", balance="2.00")
    hash_a = "0x" + "8" * 64
    hash_b = "0x" + "9" * 64
    id_a = await _pending_credential(session_maker, ledger, "issuer-r6", hash_a)
    id_b = await _pending_credential(session_maker, ledger, "issuer-r6", hash_b)
    relayer = ScriptedRelayer({hash_a: TxConfirmed(token_id="55"), hash_b: TxConfirmed(token_id="55")})

    result = await ConfirmationReconciler(session_maker, ledger, relayer).run()

    assert result.confirmed == 1
    assert result.errors == 1
    async with session_maker() as session:
        assert (await get_credential(session, id_a)).status == CredentialStatus.CONFIRMED
        assert (await get_credential(session, id_b)).status == CredentialStatus.PENDING


@pytest.mark.asyncio
async def test_compensator_refunds_pipeline_failures_exactly_once(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r7", balance="1.00")
    async with session_maker() as session:
        credential = await submit_mint_request(
            session,
            ledger,
            "issuer-r7",
            MintRequest(recipient_wallet_address=RECIPIENT, metadata={"name": "upload-fails"}),
        )
    async with session_maker() as session:
        await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.QUEUED,
            new_status=CredentialStatus.FAILED,
            failure_reason="upload_failed: gateway unavailable",
        )
        await session.commit()

    async with session_maker() as session:
        assert [c.id for c in await find_unrefunded_failures(session)] == [credential.id]

    compensator = RefundCompensator(session_maker, ledger)
    first = await compensator.run()
    second = await compensator.run()

    assert (first.checked, first.refunded) == (1, 1)
    assert (second.checked, second.refunded) == (0, 0)
    async with session_maker() as session:
        assert await ledger.get_balance(session, "issuer-r7") == Decimal("1.00")
        assert await ledger.verify_balance(session, "issuer-r7") is True


@pytest.mark.asyncio
async def test_mint_racing_a_rejection_refund_sees_the_refunded_balance(session_maker):
    ledger = CreditLedger()
    await create_issuer(session_maker, "issuer-r8", balance="1.00")
    tx_hash = "0x" + "b" * 64
    await _pending_credential(session_maker, ledger, "issuer-r8", tx_hash)
    racing = []

    async def _mint_again():
        async with session_maker() as session:
            return await submit_mint_request(
                session,
                ledger,
                "issuer-r8",
                MintRequest(recipient_wallet_address=RECIPIENT, metadata={"name": "retry"}),
            )

    async def _fail_then_race(db, credential_id, **kwargs):
        updated = await update_status(db, credential_id, **kwargs)
        if kwargs.get("new_status") == CredentialStatus.FAILED:
            racing.append(asyncio.create_task(_mint_again()))
            await asyncio.sleep(0.05)
        return updated

    relayer = ScriptedRelayer({tx_hash: TxRejected("execution reverted")})
    with patch("services.reconciler.update_status", new=_fail_then_race):
        result = await ConfirmationReconciler(session_maker, ledger, relayer, compensate=False).run()

    retried = await racing[0]
    assert result.failed == 1
    assert result.refunded == 1
    async with session_maker() as session:
        assert (await get_credential(session, retried.id)).status == CredentialStatus.QUEUED
        assert await ledger.get_balance(session, "issuer-r8") == Decimal("0.00")
        assert await ledger.verify_balance(session, "issuer-r8") is True

from datetime import datetime, timedelta, timezone

import pytest

from conftest import create_issuer
from models.credential import CredentialStatus
from services.admission import InvalidMintRequestError, MintRequest, submit_mint_request
from services.credentials import (
    CredentialNotFoundError,
    InvalidStatusTransitionError,
    build_credential,
    count_by_status,
    create_credential,
    find_by_status,
    get_credential,
    get_credential_by_token_id,
    list_by_recipient,
    next_batch,
    revoke_credential,
    update_status,
)
from services.credits import CreditLedger

RECIPIENT = "0x1234567890abcdef1234567890ABCDEF12345678"


@pytest.mark.asyncio
async def test_admission_creates_queued_credential_without_references(session_maker):
    await create_issuer(session_maker, "issuer-1", balance="2.00")
    ledger = CreditLedger()

    async with session_maker() as session:
        credential = await submit_mint_request(
            session,
            ledger,
            "issuer-1",
            MintRequest(recipient_wallet_address=RECIPIENT, metadata={"degree": "BSc"}, issuer_ref_id="EMP-1"),
        )

    async with session_maker() as session:
        stored = await get_credential(session, credential.id)
        deduction = await ledger.find_deduction(session, credential.id)
        assert await ledger.get_balance(session, "issuer-1") == 1

    assert stored.status == CredentialStatus.QUEUED
    assert stored.tx_hash is None
    assert stored.storage_ref is None
    assert stored.token_id is None
    assert stored.issuer_ref_id == "EMP-1"
    assert deduction is not None
    assert deduction.amount == -1


@pytest.mark.asyncio
async def test_admission_rejects_malformed_requests_before_charging(session_maker):
    await create_issuer(session_maker, "issuer-2", balance="2.00")
    ledger = CreditLedger()

    async with session_maker() as session:
        with pytest.raises(InvalidMintRequestError):
            await submit_mint_request(
                session, ledger, "issuer-2", MintRequest(recipient_wallet_address="0x123", metadata={"a": 1})
            )
        with pytest.raises(InvalidMintRequestError):
            await submit_mint_request(
                session, ledger, "issuer-2", MintRequest(recipient_wallet_address=RECIPIENT, metadata={})
            )
        assert await ledger.get_balance(session, "issuer-2") == 2
        assert await find_by_status(session, CredentialStatus.QUEUED) == []


@pytest.mark.asyncio
async def test_update_status_is_compare_and_set(session_maker):
    await create_issuer(session_maker, "issuer-3")
    async with session_maker() as session:
        credential = await create_credential(
            session, issuer_id="issuer-3", recipient_wallet_address=RECIPIENT, metadata={"x": 1}
        )

    async with session_maker() as session:
        assert await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.QUEUED,
            new_status=CredentialStatus.PENDING,
            tx_hash="0x" + "1" * 64,
            storage_ref="ar-1",
        )
        await session.commit()

    async with session_maker() as session:
        assert not await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.QUEUED,
            new_status=CredentialStatus.FAILED,
            failure_reason="late writer",
        )
        await session.commit()
        stored = await get_credential(session, credential.id)
        assert stored.status == CredentialStatus.PENDING
        assert stored.failure_reason is None


@pytest.mark.asyncio
async def test_transitions_outside_the_lifecycle_are_refused(session_maker):
    await create_issuer(session_maker, "issuer-4")
    async with session_maker() as session:
        credential = await create_credential(
            session, issuer_id="issuer-4", recipient_wallet_address=RECIPIENT, metadata={"x": 1}
        )

    async with session_maker() as session:
        with pytest.raises(InvalidStatusTransitionError):
            await update_status(
                session,
                credential.id,
                expected_status=CredentialStatus.QUEUED,
                new_status=CredentialStatus.CONFIRMED,
                token_id="7",
            )
        with pytest.raises(InvalidStatusTransitionError):
            await update_status(
                session,
                credential.id,
                expected_status=CredentialStatus.QUEUED,
                new_status=CredentialStatus.PENDING,
            )
        with pytest.raises(InvalidStatusTransitionError):
            await update_status(
                session,
                credential.id,
                expected_status=CredentialStatus.FAILED,
                new_status=CredentialStatus.PENDING,
                tx_hash="0x" + "2" * 64,
            )
        with pytest.raises(ValueError):
            await update_status(
                session,
                credential.id,
                expected_status=CredentialStatus.QUEUED,
                new_status=CredentialStatus.FAILED,
                issuer_id="someone-else",
            )


@pytest.mark.asyncio
async def test_next_batch_pages_oldest_first_with_cursor(session_maker):
    await create_issuer(session_maker, "issuer-5")
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    ids = []
    async with session_maker() as session:
        for index in range(5):
            credential = build_credential(
                issuer_id="issuer-5",
                recipient_wallet_address=RECIPIENT,
                metadata={"n": index},
            )
            credential.created_at = base + timedelta(seconds=5 - index)
            session.add(credential)
            ids.append(credential.id)
        await session.commit()
    expected_order = list(reversed(ids))

    async with session_maker() as session:
        first, cursor = await next_batch(session, CredentialStatus.QUEUED, None, 2)
        second, cursor = await next_batch(session, CredentialStatus.QUEUED, cursor, 2)
        third, cursor = await next_batch(session, CredentialStatus.QUEUED, cursor, 2)
        empty, final_cursor = await next_batch(session, CredentialStatus.QUEUED, cursor, 2)

    assert [c.id for c in first + second + third] == expected_order
    assert empty == []
    assert final_cursor == cursor


@pytest.mark.asyncio
async def test_revoke_keeps_token_and_verification_shows_revocation(session_maker):
    await create_issuer(session_maker, "issuer-6")
    async with session_maker() as session:
        credential = await create_credential(
            session, issuer_id="issuer-6", recipient_wallet_address=RECIPIENT, metadata={"x": 1}
        )
    async with session_maker() as session:
        await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.QUEUED,
            new_status=CredentialStatus.PENDING,
            tx_hash="0x" + "3" * 64,
        )
        await update_status(
            session,
            credential.id,
            expected_status=CredentialStatus.PENDING,
            new_status=CredentialStatus.CONFIRMED,
            token_id="42",
            confirmed_at=datetime.now(timezone.utc),
        )
        await session.commit()

    async with session_maker() as session:
        revoked = await revoke_credential(session, credential.id, reason="issued in error")
        assert revoked.status == CredentialStatus.REVOKED
        assert revoked.token_id == "42"
        assert revoked.revoked_at is not None

    async with session_maker() as session:
        verified = await get_credential_by_token_id(session, "42")
        assert verified.id == credential.id
        assert verified.status == CredentialStatus.REVOKED
        with pytest.raises(InvalidStatusTransitionError):
            await revoke_credential(session, credential.id)
        with pytest.raises(CredentialNotFoundError):
            await revoke_credential(session, "missing-credential")
        holder_view = await list_by_recipient(session, RECIPIENT.lower())
        assert [c.id for c in holder_view] == [credential.id]
        counts = await count_by_status(session)
        assert counts[CredentialStatus.REVOKED] == 1
        assert counts[CredentialStatus.QUEUED] == 0

"""Minting pipeline: drain QUEUED credentials into PENDING or FAILED in committed chunks."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.ext.asyncio import async_sessionmaker

from config import settings
from database import async_session_maker, engine
from models.credential import Credential, CredentialStatus
from services.capabilities import (
    ChainRelayer,
    StorageUploader,
    SubmitFailed,
    UploadFailed,
    get_chain_relayer,
    get_storage_uploader,
)
from services.credentials import BatchCursor, next_batch, update_status
from services.refunds import run_refund_compensation
from services.run_lock import RunLock, single_flight

logger = logging.getLogger(__name__)

MINTING_LOCK_NAME = "minting-pipeline"

ResultT = TypeVar("ResultT")


class MintingBatchWriteError(Exception):
    """A chunk commit failed; none of its credentials changed."""

    def __init__(self, credential_ids: List[str], cause: Exception):
        self.credential_ids = credential_ids
        self.cause = cause
        super().__init__(f"Failed to write minting chunk of {len(credential_ids)} credentials: {cause}")


@dataclass
class MintOutcome:
    credential_id: str
    status: str
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MintingRunResult:
    chunks: int = 0
    read: int = 0
    pending: int = 0
    failed: int = 0
    skipped: int = 0
    lock_acquired: bool = True
    lock_lost: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _failed(credential_id: str, reason: str, **fields: Any) -> MintOutcome:
    fields["failure_reason"] = reason[:500]
    return MintOutcome(credential_id=credential_id, status=CredentialStatus.FAILED, fields=fields)


class MintingPipeline:
    def __init__(
        self,
        session_maker: async_sessionmaker,
        uploader: StorageUploader,
        relayer: ChainRelayer,
        *,
        batch_size: Optional[int] = None,
        max_chunks: Optional[int] = None,
        upload_timeout: Optional[float] = None,
        submit_timeout: Optional[float] = None,
        lock_ttl_seconds: Optional[int] = None,
    ) -> None:
        self.session_maker = session_maker
        self.uploader = uploader
        self.relayer = relayer
        self.batch_size = max(int(batch_size or settings.MINTING_BATCH_SIZE), 1)
        self.max_chunks = max(int(max_chunks or settings.MINTING_MAX_CHUNKS_PER_RUN), 1)
        self.upload_timeout = float(upload_timeout or settings.STORAGE_TIMEOUT_SECONDS)
        self.submit_timeout = float(submit_timeout or settings.CHAIN_TIMEOUT_SECONDS)
        # The lock is renewed before every item, so one TTL must outlast one item.
        per_item_seconds = math.ceil(self.upload_timeout + self.submit_timeout) + 1
        self.lock_ttl_seconds = max(int(lock_ttl_seconds or 600), per_item_seconds)

    async def run(self) -> MintingRunResult:
        async with single_flight(MINTING_LOCK_NAME, ttl_seconds=self.lock_ttl_seconds) as lock:
            if not lock:
                logger.info("Minting run skipped: another run holds the lock")
                return MintingRunResult(lock_acquired=False)
            return await self._drain(lock)

    async def _drain(self, lock: RunLock) -> MintingRunResult:
        result = MintingRunResult()
        cursor: Optional[BatchCursor] = None
        for _ in range(self.max_chunks):
            async with self.session_maker() as db:
                items, next_cursor = await next_batch(db, CredentialStatus.QUEUED, cursor, self.batch_size)
            if not items:
                break

            outcomes: List[MintOutcome] = []
            for credential in items:
                if not await lock.extend():
                    result.lock_lost = True
                    break
                outcomes.append(await self.process(credential))
            written = await self._write_chunk(outcomes) if outcomes else []

            result.chunks += 1
            result.read += len(items)
            for outcome in written:
                if outcome.status == CredentialStatus.PENDING:
                    result.pending += 1
                else:
                    result.failed += 1
            result.skipped += len(outcomes) - len(written)

            if result.lock_lost:
                logger.warning(
                    "Minting run stopped after losing its lock; %s credentials left QUEUED",
                    len(items) - len(outcomes),
                )
                break
            cursor = next_cursor
            if len(items) < self.batch_size:
                break

        if result.read:
            logger.info(
                "Minting run: chunks=%s read=%s pending=%s failed=%s skipped=%s",
                result.chunks,
                result.read,
                result.pending,
                result.failed,
                result.skipped,
            )
        return result

    async def process(self, credential: Credential) -> MintOutcome:
        """Upload metadata and submit the mint for one credential; never raises."""
        recipient = (credential.recipient_wallet_address or "").strip()
        if not recipient:
            return _failed(credential.id, "missing_recipient")
        metadata = credential.metadata_json
        if not metadata:
            return _failed(credential.id, "missing_metadata")

        upload = await self._bounded(
            f"Upload for credential {credential.id}",
            lambda: self.uploader.upload(metadata),
            self.upload_timeout,
            UploadFailed,
        )
        if isinstance(upload, UploadFailed):
            logger.warning("Credential %s upload failed: %s", credential.id, upload.reason)
            return _failed(credential.id, f"upload_failed: {upload.reason}")

        submit = await self._bounded(
            f"Mint submission for credential {credential.id}",
            lambda: self.relayer.submit_mint(recipient, upload.content_ref),
            self.submit_timeout,
            SubmitFailed,
        )
        if isinstance(submit, SubmitFailed):
            logger.warning("Credential %s submission failed: %s", credential.id, submit.reason)
            return _failed(
                credential.id,
                f"submit_failed: {submit.reason}",
                storage_ref=upload.content_ref,
            )

        return MintOutcome(
            credential_id=credential.id,
            status=CredentialStatus.PENDING,
            fields={
                "storage_ref": upload.content_ref,
                "tx_hash": submit.tx_hash,
                "submitted_at": datetime.now(timezone.utc),
            },
        )

    async def _bounded(
        self,
        label: str,
        call: Callable[[], Awaitable[ResultT]],
        timeout: float,
        on_failure: Callable[[str], ResultT],
    ) -> ResultT:
        try:
            return await asyncio.wait_for(call(), timeout=timeout)
        except asyncio.TimeoutError:
            return on_failure(f"timed out after {timeout:g}s")
        except Exception as exc:
            logger.warning("%s raised %s", label, exc.__class__.__name__)
            return on_failure(str(exc) or exc.__class__.__name__)

    async def _write_chunk(self, outcomes: List[MintOutcome]) -> List[MintOutcome]:
        written: List[MintOutcome] = []
        async with self.session_maker() as db:
            try:
                for outcome in outcomes:
                    updated = await update_status(
                        db,
                        outcome.credential_id,
                        expected_status=CredentialStatus.QUEUED,
                        new_status=outcome.status,
                        **outcome.fields,
                    )
                    if updated:
                        written.append(outcome)
                await db.commit()
            except Exception as exc:
                await db.rollback()
                logger.exception("Minting chunk write failed; %s credentials stay QUEUED", len(outcomes))
                raise MintingBatchWriteError([o.credential_id for o in outcomes], exc) from exc
        return written


def build_minting_pipeline(session_maker: Optional[async_sessionmaker] = None) -> MintingPipeline:
    return MintingPipeline(session_maker or async_session_maker, get_storage_uploader(), get_chain_relayer())


async def run_minting_pass(session_maker: Optional[async_sessionmaker] = None) -> MintingRunResult:
    """One pipeline run, followed by compensating refunds when anything failed."""
    result = await build_minting_pipeline(session_maker).run()
    if result.failed:
        await run_refund_compensation(session_maker)
    return result


async def _run_minting_job_async() -> Dict[str, Any]:
    try:
        result = await run_minting_pass()
    finally:
        await engine.dispose()
    return result.as_dict()


def run_minting_job() -> Dict[str, Any]:
    """RQ worker entrypoint for an on-demand minting run."""
    return asyncio.run(_run_minting_job_async())

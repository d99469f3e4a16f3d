"""Administrative triggers for background minting and reconciliation runs."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from routers.auth_scope import AuthContext, require_admin
from services.job_queue import (
    enqueue_minting_run,
    enqueue_reconciliation_run,
    enqueue_refund_compensation,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _queued(job, kind: str):
    return {
        "job_id": job.id,
        "job_type": kind,
        "status": "queued",
        "message": f"{kind.capitalize()} run enqueued",
    }


@router.post("/mint", status_code=202)
async def trigger_minting_run(auth: AuthContext = Depends(require_admin)):
    try:
        job = enqueue_minting_run()
    except Exception as exc:
        logger.warning("Minting run enqueue failed: %s", exc)
        raise HTTPException(status_code=503, detail="Job queue is unavailable.") from exc
    logger.info("Minting run %s enqueued by %s", job.id, auth.issuer_id)
    return _queued(job, "minting")


@router.post("/reconcile", status_code=202)
async def trigger_reconciliation_run(auth: AuthContext = Depends(require_admin)):
    try:
        job = enqueue_reconciliation_run()
    except Exception as exc:
        logger.warning("Reconciliation run enqueue failed: %s", exc)
        raise HTTPException(status_code=503, detail="Job queue is unavailable.") from exc
    logger.info("Reconciliation run %s enqueued by %s", job.id, auth.issuer_id)
    return _queued(job, "reconciliation")


@router.post("/refunds", status_code=202)
async def trigger_refund_compensation(auth: AuthContext = Depends(require_admin)):
    try:
        job = enqueue_refund_compensation()
    except Exception as exc:
        logger.warning("Refund compensation enqueue failed: %s", exc)
        raise HTTPException(status_code=503, detail="Job queue is unavailable.") from exc
    logger.info("Refund compensation %s enqueued by %s", job.id, auth.issuer_id)
    return _queued(job, "refund")

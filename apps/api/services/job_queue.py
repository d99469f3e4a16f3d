"""Durable background job queue helpers (Redis/RQ) for minting and reconciliation runs."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


MINTING_QUEUE_NAME = "minting_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_minting_queue() -> Queue:
    """Return the queue shared by minting, reconciliation and refund jobs."""
    return Queue(
        name=MINTING_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_minting_run() -> Job:
    """Enqueue an on-demand minting pipeline run."""
    queue = get_minting_queue()
    return queue.enqueue(
        "services.minting.run_minting_job",
        retry=Retry(max=3, interval=[5, 30, 120]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_reconciliation_run() -> Job:
    """Enqueue an on-demand confirmation reconciliation pass."""
    queue = get_minting_queue()
    return queue.enqueue(
        "services.reconciler.run_reconciliation_job",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_refund_compensation() -> Job:
    """Enqueue a sweep issuing refunds owed to failed credentials."""
    queue = get_minting_queue()
    return queue.enqueue(
        "services.refunds.run_refund_compensation_job",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )

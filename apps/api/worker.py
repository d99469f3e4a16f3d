"""RQ worker process entrypoint for minting, reconciliation and refund jobs."""

import logging

from rq import Worker

from config import settings
from services.job_queue import MINTING_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    redis_conn = get_redis_connection()
    worker = Worker([MINTING_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()

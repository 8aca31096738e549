"""
Worker Entry Point

Starts the Redis Queue (RQ) worker.
"""

from redis import Redis
from rq import Queue, Worker

from kindred.core.config import settings
from kindred.core.logging import get_logger, setup_logging

logger = get_logger(__name__)

listen = settings.worker_queues


def main() -> None:
    setup_logging()

    conn = Redis.from_url(settings.redis_url)
    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    logger.info(f"Worker started. Listening on: {listen}")
    worker.work()


if __name__ == "__main__":
    main()

"""
Job queue infrastructure

Thin wrapper over RQ. Jobs are referenced by dotted path so the web process
never imports worker-only code.
"""

from typing import Any, Optional

from redis import Redis
from rq import Queue
from rq.job import Job

from kindred.core.logging import get_logger

logger = get_logger(__name__)


class JobQueue:
    """Named RQ queue with job-id based de-duplication"""

    def __init__(self, queue: Queue):
        self.queue = queue

    @property
    def name(self) -> str:
        return self.queue.name

    def enqueue(self, func_path: str, *args: Any, job_id: Optional[str] = None, **kwargs: Any) -> str:
        if job_id is not None and self._exists(job_id):
            logger.info(f"Job {job_id} already queued on {self.name}")
            return job_id
        job = self.queue.enqueue(func_path, *args, job_id=job_id, **kwargs)
        logger.info(f"Enqueued {func_path} as {job.id} on {self.name}")
        return job.id

    def _exists(self, job_id: str) -> bool:
        return bool(self.queue.connection.exists(Job.key_for(job_id)))


class QueueFactory:
    """Build queues from a shared sync redis connection"""

    @staticmethod
    def get_queue(connection: Redis, name: str = "default") -> JobQueue:
        return JobQueue(Queue(name, connection=connection))

"""
Worker pool that drains the ingestion queue through the ingestion pipeline.
"""

import signal
import sys
import threading
from typing import List, Optional

from ..models.context import RequestContext
from ..models.core import IngestionJob, IngestResult
from ..utils.errors import FatalProviderError, InvalidContentError, NotFoundError
from ..utils.logging_config import get_logger
from ..utils.sqs_queue import SqsQueueError
from .ingestion import IngestionPipeline

logger = get_logger(__name__)

# Failures that will not go away on redelivery
FATAL_JOB_ERRORS = (FatalProviderError, InvalidContentError, NotFoundError)


class IngestionWorkerPool:
    """N threads, each receiving one batch at a time and processing it to completion.

    A worker stays busy for the whole summarization retry loop of its job.
    """

    def __init__(self, pipeline: IngestionPipeline, job_queue, concurrency: int = 1, wait_seconds: Optional[int] = None,
                 max_messages: int = 1):
        """
        Initialize the worker pool.

        Args:
            pipeline: Ingestion pipeline used for every job
            job_queue: Queue with ``receive``, ``ack`` and ``fail``
            concurrency: Number of worker threads
            wait_seconds: Long-poll wait per receive call (queue default if None)
            max_messages: Jobs requested per receive call
        """
        self.pipeline = pipeline
        self.queue = job_queue
        self.concurrency = max(1, concurrency)
        self.wait_seconds = wait_seconds
        self.max_messages = max_messages
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def process_job(self, job: IngestionJob) -> Optional[IngestResult]:
        """
        Run one job and settle it on the queue.

        Returns:
            The ingest result, or None when the job failed
        """
        ctx = RequestContext(owner_id=job.owner_id, job_id=job.job_id, attempt=job.attempt)
        logger.info(f'[{job.job_id}] Processing ingestion job (delivery {job.attempt})')

        try:
            result = self.pipeline.ingest(job.owner_id, job.raw_text, job.metadata, ctx=ctx)
        except FATAL_JOB_ERRORS as e:
            logger.error(f'[{job.job_id}] Ingestion job failed permanently: {e}')
            self.queue.fail(job, e, fatal=True)
            return None
        except Exception as e:
            logger.exception(f'[{job.job_id}] Ingestion job failed, will be redelivered: {e}')
            self.queue.fail(job, e, fatal=False)
            return None

        self.queue.ack(job)
        logger.info(f'[{job.job_id}] Ingestion job done: memory {result.memory_id} (deduplicated={result.deduplicated})')
        return result

    def run_once(self) -> int:
        """Receive and process a single batch. Returns the number of jobs handled."""
        jobs = self.queue.receive(max_messages=self.max_messages, wait_seconds=self.wait_seconds)
        for job in jobs:
            self.process_job(job)
        return len(jobs)

    def _worker_loop(self, worker_index: int) -> None:
        logger.debug(f'Ingestion worker {worker_index} started')
        while not self._stop.is_set():
            try:
                self.run_once()
            except SqsQueueError as e:
                logger.error(f'Ingestion worker {worker_index} queue error: {e}')
                self._stop.wait(5)
        logger.debug(f'Ingestion worker {worker_index} stopped')

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.concurrency):
            thread = threading.Thread(target=self._worker_loop, args=(index, ), name=f'ingestion-worker-{index}', daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f'Started {self.concurrency} ingestion worker(s)')

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info('Ingestion workers stopped')

    def wait(self) -> None:
        """Block until stop() is called from another thread or a signal handler."""
        while not self._stop.wait(1.0):
            pass


def main() -> int:
    """Start the worker pool against the configured queue and run until interrupted."""
    from ..utils.config import config
    from .container import build_services

    services = build_services(config)
    # The in-process queue already comes with a running local pool
    pool = services.worker_pool or IngestionWorkerPool(services.ingestion,
                                                       services.queue,
                                                       concurrency=config.queue.concurrency,
                                                       max_messages=config.queue.max_messages)

    def _shutdown(signum, _frame):
        logger.info(f'Received signal {signum}, stopping ingestion workers')
        pool.stop(timeout=30)

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    pool.start()
    pool.wait()
    return 0


if __name__ == '__main__':
    sys.exit(main())

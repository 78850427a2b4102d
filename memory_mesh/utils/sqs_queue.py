"""
At-least-once ingestion queues: Amazon SQS for deployments and an in-process queue for local runs.
"""

import json
import queue
import threading
import uuid
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..models.core import IngestionJob
from .config import QueueConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class SqsQueueError(Exception):
    """Custom exception for ingestion queue errors."""
    pass


def _job_body(job_id: str, owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {'job_id': job_id, 'owner_id': owner_id, 'raw_text': raw_text, 'metadata': metadata or {}}


class SqsIngestionQueue:
    """Ingestion jobs carried as JSON messages on an SQS queue.

    Delivery count comes from ``ApproximateReceiveCount``. Fatal jobs go to the
    dead-letter queue when one is configured; everything else that is not
    acknowledged becomes visible again after the visibility timeout.
    """

    def __init__(self, config: QueueConfig, client: Any = None):
        if not config.queue_url:
            raise SqsQueueError('INGESTION_QUEUE_URL is not configured')
        self.config = config
        self.queue_url = config.queue_url
        self.dead_letter_queue_url = config.dead_letter_queue_url or None
        self.sqs = client or boto3.client('sqs', region_name=config.region)
        logger.info(f'Initialized SQS ingestion queue: {self.queue_url}')

    def enqueue(self, owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        """
        Publish an ingestion job.

        Returns:
            The job id
        """
        job_id = str(uuid.uuid4())
        try:
            self.sqs.send_message(QueueUrl=self.queue_url, MessageBody=json.dumps(_job_body(job_id, owner_id, raw_text, metadata)))
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Failed to enqueue ingestion job for owner {owner_id}: {e}')
            raise SqsQueueError(f'Failed to enqueue job: {e}')
        logger.debug(f'Enqueued ingestion job {job_id} for owner {owner_id}')
        return job_id

    def receive(self, max_messages: Optional[int] = None, wait_seconds: Optional[int] = None) -> List[IngestionJob]:
        """Long-poll for jobs. Malformed messages are dead-lettered or dropped."""
        try:
            response = self.sqs.receive_message(QueueUrl=self.queue_url,
                                                MaxNumberOfMessages=max_messages or self.config.max_messages,
                                                WaitTimeSeconds=self.config.wait_time_seconds if wait_seconds is None else wait_seconds,
                                                VisibilityTimeout=self.config.visibility_timeout,
                                                AttributeNames=['ApproximateReceiveCount'])
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Failed to receive ingestion jobs: {e}')
            raise SqsQueueError(f'Failed to receive jobs: {e}')

        jobs = []
        for message in response.get('Messages', []):
            receipt = message['ReceiptHandle']
            try:
                body = json.loads(message['Body'])
                jobs.append(
                    IngestionJob(job_id=body.get('job_id') or message.get('MessageId') or str(uuid.uuid4()),
                                 owner_id=body['owner_id'],
                                 raw_text=body['raw_text'],
                                 metadata=body.get('metadata') or {},
                                 attempt=int(message.get('Attributes', {}).get('ApproximateReceiveCount', 1)),
                                 receipt=receipt))
            except (json.JSONDecodeError, KeyError, TypeError) as e:
                logger.error(f"Discarding malformed ingestion message {message.get('MessageId')}: {e}")
                self._dead_letter(message['Body'], str(e), receipt)
        return jobs

    def ack(self, job: IngestionJob) -> None:
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=job.receipt)
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Failed to acknowledge job {job.job_id}: {e}')
            raise SqsQueueError(f'Failed to acknowledge job: {e}')

    def fail(self, job: IngestionJob, error: Exception, fatal: bool) -> None:
        """
        Record a failed job.

        Args:
            job: The failed job
            error: The failure
            fatal: Fatal jobs are dead-lettered; others are left for redelivery
        """
        if not fatal:
            logger.warning(f'Job {job.job_id} failed on delivery {job.attempt}; leaving for redelivery: {error}')
            return
        body = json.dumps(_job_body(job.job_id, job.owner_id, job.raw_text, job.metadata))
        self._dead_letter(body, str(error), job.receipt)

    def _dead_letter(self, body: str, reason: str, receipt: str) -> None:
        if not self.dead_letter_queue_url:
            logger.error(f'No dead-letter queue configured; message will be redelivered: {reason}')
            return
        try:
            self.sqs.send_message(QueueUrl=self.dead_letter_queue_url,
                                  MessageBody=body,
                                  MessageAttributes={'error': {
                                      'DataType': 'String',
                                      'StringValue': reason[:1000] or 'unknown'
                                  }})
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt)
        except (ClientError, BotoCoreError) as e:
            logger.error(f'Failed to dead-letter message: {e}')
            raise SqsQueueError(f'Failed to dead-letter message: {e}')

    def health_check(self) -> bool:
        try:
            self.sqs.get_queue_attributes(QueueUrl=self.queue_url, AttributeNames=['ApproximateNumberOfMessages'])
            return True
        except Exception as e:
            logger.error(f'SQS health check failed: {e}')
            return False


class InMemoryIngestionQueue:
    """Process-local queue with the same at-least-once contract as SqsIngestionQueue.

    Unacknowledged failures are redelivered with an incremented attempt until
    ``max_receives`` is reached, then moved to ``dead_letters``.
    """

    def __init__(self, max_receives: int = 5):
        self.max_receives = max_receives
        self._queue: 'queue.Queue[IngestionJob]' = queue.Queue()
        self._lock = threading.Lock()
        self.dead_letters: List[IngestionJob] = []
        self.acked: List[str] = []

    def enqueue(self, owner_id: str, raw_text: str, metadata: Optional[Dict[str, Any]] = None) -> str:
        job_id = str(uuid.uuid4())
        self._queue.put(IngestionJob(job_id=job_id, owner_id=owner_id, raw_text=raw_text, metadata=dict(metadata or {})))
        return job_id

    def receive(self, max_messages: Optional[int] = None, wait_seconds: Optional[int] = None) -> List[IngestionJob]:
        jobs = []
        try:
            jobs.append(self._queue.get(timeout=wait_seconds if wait_seconds else 0.1))
            while len(jobs) < (max_messages or 1):
                jobs.append(self._queue.get_nowait())
        except queue.Empty:
            pass
        return jobs

    def ack(self, job: IngestionJob) -> None:
        with self._lock:
            self.acked.append(job.job_id)

    def fail(self, job: IngestionJob, error: Exception, fatal: bool) -> None:
        if fatal or job.attempt >= self.max_receives:
            logger.error(f'Job {job.job_id} dead-lettered after {job.attempt} deliveries: {error}')
            with self._lock:
                self.dead_letters.append(job)
            return
        logger.warning(f'Job {job.job_id} failed on delivery {job.attempt}; requeueing: {error}')
        self._queue.put(
            IngestionJob(job_id=job.job_id,
                         owner_id=job.owner_id,
                         raw_text=job.raw_text,
                         metadata=job.metadata,
                         attempt=job.attempt + 1))

    def pending(self) -> int:
        return self._queue.qsize()

    def health_check(self) -> bool:
        return True

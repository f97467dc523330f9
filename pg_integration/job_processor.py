"""
Background Job Processor

One bounded FIFO queue of job ids and one worker thread draining it. The
worker runs jobs strictly one at a time; a full queue pushes back on
submitters for a bounded wait and then rejects the job.
"""

import json
import logging
import queue
import threading
from typing import Any, Dict, Optional

from pg_integration.data_sync import DataSyncService
from pg_integration.data_transfer import DataTransferService
from pg_integration.exceptions import QueueFullError
from pg_integration.job_models import Job, JobStatus, JobType, restore_record
from pg_integration.job_store import JobStore
from pg_integration.models import MongoOptions, SyncOptions, TransferOptions
from pg_integration.mongo_transfer import MongoTransferService

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_CAPACITY = 1000
DEFAULT_ENQUEUE_TIMEOUT = 5.0

# How often the idle worker re-checks for shutdown
POLL_INTERVAL_SECONDS = 0.5

CONNECTING_MESSAGES = {
    JobType.TRANSFER: "Connecting to source database...",
    JobType.SYNC: "Connecting to source database...",
    JobType.BULK_INSERT: "Preparing records...",
    JobType.MONGO_TRANSFER: "Connecting to MongoDB...",
    JobType.MONGO_TRANSFER_AS_JSON: "Connecting to MongoDB...",
}


class BackgroundJobProcessor:
    """Queue plus single worker thread that executes submitted jobs."""

    def __init__(
        self,
        store: JobStore,
        capacity: int = DEFAULT_QUEUE_CAPACITY,
        enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT,
        transfer_service: Optional[DataTransferService] = None,
        sync_service: Optional[DataSyncService] = None,
        mongo_service: Optional[MongoTransferService] = None,
    ):
        """
        Args:
            store: Job store shared with the submitting side
            capacity: Maximum number of queued job ids
            enqueue_timeout: Seconds a submitter waits on a full queue
            transfer_service: Runs Transfer and BulkInsert jobs
            sync_service: Runs Sync jobs
            mongo_service: Runs MongoTransfer and MongoTransferAsJson jobs
        """
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self.store = store
        self.capacity = capacity
        self.enqueue_timeout = enqueue_timeout
        self.transfer_service = transfer_service or DataTransferService()
        self.sync_service = sync_service or DataSyncService()
        self.mongo_service = mongo_service or MongoTransferService()
        self.job_queue: queue.Queue = queue.Queue(maxsize=capacity)
        self.cancel_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def enqueue(self, job_id: str) -> None:
        """
        Queue a job for the worker.

        Raises:
            QueueFullError: If the queue stays full for ``enqueue_timeout`` seconds
        """
        try:
            self.job_queue.put(job_id, timeout=self.enqueue_timeout)
        except queue.Full:
            raise QueueFullError(
                f"Job queue is full ({self.capacity} jobs); try again later"
            ) from None
        logger.info(f"Queued job {job_id} ({self.job_queue.qsize()} waiting)")

    def start(self) -> None:
        if self.is_running:
            return
        self.cancel_event.clear()
        self._thread = threading.Thread(target=self._worker_loop, name='job-processor', daemon=True)
        self._thread.start()
        logger.info("Background job processor started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Stop the worker.

        The running pipeline sees the cancel event at its next row or batch
        boundary and fails with a cancellation error. Queued jobs stay Pending.
        """
        self.cancel_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Job processor did not stop within the timeout")
            else:
                self._thread = None
        logger.info("Background job processor stopped")

    def _worker_loop(self) -> None:
        while not self.cancel_event.is_set():
            try:
                job_id = self.job_queue.get(timeout=POLL_INTERVAL_SECONDS)
            except queue.Empty:
                continue
            try:
                self.process_job(job_id)
            except Exception as e:
                logger.error(f"Unexpected error processing job {job_id}: {e}", exc_info=True)
            finally:
                self.job_queue.task_done()

    def process_job(self, job_id: str) -> None:
        """
        Run one job to completion.

        Jobs that are no longer Pending (cancelled while queued, or already
        picked up) are skipped. Pipeline failures and unexpected errors both
        end the job as Failed.
        """
        job = self.store.get(job_id)
        if job is None:
            logger.warning(f"Job {job_id} not found, skipping")
            return
        if job.status != JobStatus.PENDING:
            logger.info(f"Job {job_id} is {job.status.value}, skipping")
            return
        if not self.store.mark_started(job_id):
            logger.info(f"Job {job_id} left Pending before it could start, skipping")
            return

        logger.info(f"Processing job {job_id} ({job.type.value})")
        try:
            self.store.update_progress(job_id, 10, CONNECTING_MESSAGES[job.type])
            result = self._dispatch(job)
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=True)
            self.store.mark_failed(job_id, str(e))
            return

        if result.success:
            self.store.mark_completed(job_id, json.dumps(result.to_dict(), default=str))
            logger.info(f"Job {job_id} completed")
        else:
            self.store.mark_failed(job_id, result.error_message or "Job failed")
            logger.warning(f"Job {job_id} failed: {result.error_message}")

    def _dispatch(self, job: Job):
        request: Dict[str, Any] = job.request

        def progress(percent: int, message: str) -> None:
            self.store.update_progress(job.id, percent, message)

        if job.type == JobType.TRANSFER:
            return self.transfer_service.transfer_data(
                request['source_connection_string'],
                request['source_query'],
                request['target_connection_string'],
                request['target_table'],
                TransferOptions.from_dict(request.get('options')),
                self.cancel_event,
                progress,
            )
        if job.type == JobType.BULK_INSERT:
            return self.transfer_service.bulk_insert(
                request['connection_string'],
                request['table_name'],
                [restore_record(record) for record in request.get('records') or []],
                TransferOptions.from_dict(request.get('options')),
                self.cancel_event,
                progress,
            )
        if job.type == JobType.SYNC:
            return self.sync_service.sync_data(
                request['source_connection_string'],
                request['source_query'],
                request['target_connection_string'],
                request['target_table'],
                request.get('key_columns'),
                SyncOptions.from_dict(request.get('options')),
                self.cancel_event,
                progress,
            )
        if job.type in (JobType.MONGO_TRANSFER, JobType.MONGO_TRANSFER_AS_JSON):
            transfer = (
                self.mongo_service.transfer_as_json
                if job.type == JobType.MONGO_TRANSFER_AS_JSON
                else self.mongo_service.transfer
            )
            return transfer(
                request['mongo_connection_string'],
                request['database'],
                request['collection'],
                request['target_connection_string'],
                request['target_table'],
                filter_json=request.get('filter_json'),
                pipeline_json=request.get('pipeline_json'),
                options=MongoOptions.from_dict(request.get('options')),
                cancel_event=self.cancel_event,
                progress=progress,
            )
        raise ValueError(f"Unsupported job type: {job.type}")

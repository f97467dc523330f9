"""
Job Service

Front door of the job orchestrator. Requests are validated synchronously (a
rejected request never becomes a job), persisted as Pending and handed to the
background processor. Callers poll with ``get_status``.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pg_integration.config import Settings, load_settings
from pg_integration.exceptions import JobNotFoundError, QueueFullError, ValidationError
from pg_integration.identifiers import validate_identifiers
from pg_integration.job_models import (
    Job,
    JobStatus,
    JobStatusView,
    JobType,
    dump_payload,
    storable_record,
    utc_now,
)
from pg_integration.job_processor import BackgroundJobProcessor
from pg_integration.job_store import DEFAULT_LIST_LIMIT, DEFAULT_STATUS_LIMIT, JobStore, create_job_store
from pg_integration.models import MongoOptions, SyncOptions, TransferOptions
from pg_integration.mongo_transfer import parse_filter, parse_pipeline

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"


def _require(errors: List[str], **values: Any) -> None:
    for name, value in values.items():
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"{name} is required")


def _mapping_errors(mappings: Mapping[str, str], check_sources: bool = True) -> List[str]:
    if not mappings:
        return []
    names = list(mappings.values())
    if check_sources:
        names = list(mappings.keys()) + names
    return validate_identifiers(column_names=names).errors


class JobService:
    """Submit, inspect, cancel and clean up background jobs."""

    def __init__(self, store: JobStore, processor: BackgroundJobProcessor, retention_days: int = 30):
        self.store = store
        self.processor = processor
        self.retention_days = retention_days

    def _submit(self, job_type: JobType, request: Dict[str, Any],
                created_by: Optional[str], correlation_id: Optional[str]) -> str:
        job = Job(
            type=job_type,
            request_payload=dump_payload(request),
            created_by=created_by,
            correlation_id=correlation_id,
        )
        self.store.create(job)
        try:
            self.processor.enqueue(job.id)
        except QueueFullError as e:
            self.store.mark_failed(job.id, str(e))
            logger.error(f"Job {job.id} rejected: {e}")
            raise
        logger.info(f"Submitted {job_type.value} job {job.id}")
        return job.id

    def submit_transfer(
        self,
        source_connection_string: str,
        source_query: str,
        target_connection_string: str,
        target_table: str,
        options: Optional[TransferOptions] = None,
        created_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Queue a relational transfer.

        Returns:
            The new job id

        Raises:
            ValidationError: If the request is invalid; no job is created
            QueueFullError: If the queue is full; the job is stored as Failed
        """
        options = options or TransferOptions()
        errors: List[str] = []
        _require(errors, source_connection_string=source_connection_string, source_query=source_query,
                 target_connection_string=target_connection_string, target_table=target_table)
        errors.extend(validate_identifiers(table_name=target_table).errors if target_table else [])
        errors.extend(_mapping_errors(options.mapping_dict))
        if errors:
            raise ValidationError(errors)

        return self._submit(JobType.TRANSFER, {
            'source_connection_string': source_connection_string,
            'source_query': source_query,
            'target_connection_string': target_connection_string,
            'target_table': target_table,
            'options': options.to_dict(),
        }, created_by, correlation_id)

    def submit_bulk_insert(
        self,
        connection_string: str,
        table_name: str,
        records: Iterable[Mapping[str, Any]],
        options: Optional[TransferOptions] = None,
        created_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Queue a bulk insert of in-memory records.

        Records are stored in the job payload. Values must survive that trip
        unchanged: None, bool, int, float, str, bytes, Decimal (up to 34
        digits), UUID, naive UTC datetimes with millisecond resolution, and
        dicts and lists of those.
        """
        options = options or TransferOptions()
        errors: List[str] = []
        _require(errors, connection_string=connection_string, table_name=table_name)
        errors.extend(validate_identifiers(table_name=table_name).errors if table_name else [])
        stored_records = []
        for record in records or []:
            if not isinstance(record, Mapping):
                errors.append(f"Records must be mappings, got {type(record).__name__}")
                break
            stored_records.append(storable_record(record, errors))
        if stored_records:
            errors.extend(validate_identifiers(column_names=list(stored_records[0].keys())).errors)
        errors.extend(_mapping_errors(options.mapping_dict))
        if errors:
            raise ValidationError(list(dict.fromkeys(errors)))

        return self._submit(JobType.BULK_INSERT, {
            'connection_string': connection_string,
            'table_name': table_name,
            'records': stored_records,
            'options': options.to_dict(),
        }, created_by, correlation_id)

    def submit_sync(
        self,
        source_connection_string: str,
        source_query: str,
        target_connection_string: str,
        target_table: str,
        key_columns: Optional[List[str]] = None,
        options: Optional[SyncOptions] = None,
        created_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """
        Queue a delete-insert sync.

        Empty ``key_columns`` are allowed; the sync then detects them from
        the destination table when it runs.
        """
        options = options or SyncOptions()
        key_columns = list(key_columns or [])
        errors: List[str] = []
        _require(errors, source_connection_string=source_connection_string, source_query=source_query,
                 target_connection_string=target_connection_string, target_table=target_table)
        errors.extend(validate_identifiers(table_name=target_table).errors if target_table else [])
        errors.extend(validate_identifiers(column_names=key_columns).errors)
        errors.extend(_mapping_errors(options.mapping_dict))
        if errors:
            raise ValidationError(errors)

        return self._submit(JobType.SYNC, {
            'source_connection_string': source_connection_string,
            'source_query': source_query,
            'target_connection_string': target_connection_string,
            'target_table': target_table,
            'key_columns': key_columns,
            'options': options.to_dict(),
        }, created_by, correlation_id)

    def submit_mongo_transfer(
        self,
        mongo_connection_string: str,
        database: str,
        collection: str,
        target_connection_string: str,
        target_table: str,
        filter_json: Optional[str] = None,
        pipeline_json: Optional[str] = None,
        options: Optional[MongoOptions] = None,
        as_json: bool = False,
        created_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Queue a MongoDB transfer, or a JSON passthrough transfer with ``as_json``."""
        options = options or MongoOptions()
        errors: List[str] = []
        _require(errors, mongo_connection_string=mongo_connection_string, database=database,
                 collection=collection, target_connection_string=target_connection_string,
                 target_table=target_table)
        if target_table:
            errors.extend(validate_identifiers(table_name=target_table).errors)
        # Field mapping sources are document paths, only the targets become columns
        errors.extend(_mapping_errors(options.mapping_dict, check_sources=False))
        try:
            if pipeline_json and pipeline_json.strip():
                parse_pipeline(pipeline_json)
            else:
                parse_filter(filter_json)
        except ValueError as e:
            errors.append(str(e))
        if errors:
            raise ValidationError(errors)

        job_type = JobType.MONGO_TRANSFER_AS_JSON if as_json else JobType.MONGO_TRANSFER
        return self._submit(job_type, {
            'mongo_connection_string': mongo_connection_string,
            'database': database,
            'collection': collection,
            'target_connection_string': target_connection_string,
            'target_table': target_table,
            'filter_json': filter_json,
            'pipeline_json': pipeline_json,
            'options': options.to_dict(),
        }, created_by, correlation_id)

    def get_status(self, job_id: str) -> JobStatusView:
        """
        Raises:
            JobNotFoundError: If no job has this id
        """
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusView.from_job(job)

    def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[JobStatusView]:
        return [JobStatusView.from_job(job) for job in self.store.list_recent(limit)]

    def list_by_status(self, status: JobStatus, limit: int = DEFAULT_STATUS_LIMIT) -> List[JobStatusView]:
        return [JobStatusView.from_job(job) for job in self.store.get_by_status(JobStatus(status), limit)]

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that has not started yet.

        Returns:
            True if the job was Pending and is now Cancelled; False if it had
            already started or finished

        Raises:
            JobNotFoundError: If no job has this id
        """
        if self.store.get(job_id) is None:
            raise JobNotFoundError(job_id)
        cancelled = self.store.update_status(
            job_id, JobStatus.CANCELLED, CANCELLED_MESSAGE, expected_status=JobStatus.PENDING
        )
        if cancelled:
            logger.info(f"Cancelled job {job_id}")
        else:
            logger.info(f"Job {job_id} could not be cancelled; it is no longer pending")
        return cancelled

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        """Delete finished jobs created more than ``older_than_days`` days ago."""
        days = self.retention_days if older_than_days is None else older_than_days
        if days < 0:
            raise ValueError(f"older_than_days must not be negative, got {days}")
        deleted = self.store.delete_older_than(utc_now() - timedelta(days=days))
        logger.info(f"Deleted {deleted:,} finished jobs older than {days} days")
        return deleted


def build_job_service(settings: Optional[Settings] = None, start: bool = True) -> JobService:
    """
    Wire a job store, processor and service from settings.

    Args:
        settings: Runtime settings; loaded from the environment when omitted
        start: Start the worker thread straight away
    """
    settings = settings or load_settings()
    store = create_job_store(settings)
    processor = BackgroundJobProcessor(
        store,
        capacity=settings.job_queue_capacity,
        enqueue_timeout=settings.job_enqueue_timeout,
    )
    if start:
        processor.start()
    return JobService(store, processor, retention_days=settings.job_retention_days)

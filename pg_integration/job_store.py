"""
Job Store Module

Persists job records and enforces the job state machine:

    Pending -> Running -> Completed | Failed
    Pending -> Cancelled
    Pending -> Failed (the job never reached the queue)

Every status change is a compare-and-set on the current status, so two
threads racing on the same job (worker start vs. user cancel) can never both
win. Two backends share one contract: an in-process dict and a MongoDB
collection.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument

from pg_integration.config import Settings
from pg_integration.connections import connect_mongo
from pg_integration.exceptions import JobNotFoundError, JobStateError
from pg_integration.job_models import TERMINAL_STATUSES, Job, JobStatus, can_transition, utc_now

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 50
DEFAULT_STATUS_LIMIT = 100


def _status_values(statuses: Iterable[JobStatus]) -> List[str]:
    return [JobStatus(status).value for status in statuses]


def _update_sources(status: JobStatus) -> List[JobStatus]:
    """Statuses from which a wholesale update may store a job with ``status``."""
    return [current for current in JobStatus if current == status or can_transition(current, status)]


def _state_error(job_id: str, current: JobStatus, new: JobStatus) -> JobStateError:
    return JobStateError(f"Job '{job_id}' cannot move from {current.value} to {new.value}")


class JobStore:
    """Job persistence contract."""

    def create(self, job: Job) -> Job:
        raise NotImplementedError

    def get(self, job_id: str) -> Optional[Job]:
        raise NotImplementedError

    def update(self, job: Job) -> None:
        """
        Replace a stored job wholesale.

        Raises:
            JobNotFoundError: If the job does not exist
            JobStateError: If the new status is not reachable from the stored one
        """
        raise NotImplementedError

    def _transition(self, job_id: str, allowed: Iterable[JobStatus], changes: Dict[str, Any]) -> bool:
        """Apply ``changes`` only if the job's status is one of ``allowed``."""
        raise NotImplementedError

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: Optional[str] = None,
        expected_status: Optional[JobStatus] = None,
    ) -> bool:
        """
        Move a job to a new status.

        Only moves allowed by the job lifecycle apply; a finished job never
        changes again.

        Args:
            job_id: Job to change
            status: New status
            error_message: Stored with Failed and Cancelled statuses
            expected_status: When given, the change only applies if the job
                currently has this status

        Returns:
            True if the job was changed; False if it does not exist, or its
            status does not allow the move
        """
        allowed = [current for current in JobStatus if can_transition(current, status)]
        if expected_status is not None:
            allowed = [current for current in allowed if current == expected_status]
        changes: Dict[str, Any] = {'status': status}
        if status in TERMINAL_STATUSES:
            changes['completed_at'] = utc_now()
        if status == JobStatus.CANCELLED:
            changes['progress_message'] = error_message
        if error_message is not None:
            changes['error_message'] = error_message
        return self._transition(job_id, allowed, changes)

    def update_progress(self, job_id: str, progress: int, message: Optional[str] = None) -> bool:
        """Record progress of a running job; ignored once the job has finished."""
        changes: Dict[str, Any] = {'progress': max(0, min(100, int(progress)))}
        if message is not None:
            changes['progress_message'] = message
        return self._transition(job_id, [JobStatus.PENDING, JobStatus.RUNNING], changes)

    def mark_started(self, job_id: str) -> bool:
        """Pending -> Running. False if the job was no longer pending."""
        return self._transition(job_id, [JobStatus.PENDING], {
            'status': JobStatus.RUNNING,
            'started_at': utc_now(),
            'progress': 0,
            'progress_message': 'Processing started',
        })

    def mark_completed(self, job_id: str, result_payload: str) -> bool:
        """Running -> Completed with the serialized result."""
        return self._transition(job_id, [JobStatus.RUNNING], {
            'status': JobStatus.COMPLETED,
            'completed_at': utc_now(),
            'progress': 100,
            'progress_message': 'Completed',
            'result_payload': result_payload,
        })

    def mark_failed(self, job_id: str, error_message: str) -> bool:
        """Pending or Running -> Failed."""
        return self._transition(job_id, [JobStatus.PENDING, JobStatus.RUNNING], {
            'status': JobStatus.FAILED,
            'completed_at': utc_now(),
            'progress_message': 'Failed',
            'error_message': error_message,
        })

    def get_by_status(self, status: JobStatus, limit: int = DEFAULT_STATUS_LIMIT) -> List[Job]:
        """Newest first."""
        raise NotImplementedError

    def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Job]:
        """Newest first."""
        raise NotImplementedError

    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete finished jobs created before ``cutoff``; return the count."""
        raise NotImplementedError


class MemoryJobStore(JobStore):
    """Jobs kept in a dict for the lifetime of the process."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()

    def create(self, job: Job) -> Job:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job '{job.id}' already exists")
            self._jobs[job.id] = copy.copy(job)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.copy(job) if job is not None else None

    def update(self, job: Job) -> None:
        with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(job.id)
            if current.status not in _update_sources(job.status):
                raise _state_error(job.id, current.status, job.status)
            self._jobs[job.id] = copy.copy(job)

    def _transition(self, job_id: str, allowed: Iterable[JobStatus], changes: Dict[str, Any]) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in set(allowed):
                return False
            for name, value in changes.items():
                setattr(job, name, value)
            return True

    def get_by_status(self, status: JobStatus, limit: int = DEFAULT_STATUS_LIMIT) -> List[Job]:
        with self._lock:
            jobs = [copy.copy(job) for job in self._jobs.values() if job.status == status]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)[:limit]

    def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Job]:
        with self._lock:
            jobs = [copy.copy(job) for job in self._jobs.values()]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)[:limit]

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [
                job_id for job_id, job in self._jobs.items()
                if job.status in TERMINAL_STATUSES and job.created_at < cutoff
            ]
            for job_id in expired:
                del self._jobs[job_id]
        return len(expired)


# Job dataclass attribute -> stored document field
_FIELD_NAMES = {
    'status': 'status',
    'result_payload': 'resultPayload',
    'error_message': 'errorMessage',
    'progress': 'progress',
    'progress_message': 'progressMessage',
    'started_at': 'startedAt',
    'completed_at': 'completedAt',
}


class MongoJobStore(JobStore):
    """Jobs stored as camelCase documents in a MongoDB collection."""

    def __init__(self, collection):
        """
        Args:
            collection: pymongo Collection holding the job documents
        """
        self.collection = collection

    def ensure_indexes(self) -> None:
        self.collection.create_index([('createdAt', DESCENDING)], name='createdAt_desc')
        self.collection.create_index([('status', ASCENDING)], name='status')
        self.collection.create_index([('status', ASCENDING), ('createdAt', DESCENDING)], name='status_createdAt')
        logger.info(f"Ensured indexes on job collection {self.collection.name}")

    def create(self, job: Job) -> Job:
        self.collection.insert_one(job.to_document())
        return job

    def get(self, job_id: str) -> Optional[Job]:
        document = self.collection.find_one({'_id': job_id})
        return Job.from_document(document) if document else None

    def update(self, job: Job) -> None:
        result = self.collection.replace_one(
            {'_id': job.id, 'status': {'$in': _status_values(_update_sources(job.status))}},
            job.to_document(),
        )
        if result.matched_count == 0:
            current = self.collection.find_one({'_id': job.id}, {'status': 1})
            if current is None:
                raise JobNotFoundError(job.id)
            raise _state_error(job.id, JobStatus(current['status']), job.status)

    def _transition(self, job_id: str, allowed: Iterable[JobStatus], changes: Dict[str, Any]) -> bool:
        update = {
            _FIELD_NAMES[name]: value.value if isinstance(value, JobStatus) else value
            for name, value in changes.items()
        }
        document = self.collection.find_one_and_update(
            {'_id': job_id, 'status': {'$in': _status_values(allowed)}},
            {'$set': update},
            return_document=ReturnDocument.AFTER,
        )
        return document is not None

    def get_by_status(self, status: JobStatus, limit: int = DEFAULT_STATUS_LIMIT) -> List[Job]:
        cursor = (
            self.collection.find({'status': JobStatus(status).value})
            .sort('createdAt', DESCENDING)
            .limit(limit)
        )
        return [Job.from_document(document) for document in cursor]

    def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[Job]:
        cursor = self.collection.find().sort('createdAt', DESCENDING).limit(limit)
        return [Job.from_document(document) for document in cursor]

    def delete_older_than(self, cutoff: datetime) -> int:
        result = self.collection.delete_many({
            'createdAt': {'$lt': cutoff},
            'status': {'$in': _status_values(TERMINAL_STATUSES)},
        })
        return result.deleted_count


def create_job_store(settings: Settings) -> JobStore:
    """Build the job store selected by ``JOB_STORE_BACKEND``."""
    if settings.job_store_backend == 'mongo':
        client = connect_mongo(settings.job_store_mongo_uri)
        store = MongoJobStore(client[settings.job_store_database][settings.job_store_collection])
        store.ensure_indexes()
        logger.info(
            f"Using MongoDB job store {settings.job_store_database}.{settings.job_store_collection}"
        )
        return store
    logger.info("Using in-memory job store")
    return MemoryJobStore()

"""
Job Records

A job is one queued pipeline run. Its request and result travel as JSON text
so the record can be persisted as-is in any job store. Requests are written as
relaxed Extended JSON, so the bytes, datetimes, decimals and UUIDs inside
bulk-insert records reach the worker with their types intact.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, DecimalException
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from bson import json_util
from bson.binary import UuidRepresentation
from bson.decimal128 import Decimal128
from bson.json_util import JSONMode, JSONOptions


class JobType(str, Enum):
    TRANSFER = 'Transfer'
    BULK_INSERT = 'BulkInsert'
    SYNC = 'Sync'
    MONGO_TRANSFER = 'MongoTransfer'
    MONGO_TRANSFER_AS_JSON = 'MongoTransferAsJson'


class JobStatus(str, Enum):
    PENDING = 'Pending'
    RUNNING = 'Running'
    COMPLETED = 'Completed'
    FAILED = 'Failed'
    CANCELLED = 'Cancelled'


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Status -> statuses a job may move on to; terminal statuses have none
STATUS_TRANSITIONS = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in STATUS_TRANSITIONS.get(current, frozenset())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return uuid.uuid4().hex


PAYLOAD_JSON_OPTIONS = JSONOptions(
    json_mode=JSONMode.RELAXED,
    uuid_representation=UuidRepresentation.STANDARD,
)


def dump_payload(value: Any) -> str:
    return json_util.dumps(value, json_options=PAYLOAD_JSON_OPTIONS)


def load_payload(text: str) -> Any:
    return json_util.loads(text, json_options=PAYLOAD_JSON_OPTIONS)


def _storable_value(value: Any, field_name: str, errors: List[str]) -> Any:
    if value is None or isinstance(value, (bool, int, float, str, bytes, uuid.UUID)):
        return value
    if isinstance(value, (bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, Decimal):
        try:
            return Decimal128(value)
        except DecimalException:
            errors.append(f"Field '{field_name}' holds a decimal that does not fit in 34 digits")
            return None
    if isinstance(value, datetime):
        # Extended JSON dates are naive UTC with millisecond resolution
        if value.utcoffset() is not None:
            errors.append(f"Field '{field_name}' holds a timezone-aware datetime; use naive UTC datetimes")
        elif value.microsecond % 1000:
            errors.append(f"Field '{field_name}' holds a datetime with sub-millisecond precision")
        return value
    if isinstance(value, dict):
        return {str(key): _storable_value(item, field_name, errors) for key, item in value.items()}
    if isinstance(value, list):
        return [_storable_value(item, field_name, errors) for item in value]
    errors.append(f"Field '{field_name}' holds {type(value).__name__}, which cannot be stored in a job")
    return None


def storable_record(record: Mapping[str, Any], errors: List[str]) -> Dict[str, Any]:
    """
    Prepare a bulk-insert record for a job payload.

    Decimals become Decimal128 and byte buffers become bytes. Values that
    would not survive the payload unchanged are reported in ``errors``.
    """
    return {str(key): _storable_value(value, str(key), errors) for key, value in record.items()}


def _restored_value(value: Any) -> Any:
    if isinstance(value, Decimal128):
        return value.to_decimal()
    if isinstance(value, dict):
        return {key: _restored_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_restored_value(item) for item in value]
    return value


def restore_record(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Undo ``storable_record`` on a record read back from a job payload."""
    return {key: _restored_value(value) for key, value in record.items()}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # pymongo returns naive datetimes unless the client is tz_aware
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class Job:
    """A background pipeline run and its lifecycle."""

    type: JobType
    request_payload: str
    id: str = field(default_factory=new_job_id)
    status: JobStatus = JobStatus.PENDING
    result_payload: Optional[str] = None
    error_message: Optional[str] = None
    progress: int = 0
    progress_message: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    correlation_id: Optional[str] = None

    @property
    def is_finished(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def request(self) -> Dict[str, Any]:
        return load_payload(self.request_payload) if self.request_payload else {}

    def to_document(self) -> Dict[str, Any]:
        """Serialize to the camelCase document stored by the MongoDB job store."""
        return {
            '_id': self.id,
            'type': self.type.value,
            'status': self.status.value,
            'requestPayload': self.request_payload,
            'resultPayload': self.result_payload,
            'errorMessage': self.error_message,
            'progress': self.progress,
            'progressMessage': self.progress_message,
            'createdAt': self.created_at,
            'startedAt': self.started_at,
            'completedAt': self.completed_at,
            'createdBy': self.created_by,
            'correlationId': self.correlation_id,
        }

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> 'Job':
        return cls(
            id=document['_id'],
            type=JobType(document['type']),
            status=JobStatus(document['status']),
            request_payload=document.get('requestPayload') or '',
            result_payload=document.get('resultPayload'),
            error_message=document.get('errorMessage'),
            progress=document.get('progress') or 0,
            progress_message=document.get('progressMessage'),
            created_at=_as_utc(document.get('createdAt')) or utc_now(),
            started_at=_as_utc(document.get('startedAt')),
            completed_at=_as_utc(document.get('completedAt')),
            created_by=document.get('createdBy'),
            correlation_id=document.get('correlationId'),
        )


@dataclass
class JobStatusView:
    """Read-only projection of a job returned to callers."""

    id: str
    type: str
    status: str
    progress: int
    progress_message: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    is_finished: bool
    result: Optional[Any]
    error_message: Optional[str]
    created_by: Optional[str]
    correlation_id: Optional[str]

    @classmethod
    def from_job(cls, job: Job) -> 'JobStatusView':
        duration_ms = None
        if job.started_at is not None:
            end = job.completed_at or utc_now()
            duration_ms = int((end - job.started_at).total_seconds() * 1000)

        return cls(
            id=job.id,
            type=job.type.value,
            status=job.status.value,
            progress=job.progress,
            progress_message=job.progress_message,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_ms=duration_ms,
            is_finished=job.is_finished,
            result=json.loads(job.result_payload) if job.result_payload else None,
            error_message=job.error_message,
            created_by=job.created_by,
            correlation_id=job.correlation_id,
        )

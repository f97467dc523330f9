"""
Pipeline Result Records

Every pipeline entry point returns one of these instead of raising. A failed
result carries the error message and, when the driver exposes one, the
provider's error code.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class TransferResult:
    """Outcome of a relational transfer or bulk insert."""

    success: bool = True
    target_table: Optional[str] = None
    rows_read: int = 0
    rows_written: int = 0
    elapsed_ms: int = 0
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, message: str, error_code: Optional[str] = None, **kwargs) -> 'TransferResult':
        return cls(success=False, error_message=message, error_code=error_code, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    """Outcome of a delete-insert sync."""

    success: bool = True
    target_table: Optional[str] = None
    rows_read: int = 0
    rows_deleted: int = 0
    rows_inserted: int = 0
    elapsed_ms: int = 0
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, message: str, error_code: Optional[str] = None, **kwargs) -> 'SyncResult':
        return cls(success=False, error_message=message, error_code=error_code, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MongoTransferResult:
    """Outcome of a document store to relational transfer."""

    success: bool = True
    target_table: Optional[str] = None
    total_documents_read: int = 0
    total_rows_written: int = 0
    failed_documents: int = 0
    elapsed_ms: int = 0
    columns: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def failure(cls, message: str, error_code: Optional[str] = None, **kwargs) -> 'MongoTransferResult':
        return cls(success=False, error_message=message, error_code=error_code, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

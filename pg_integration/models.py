"""
Data Model

Column and index descriptors plus the immutable option sets that drive the
transfer, sync and document pipelines. Option sets round-trip through plain
dicts so they can travel inside a job's request payload.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

DEFAULT_BATCH_SIZE = 1000
DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_SCHEMA_SAMPLE_SIZE = 100

# progress(percent, message)
ProgressCallback = Callable[[int, str], None]


def report_progress(progress: Optional[ProgressCallback], percent: int, message: str) -> None:
    if progress is not None:
        progress(percent, message)


@dataclass
class Column:
    """A source column as seen by the schema inferencer."""

    name: str
    source_type_name: str
    size: Optional[int] = None
    precision: Optional[int] = None
    scale: Optional[int] = None
    nullable: bool = True


@dataclass
class IndexDescriptor:
    """A destination index, read from the catalog."""

    name: str
    is_primary_key: bool
    is_unique: bool
    columns: List[str] = field(default_factory=list)
    sort_directions: List[str] = field(default_factory=list)
    index_id: int = 0


class ArrayHandling(str, Enum):
    """What to do with array values in documents."""

    SERIALIZE = 'serialize'
    SKIP = 'skip'
    FIRST_ELEMENT = 'first_element'

    @classmethod
    def parse(cls, value: Any) -> 'ArrayHandling':
        """Accept enum members and loose spellings such as 'FirstElement'."""
        if isinstance(value, cls):
            return value
        normalized = str(value or cls.SERIALIZE.value).strip().lower().replace('_', '')
        for member in cls:
            if member.value.replace('_', '') == normalized:
                return member
        raise ValueError(f"Unknown array handling mode: {value}")


class _OptionsMixin:
    """dict conversion shared by the option dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
            elif key.endswith('_mappings') and value is not None:
                data[key] = dict(value)
            elif isinstance(value, tuple):
                data[key] = list(value)
        return data

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]):
        """Build options from a dict, ignoring unknown keys."""
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


def _mapping_pairs(mappings: Optional[Dict[str, str]]) -> Optional[Tuple[Tuple[str, str], ...]]:
    if mappings is None:
        return None
    if isinstance(mappings, dict):
        return tuple(mappings.items())
    return tuple((source, target) for source, target in mappings)


@dataclass(frozen=True)
class TransferOptions(_OptionsMixin):
    """Options for relational transfer and bulk insert."""

    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    use_transaction: bool = True
    truncate_target_table: bool = False
    create_table_if_not_exists: bool = False
    column_mappings: Optional[Tuple[Tuple[str, str], ...]] = None

    def __post_init__(self):
        object.__setattr__(self, 'column_mappings', _mapping_pairs(self.column_mappings))
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @property
    def mapping_dict(self) -> Dict[str, str]:
        return dict(self.column_mappings or ())


@dataclass(frozen=True)
class SyncOptions(_OptionsMixin):
    """Options for the delete-insert sync."""

    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    use_transaction: bool = True
    delete_all_before_insert: bool = False
    column_mappings: Optional[Tuple[Tuple[str, str], ...]] = None
    replicate_indexes: bool = True

    def __post_init__(self):
        object.__setattr__(self, 'column_mappings', _mapping_pairs(self.column_mappings))
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")

    @property
    def mapping_dict(self) -> Dict[str, str]:
        return dict(self.column_mappings or ())


@dataclass(frozen=True)
class MongoOptions(_OptionsMixin):
    """Options for document store to relational transfers."""

    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: int = DEFAULT_TIMEOUT_SECONDS
    use_transaction: bool = True
    truncate_target_table: bool = False
    create_table_if_not_exists: bool = False
    flatten_nested_documents: bool = True
    flatten_separator: str = '_'
    array_handling: ArrayHandling = ArrayHandling.SERIALIZE
    field_mappings: Optional[Tuple[Tuple[str, str], ...]] = None
    include_fields: Optional[Tuple[str, ...]] = None
    exclude_fields: Optional[Tuple[str, ...]] = None
    schema_sample_size: int = DEFAULT_SCHEMA_SAMPLE_SIZE

    def __post_init__(self):
        object.__setattr__(self, 'array_handling', ArrayHandling.parse(self.array_handling))
        object.__setattr__(self, 'field_mappings', _mapping_pairs(self.field_mappings))
        if self.include_fields is not None:
            object.__setattr__(self, 'include_fields', tuple(self.include_fields))
        if self.exclude_fields is not None:
            object.__setattr__(self, 'exclude_fields', tuple(self.exclude_fields))
        if self.batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got {self.batch_size}")
        if self.schema_sample_size <= 0:
            raise ValueError(f"schema_sample_size must be positive, got {self.schema_sample_size}")

    @property
    def mapping_dict(self) -> Dict[str, str]:
        return dict(self.field_mappings or ())

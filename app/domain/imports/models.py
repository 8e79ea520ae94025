"""
Core data structures shared by the validation engine, validators, aggregator
and commit executor.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple


class RecordStatus(str, Enum):
    VALID = "valid"
    WARNING = "warning"
    INVALID = "invalid"


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


class OutcomeKind(str, Enum):
    """Tag carried by every validation outcome so the aggregator can dispatch on it."""
    STRUCTURAL = "structural"
    REQUIRED = "required"
    FORMAT = "format"
    CARRIER_LOOKUP = "carrier_lookup"
    POSTAL_LOOKUP = "postal_lookup"
    DUPLICATE = "duplicate"
    BUSINESS_RULE = "business_rule"
    SEASONAL = "seasonal"
    FRAUD = "fraud"
    MAPPING_SUGGESTION = "mapping_suggestion"


class RawRow(Mapping[str, str]):
    """Read-only, order-preserving view of one parsed source row."""

    __slots__ = ("_values", "row_number")

    def __init__(self, values: Mapping[str, Any], row_number: int):
        self._values = MappingProxyType(
            {str(key): "" if value is None else str(value) for key, value in values.items()}
        )
        self.row_number = row_number

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"RawRow(row_number={self.row_number}, values={dict(self._values)!r})"


def to_raw_rows(rows: Iterable[Mapping[str, Any]]) -> List[RawRow]:
    """Wrap parsed rows; row numbers are 1-based to match what users see in spreadsheets."""
    return [row if isinstance(row, RawRow) else RawRow(row, index) for index, row in enumerate(rows, start=1)]


class FieldMapping:
    """
    Column -> canonical field assignments for one import session.

    Each column holds at most one field. The same field assigned to several
    columns is representable so the structural check can report it; the
    field -> column view resolves such conflicts to the first column.
    """

    def __init__(self, assignments: Optional[Mapping[str, Optional[str]]] = None):
        self._assignments: Dict[str, str] = {
            column: field_key for column, field_key in (assignments or {}).items() if field_key
        }

    @classmethod
    def from_field_map(cls, field_to_column: Mapping[str, str]) -> "FieldMapping":
        return cls({column: field_key for field_key, column in field_to_column.items() if column})

    @property
    def assignments(self) -> Dict[str, str]:
        return dict(self._assignments)

    def column_for(self, field_key: str) -> Optional[str]:
        for column, assigned in self._assignments.items():
            if assigned == field_key:
                return column
        return None

    def as_field_map(self) -> Dict[str, str]:
        field_map: Dict[str, str] = {}
        for column, field_key in self._assignments.items():
            field_map.setdefault(field_key, column)
        return field_map

    def duplicated_fields(self) -> List[str]:
        counts = Counter(self._assignments.values())
        return sorted(key for key, count in counts.items() if count > 1)

    def with_assignment(self, column: str, field_key: Optional[str]) -> "FieldMapping":
        updated = dict(self._assignments)
        if field_key:
            updated[column] = field_key
        else:
            updated.pop(column, None)
        return FieldMapping(updated)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, FieldMapping) and self._assignments == other._assignments

    def __repr__(self) -> str:
        return f"FieldMapping({self._assignments!r})"


@dataclass
class CanonicalRecord:
    row_number: int
    values: Dict[str, str]
    status: RecordStatus = RecordStatus.VALID
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def item_id(self) -> str:
        return f"row-{self.row_number}"

    def get(self, field_key: str) -> str:
        return self.values.get(field_key, "")

    def add_error(self, message: str) -> None:
        if message not in self.errors:
            self.errors.append(message)
        self.status = RecordStatus.INVALID

    def add_warning(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)
        if self.status == RecordStatus.VALID:
            self.status = RecordStatus.WARNING


@dataclass
class ValidationOutcome:
    item_id: str
    is_valid: bool
    kind: OutcomeKind
    payload: Dict[str, Any] = field(default_factory=dict)
    severity: Severity = Severity.WARNING
    message: Optional[str] = None
    field: Optional[str] = None
    # Hard outcomes make the record invalid; soft ones only add a warning
    hard: bool = False


@dataclass
class ChunkResult:
    index: int
    processed: int
    valid: int
    elapsed_seconds: float


@dataclass
class ChunkRunResult:
    total: int
    total_processed: int = 0
    total_valid: int = 0
    outcomes: List[ValidationOutcome] = field(default_factory=list)
    chunks: List[ChunkResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    cancelled: bool = False


@dataclass
class ValidatorResult:
    """Everything one validator category produced during a run."""
    kind: OutcomeKind
    outcomes: List[ValidationOutcome] = field(default_factory=list)
    summary: Dict[str, Any] = field(default_factory=dict)
    unavailable_reason: Optional[str] = None

    @property
    def available(self) -> bool:
        return self.unavailable_reason is None


@dataclass
class ValidationRunResult:
    mapping: FieldMapping
    records: List[CanonicalRecord]
    total_rows: int = 0
    results: Dict[OutcomeKind, ValidatorResult] = field(default_factory=dict)
    cancelled: bool = False
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    processed: int
    total: int
    percent: float
    version: Optional[int] = None


@dataclass(frozen=True)
class Alert:
    severity: Severity
    title: str
    message: str
    field: Optional[str] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.severity.value,
            "title": self.title,
            "message": self.message,
            "field": self.field,
            "suggestion": self.suggestion,
        }


@dataclass
class QualityReport:
    alerts: List[Alert]
    score: int
    suggestions: List[str]
    preview: List[Dict[str, Optional[str]]]
    is_valid: bool
    record_summary: Dict[str, int] = field(default_factory=dict)

    def has_errors(self) -> bool:
        return any(alert.severity == Severity.ERROR for alert in self.alerts)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "score": self.score,
            "alerts": [alert.to_dict() for alert in self.alerts],
            "suggestions": list(self.suggestions),
            "preview": [dict(row) for row in self.preview],
            "record_summary": dict(self.record_summary),
        }


class ConfidenceTier(str, Enum):
    HIGH = "high"
    LOW = "low"


@dataclass(frozen=True)
class DuplicateGroup:
    key_type: str
    key: str
    count: int
    item_ids: Tuple[str, ...]


@dataclass(frozen=True)
class DuplicateCandidate:
    item_id: str
    existing_id: str
    confidence: ConfidenceTier
    matched_keys: Tuple[str, ...]
    source: str  # "store" or "batch"


@dataclass
class CommitMetrics:
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    chunk_timings_ms: List[float] = field(default_factory=list)
    average_chunk_ms: float = 0.0
    error_codes: Counter = field(default_factory=Counter)

    def record_chunk(self, size: int, succeeded: bool, elapsed_ms: float) -> None:
        self.processed += size
        if succeeded:
            self.succeeded += size
        else:
            self.failed += size
        self.chunk_timings_ms.append(elapsed_ms)
        count = len(self.chunk_timings_ms)
        self.average_chunk_ms += (elapsed_ms - self.average_chunk_ms) / count

    def record_error(self, code: str) -> None:
        self.error_codes[code] += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "chunk_timings_ms": list(self.chunk_timings_ms),
            "average_chunk_ms": round(self.average_chunk_ms, 2),
            "error_codes": dict(self.error_codes),
        }


@dataclass
class ImportDetail:
    tracking_code: str
    status: str  # "success", "warning" or "error"
    message: str
    row_number: Optional[int] = None


@dataclass
class ImportResult:
    success: int
    warnings: int
    errors: int
    details: List[ImportDetail]
    metrics: CommitMetrics

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "warnings": self.warnings,
            "errors": self.errors,
            "details": [detail.__dict__.copy() for detail in self.details],
            "metrics": self.metrics.to_dict(),
        }

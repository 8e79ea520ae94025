"""
Apply a field mapping to raw rows and run the checks that only need the
mapping itself (structure) or one row at a time (required fields, formats).
"""
from typing import Any, Dict, Iterable, List, Optional, Sequence

import logging

from app.domain.imports.fields import FIELDS_BY_KEY, REQUIRED_FIELDS, field_label
from app.domain.imports.models import (
    CanonicalRecord,
    FieldMapping,
    OutcomeKind,
    RawRow,
    Severity,
    ValidationOutcome,
    ValidatorResult,
)
from app.domain.imports.validators import validate_with_preset

logger = logging.getLogger(__name__)

MAPPING_ITEM_ID = "mapping"


def _build_mapping_error(
    *,
    error_type: str,
    message: str,
    column: Optional[str] = None,
    field_key: Optional[str] = None,
    value: Optional[Any] = None,
    record_number: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a structured error payload for downstream processing."""
    error_payload: Dict[str, Any] = {
        "type": error_type,
        "message": message
    }
    if column is not None:
        error_payload["column"] = column
    if field_key is not None:
        error_payload["field"] = field_key
    if record_number is not None:
        error_payload["record_number"] = record_number
    if value is not None:
        error_payload["value"] = value if isinstance(value, (int, float, str, bool)) else str(value)
    return error_payload


def map_rows(rows: Sequence[RawRow], mapping: FieldMapping) -> List[CanonicalRecord]:
    """
    Build fresh canonical records for ``rows``.

    Values are stripped; unmapped fields are absent from ``values``. When a
    field is mapped to several columns the first column wins.
    """
    mapping_items = tuple(mapping.as_field_map().items())
    records: List[CanonicalRecord] = []
    for row in rows:
        values = {field_key: (row.get(column) or "").strip() for field_key, column in mapping_items}
        records.append(CanonicalRecord(row_number=row.row_number, values=values))
    return records


def check_structure(mapping: FieldMapping, headers: Iterable[str]) -> ValidatorResult:
    """
    Evaluate the mapping once: every required field mapped, no field mapped
    twice, and every assignment pointing at a known field and an existing column.
    """
    header_set = set(headers)
    field_map = mapping.as_field_map()
    outcomes: List[ValidationOutcome] = []

    missing = [key for key in REQUIRED_FIELDS if key not in field_map]
    if missing:
        # one outcome for all of them; field is only set when it is unambiguous
        single = missing[0] if len(missing) == 1 else None
        if single is not None:
            message = f"Required field '{field_label(single)}' is not mapped"
        else:
            message = "Required fields not mapped: " + ", ".join(field_label(key) for key in missing)
        payload = _build_mapping_error(error_type="missing_required_field", message=message, field_key=single)
        payload["fields"] = list(missing)
        outcomes.append(ValidationOutcome(
            item_id=MAPPING_ITEM_ID,
            is_valid=False,
            kind=OutcomeKind.STRUCTURAL,
            payload=payload,
            severity=Severity.ERROR,
            message=message,
            field=single,
            hard=True,
        ))

    for key in mapping.duplicated_fields():
        columns = [column for column, assigned in mapping.assignments.items() if assigned == key]
        message = f"Field '{field_label(key)}' is mapped to more than one column: {', '.join(columns)}"
        outcomes.append(ValidationOutcome(
            item_id=MAPPING_ITEM_ID,
            is_valid=False,
            kind=OutcomeKind.STRUCTURAL,
            payload=_build_mapping_error(error_type="duplicate_field_mapping", message=message, field_key=key),
            severity=Severity.ERROR,
            message=message,
            field=key,
            hard=True,
        ))

    for column, key in mapping.assignments.items():
        if key not in FIELDS_BY_KEY:
            message = f"Column '{column}' is mapped to unknown field '{key}'"
            error_type = "unknown_field"
        elif header_set and column not in header_set:
            message = f"Mapped column '{column}' does not exist in the file"
            error_type = "unknown_column"
        else:
            continue
        outcomes.append(ValidationOutcome(
            item_id=MAPPING_ITEM_ID,
            is_valid=False,
            kind=OutcomeKind.STRUCTURAL,
            payload=_build_mapping_error(error_type=error_type, message=message, column=column, field_key=key),
            severity=Severity.ERROR,
            message=message,
            field=key,
            hard=True,
        ))

    required_mapped = len(REQUIRED_FIELDS) - len(missing)
    return ValidatorResult(
        kind=OutcomeKind.STRUCTURAL,
        outcomes=outcomes,
        summary={
            "required_mapped": required_mapped,
            "required_total": len(REQUIRED_FIELDS),
            "missing_required": missing,
            "duplicated_fields": mapping.duplicated_fields(),
        },
    )


def check_record(record: CanonicalRecord) -> List[ValidationOutcome]:
    """
    Required-field and format checks for one record.

    Emits one REQUIRED outcome per empty required field and one FORMAT
    outcome per non-empty value of a field with a format preset, valid or
    not, so pass rates can be computed over non-empty values.
    """
    outcomes: List[ValidationOutcome] = []
    for key in REQUIRED_FIELDS:
        if key in record.values and not record.values[key]:
            message = f"Row {record.row_number}: required field '{field_label(key)}' is empty"
            outcomes.append(ValidationOutcome(
                item_id=record.item_id,
                is_valid=False,
                kind=OutcomeKind.REQUIRED,
                payload=_build_mapping_error(
                    error_type="required_empty", message=message,
                    field_key=key, record_number=record.row_number,
                ),
                severity=Severity.ERROR,
                message=message,
                field=key,
                hard=True,
            ))

    for key, value in record.values.items():
        field = FIELDS_BY_KEY.get(key)
        if field is None or field.format_preset is None or not value:
            continue
        is_valid, error = validate_with_preset(value, field.format_preset)
        outcomes.append(ValidationOutcome(
            item_id=record.item_id,
            is_valid=is_valid,
            kind=OutcomeKind.FORMAT,
            payload={"preset": field.format_preset, "value": value},
            severity=Severity.ERROR if field.hard_format else Severity.WARNING,
            message=None if is_valid else f"Row {record.row_number}: {field.label}: {error}",
            field=key,
            hard=field.hard_format,
        ))
    return outcomes


def check_records(records: Sequence[CanonicalRecord]) -> List[ValidationOutcome]:
    """Per-chunk validator for the row pass."""
    outcomes: List[ValidationOutcome] = []
    for record in records:
        outcomes.extend(check_record(record))
    return outcomes


def format_pass_rates(outcomes: Iterable[ValidationOutcome]) -> Dict[str, Dict[str, int]]:
    """Count checked and valid non-empty values per field from FORMAT outcomes."""
    stats: Dict[str, Dict[str, int]] = {}
    for outcome in outcomes:
        if outcome.kind != OutcomeKind.FORMAT or outcome.field is None:
            continue
        entry = stats.setdefault(outcome.field, {"checked": 0, "valid": 0})
        entry["checked"] += 1
        if outcome.is_valid:
            entry["valid"] += 1
    return stats

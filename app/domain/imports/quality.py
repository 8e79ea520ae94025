"""
Quality aggregation: turns one validation run into a score, alerts,
suggestions and a preview.

Only complete, current runs produce a report. The score starts at zero and
each category contributes points; the total is clamped to 0-100.
"""
import logging
from collections import Counter
from typing import Callable, Dict, List, Optional, Sequence

from app.core.config import Settings, settings as default_settings
from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.duplicates import KEY_LABELS
from app.domain.imports.fields import FIELDS_BY_KEY, field_label
from app.domain.imports.models import (
    Alert,
    CanonicalRecord,
    OutcomeKind,
    QualityReport,
    RecordStatus,
    Severity,
    ValidationRunResult,
    ValidatorResult,
)

logger = logging.getLogger(__name__)

REQUIRED_POINTS = 30
NO_DUPLICATE_MAPPING_POINTS = 20
CARRIER_POINTS = 15
POSTAL_POINTS = 10
DEDUP_POINTS = 15
ML_SUGGESTION_POINTS = 5
ML_SUGGESTION_CONFIDENCE = 0.7
ML_HIGH_CONFIDENCE = 0.8
LOOKUP_PASS_RATIO = 0.8

# Fields whose format failures only deserve an informational alert
INFO_FORMAT_FIELDS = {"customer_phone"}


def _percent(ratio: float) -> int:
    return int(round(ratio * 100))


class _ReportBuilder:
    def __init__(self, config: Settings):
        self.config = config
        self.alerts: List[Alert] = []
        self.suggestions: List[str] = []
        self.score = 0

    def alert(self, severity: Severity, title: str, message: str, *, field: Optional[str] = None,
              suggestion: Optional[str] = None) -> None:
        self.alerts.append(Alert(severity=severity, title=title, message=message, field=field, suggestion=suggestion))

    def unavailable(self, title: str, result: ValidatorResult) -> None:
        self.alert(
            Severity.INFO,
            f"{title} unavailable",
            f"{title} could not run: {result.unavailable_reason}",
            suggestion="It will be checked again on the next validation run",
        )

    # Categories

    def structure(self, result: ValidatorResult) -> None:
        for outcome in result.outcomes:
            self.alert(Severity.ERROR, "Mapping problem", outcome.message, field=outcome.field,
                       suggestion="Fix the column mapping before importing")
        if not result.summary.get("missing_required"):
            self.score += REQUIRED_POINTS
        if not result.summary.get("duplicated_fields"):
            self.score += NO_DUPLICATE_MAPPING_POINTS

    def required(self, result: ValidatorResult) -> None:
        missing = Counter(outcome.field for outcome in result.outcomes)
        for field_key, count in missing.items():
            self.alert(
                Severity.WARNING,
                "Missing required values",
                f"{count} record(s) have an empty {field_label(field_key)}; they will be skipped",
                field=field_key,
                suggestion="Fill in the missing values in the source file",
            )

    def formats(self, result: ValidatorResult, mapped_fields: Sequence[str]) -> None:
        stats: Dict[str, Dict[str, int]] = result.summary.get("fields", {})
        for field_key in mapped_fields:
            field = FIELDS_BY_KEY.get(field_key)
            if field is None or field.format_preset is None:
                continue
            entry = stats.get(field_key)
            if not entry or not entry["checked"]:
                continue
            ratio = entry["valid"] / entry["checked"]
            if ratio >= field.pass_threshold:
                self.score += field.format_points
                continue
            self.alert(
                Severity.INFO if field_key in INFO_FORMAT_FIELDS else Severity.WARNING,
                f"Invalid {field.label.lower()} values",
                f"Only {_percent(ratio)}% of {field.label.lower()} values have a valid format",
                field=field_key,
                suggestion=f"Check that the column really contains {field.label.lower()} values",
            )

    def carriers(self, result: ValidatorResult) -> None:
        ratio = result.summary.get("recognized_ratio")
        if ratio is not None:
            if ratio >= LOOKUP_PASS_RATIO:
                self.score += CARRIER_POINTS
                by_carrier = result.summary.get("by_carrier") or {}
                if by_carrier:
                    top = max(sorted(by_carrier), key=lambda key: by_carrier[key])
                    self.suggestions.append(f"Tracking codes recognized; most belong to {top}")
            else:
                self.alert(
                    Severity.WARNING,
                    "Unrecognized tracking codes",
                    f"Only {_percent(ratio)}% of tracking codes match a known carrier",
                    field="tracking_code",
                    suggestion="Check that the codes follow the carriers' formats",
                )
        inconsistent = result.summary.get("inconsistencies", 0)
        if inconsistent:
            self.alert(
                Severity.WARNING,
                "Carrier mismatch",
                f"{inconsistent} tracking code(s) do not match the carrier given for the order",
                field="carrier",
                suggestion="Check the carrier column for these orders",
            )

    def postal_codes(self, result: ValidatorResult) -> None:
        ratio = result.summary.get("found_ratio")
        if ratio is None:
            return
        if ratio >= LOOKUP_PASS_RATIO:
            self.score += POSTAL_POINTS
        else:
            self.alert(
                Severity.WARNING,
                "Unknown postal codes",
                f"Only {_percent(ratio)}% of postal codes exist",
                field="delivery_zipcode",
                suggestion="Check that postal codes use the 00000-000 format",
            )

    def duplicates(self, result: ValidatorResult) -> None:
        groups = result.summary.get("groups", [])
        store_duplicates = result.summary.get("store_duplicates", 0)
        if not groups and not store_duplicates:
            self.score += DEDUP_POINTS
            self.suggestions.append("No duplicates detected")
            return
        for group in groups[: self.config.duplicate_alert_limit]:
            self.alert(
                Severity.WARNING,
                "Duplicate in file",
                f"{KEY_LABELS[group.key_type].capitalize()} '{group.key}' appears {group.count} times",
                field=group.key_type,
                suggestion="Review these rows before importing",
            )
        if len(groups) > self.config.duplicate_alert_limit:
            self.alert(
                Severity.INFO,
                "More duplicates",
                f"{len(groups) - self.config.duplicate_alert_limit} more duplicate value(s) not listed",
            )
        if store_duplicates:
            high = result.summary.get("high_confidence", 0)
            self.alert(
                Severity.WARNING,
                "Orders already imported",
                f"{store_duplicates} order(s) already exist ({high} high-confidence match(es)) and will be skipped",
                field="tracking_code",
                suggestion="Re-importing the same file is safe; existing orders are not duplicated",
            )

    def business_rules(self, result: ValidatorResult) -> None:
        summary = result.summary
        checked = summary.get("records_checked") or 0
        ratio = summary.get("records_passed", 0) / checked if checked else 1.0
        if ratio >= 0.8:
            self.score += 15
            self.suggestions.append("Business rules passed")
        elif ratio >= 0.6:
            self.score += 10
            self.suggestions.append("Some business rules were violated")
        else:
            self.suggestions.append("Many business rules were violated; review the data")
        if summary.get("errors"):
            self.alert(
                Severity.WARNING,
                "Critical business rule violations",
                f"{summary['errors']} critical rule violation(s); affected records will be skipped",
                suggestion="Fix the data before importing",
            )
        if summary.get("warnings"):
            self.alert(
                Severity.WARNING,
                "Business rule warnings",
                f"{summary['warnings']} rule warning(s) found",
                suggestion="Consider reviewing these records",
            )

    def seasonal(self, result: ValidatorResult) -> None:
        summary = result.summary
        total = summary.get("total_patterns") or 0
        ratio = summary.get("passed_patterns", 0) / total if total else 1.0
        if ratio >= 0.8:
            self.score += 10
            self.suggestions.append("Seasonal patterns look normal")
        elif ratio >= 0.6:
            self.score += 5
            self.suggestions.append("Some seasonal patterns show anomalies")
        else:
            self.suggestions.append("Several seasonal anomalies detected")
        if summary.get("anomalies") or summary.get("records_flagged"):
            self.alert(
                Severity.WARNING,
                "Seasonal anomalies",
                f"{summary.get('anomalies', 0)} strongly anomalous period(s); "
                f"{summary.get('records_flagged', 0)} record(s) flagged",
                suggestion="Check for external factors affecting these periods",
            )
        for trend in summary.get("trends", []):
            if trend["confidence"] > 0.7:
                self.suggestions.append(trend["description"])

    def fraud(self, result: ValidatorResult) -> None:
        summary = result.summary
        ratio = summary.get("flagged_ratio", 0.0)
        if ratio == 0:
            self.score += 15
            self.suggestions.append("No suspicious activity detected")
        elif ratio < 0.05:
            self.score += 10
            self.suggestions.append("A few records carry fraud risk")
        elif ratio < 0.1:
            self.score += 5
            self.suggestions.append("Several records carry fraud risk; review the data")
        else:
            self.score -= 10
            self.suggestions.append("High fraud risk detected; review all records")
        if summary.get("blocked_records"):
            self.alert(
                Severity.WARNING,
                "Records blocked for fraud risk",
                f"{summary['blocked_records']} record(s) were blocked and will be skipped",
                suggestion="Review these orders manually",
            )
        if summary.get("review_records"):
            self.alert(
                Severity.WARNING,
                "Records to review",
                f"{summary['review_records']} record(s) need manual review",
                suggestion="Check these records before continuing",
            )

    def mapping_suggestions(self, result: ValidatorResult) -> None:
        high = 0
        for suggestion in result.summary.get("suggestions", []):
            if suggestion["confidence"] > ML_SUGGESTION_CONFIDENCE:
                self.score += ML_SUGGESTION_POINTS
                self.suggestions.append(
                    f"Suggested mapping: '{suggestion['column']}' -> {field_label(suggestion['field'])} "
                    f"({_percent(suggestion['confidence'])}% confidence)"
                )
            if suggestion["confidence"] > ML_HIGH_CONFIDENCE:
                high += 1
        if high:
            self.alert(
                Severity.INFO,
                "Mapping suggestions available",
                f"{high} high-confidence mapping suggestion(s) for unmapped columns",
                suggestion="Consider applying them to improve the mapping",
            )


_TITLES = {
    OutcomeKind.FORMAT: "Format validation",
    OutcomeKind.CARRIER_LOOKUP: "Tracking code validation",
    OutcomeKind.POSTAL_LOOKUP: "Postal code validation",
    OutcomeKind.DUPLICATE: "Duplicate detection",
    OutcomeKind.BUSINESS_RULE: "Business rule validation",
    OutcomeKind.SEASONAL: "Seasonal validation",
    OutcomeKind.FRAUD: "Fraud detection",
    OutcomeKind.MAPPING_SUGGESTION: "Mapping suggestions",
}


def _preview(records: Sequence[CanonicalRecord], mapped_fields: Sequence[str], limit: int) -> List[Dict[str, Optional[str]]]:
    return [
        {field_key: record.values.get(field_key) or None for field_key in mapped_fields}
        for record in records[:limit]
    ]


def _record_summary(run: ValidationRunResult) -> Dict[str, int]:
    statuses = Counter(record.status for record in run.records)
    return {
        "total": run.total_rows,
        "valid": statuses.get(RecordStatus.VALID, 0),
        "warning": statuses.get(RecordStatus.WARNING, 0),
        "invalid": statuses.get(RecordStatus.INVALID, 0),
    }


def build_report(
    run: ValidationRunResult,
    *,
    token: Optional[CancellationToken] = None,
    is_current: Optional[Callable[[], bool]] = None,
    config: Optional[Settings] = None,
) -> Optional[QualityReport]:
    """
    Aggregate one validation run. Returns None when the run was cancelled or
    superseded, so stale results can never replace a newer report.
    """
    if run.cancelled or (token is not None and token.cancelled):
        return None
    if is_current is not None and not is_current():
        return None

    config = config or default_settings
    builder = _ReportBuilder(config)

    if run.total_rows == 0:
        builder.alert(Severity.INFO, "Empty file", "The file has no data rows; there is nothing to import")
        return QualityReport(
            alerts=builder.alerts,
            score=0,
            suggestions=[],
            preview=[],
            is_valid=True,
            record_summary=_record_summary(run),
        )

    mapped_fields = list(run.mapping.as_field_map())
    results = run.results

    structural = results.get(OutcomeKind.STRUCTURAL)
    if structural is not None:
        builder.structure(structural)
    if OutcomeKind.REQUIRED in results:
        builder.required(results[OutcomeKind.REQUIRED])

    handlers = (
        (OutcomeKind.FORMAT, lambda result: builder.formats(result, mapped_fields)),
        (OutcomeKind.CARRIER_LOOKUP, builder.carriers),
        (OutcomeKind.POSTAL_LOOKUP, builder.postal_codes),
        (OutcomeKind.DUPLICATE, builder.duplicates),
        (OutcomeKind.BUSINESS_RULE, builder.business_rules),
        (OutcomeKind.SEASONAL, builder.seasonal),
        (OutcomeKind.FRAUD, builder.fraud),
        (OutcomeKind.MAPPING_SUGGESTION, builder.mapping_suggestions),
    )
    for kind, handler in handlers:
        result = results.get(kind)
        if result is None:
            continue
        if not result.available:
            builder.unavailable(_TITLES[kind], result)
            continue
        handler(result)

    summary = _record_summary(run)
    if summary["invalid"]:
        builder.alert(
            Severity.INFO,
            "Records to skip",
            f"{summary['invalid']} of {summary['total']} record(s) failed validation and will not be imported",
        )

    score = max(0, min(100, builder.score))
    has_errors = any(alert.severity == Severity.ERROR for alert in builder.alerts)
    has_warnings = any(alert.severity == Severity.WARNING for alert in builder.alerts)
    if not has_errors and not has_warnings:
        builder.alert(Severity.SUCCESS, "All checks passed", "All mapped fields passed validation")

    if score >= 80:
        builder.suggestions.append("Excellent data quality; ready to import")
    elif score >= 60:
        builder.suggestions.append("Good data quality; review the alerts before continuing")
    else:
        builder.suggestions.append("Low data quality; fix the problems before importing")

    logger.debug("Quality report: score=%d alerts=%d", score, len(builder.alerts))
    return QualityReport(
        alerts=builder.alerts,
        score=score,
        suggestions=builder.suggestions,
        preview=_preview(run.records, mapped_fields, config.preview_row_count),
        is_valid=not has_errors,
        record_summary=summary,
    )

"""
Seasonal and temporal checks over the batch's date distribution.

Records are grouped per period with pandas; each pattern compares a
per-period metric (order count or the mean of a numeric field) against the
historically expected range. Records that fall into anomalous periods, or
outside a pattern's plausible date bounds, receive warnings.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from app.api.schemas.rules import SeasonalPattern, SeasonalPeriod
from app.domain.imports.models import (
    CanonicalRecord,
    OutcomeKind,
    Severity,
    ValidationOutcome,
    ValidatorResult,
)
from app.domain.imports.validators import parse_decimal
from app.utils.date import parse_flexible_date

logger = logging.getLogger(__name__)

PERIOD_FREQUENCIES = {
    SeasonalPeriod.DAILY: "D",
    SeasonalPeriod.WEEKLY: "W",
    SeasonalPeriod.MONTHLY: "M",
    SeasonalPeriod.QUARTERLY: "Q",
    SeasonalPeriod.YEARLY: "Y",
}

TREND_FIELDS = ("order_value", "quantity")
TREND_MIN_POINTS = 5
TREND_SUGGESTION_CONFIDENCE = 0.7
SEVERE_DEVIATION = 0.5


def _to_number(value: str) -> Optional[float]:
    number = parse_decimal(value) if value else None
    return float(number) if number is not None else None


def build_frame(records: Sequence[CanonicalRecord], date_field: str) -> pd.DataFrame:
    """One row per record with a parseable date: item id, row number, timestamp and raw values."""
    rows: List[Dict[str, Any]] = []
    for record in records:
        timestamp = parse_flexible_date(record.get(date_field), log_context=date_field)
        if timestamp is None:
            continue
        entry: Dict[str, Any] = {"item_id": record.item_id, "row_number": record.row_number, "date": timestamp}
        for key, value in record.values.items():
            entry[key] = value
        rows.append(entry)
    frame = pd.DataFrame(rows)
    if not frame.empty:
        frame["date"] = pd.to_datetime(frame["date"])
    return frame


def _period_metric(frame: pd.DataFrame, pattern: SeasonalPattern) -> pd.Series:
    periods = frame["date"].dt.to_period(PERIOD_FREQUENCIES[pattern.period])
    if pattern.metric == "count":
        return frame.groupby(periods).size().astype(float)
    if pattern.metric not in frame.columns:
        return pd.Series(dtype=float)
    values = frame[pattern.metric].map(_to_number).astype(float)
    return values.groupby(periods).mean().dropna()


def _deviation(value: float, expected_min: float, expected_max: float) -> float:
    midpoint = (expected_min + expected_max) / 2
    if midpoint == 0:
        return abs(value)
    return abs(value - midpoint) / abs(midpoint)


def analyze_trends(frame: pd.DataFrame) -> List[Dict[str, Any]]:
    """Linear trend and volatility of numeric fields ordered by date."""
    trends: List[Dict[str, Any]] = []
    if frame.empty:
        return trends
    ordered = frame.sort_values("date", kind="mergesort")
    for field_key in TREND_FIELDS:
        if field_key not in ordered.columns:
            continue
        values = ordered[field_key].map(_to_number).dropna().astype(float).reset_index(drop=True)
        count = len(values)
        if count < TREND_MIN_POINTS:
            continue
        positions = pd.Series(range(count), dtype=float)
        denominator = count * (positions * positions).sum() - positions.sum() ** 2
        slope = (count * (positions * values).sum() - positions.sum() * values.sum()) / denominator
        mean = values.mean()
        volatility = values.std(ddof=0) / mean if mean else 0.0

        if volatility > 0.5:
            trend, confidence = "volatile", 0.8
            description = f"High volatility in {field_key}: irregular values detected"
        elif abs(slope) < 0.01:
            trend, confidence = "stable", 0.9
            description = f"Stable {field_key}: consistent values"
        elif slope > 0:
            trend, confidence = "increasing", min(abs(slope) * 100, 0.95)
            description = f"Upward trend in {field_key} ({slope * 100:.2f}% per record)"
        else:
            trend, confidence = "decreasing", min(abs(slope) * 100, 0.95)
            description = f"Downward trend in {field_key} ({slope * 100:.2f}% per record)"

        trends.append({
            "field": field_key,
            "trend": trend,
            "slope": float(slope),
            "confidence": float(confidence),
            "description": description,
        })
    return trends


class SeasonalChecker:
    def __init__(self, patterns: Sequence[SeasonalPattern]):
        self.patterns = [pattern for pattern in patterns if pattern.enabled]

    def check(self, records: Sequence[CanonicalRecord]) -> ValidatorResult:
        outcomes: List[ValidationOutcome] = []
        pattern_details: List[Dict[str, Any]] = []
        anomalies = 0
        warnings = 0
        passed = 0
        frames: Dict[str, pd.DataFrame] = {}

        for pattern in self.patterns:
            if pattern.date_field not in frames:
                frames[pattern.date_field] = build_frame(records, pattern.date_field)
            frame = frames[pattern.date_field]
            if frame.empty:
                pattern_details.append({"pattern_id": pattern.id, "checked": False, "reason": "no parseable dates"})
                passed += 1
                continue

            periods = frame["date"].dt.to_period(PERIOD_FREQUENCIES[pattern.period])
            metric = _period_metric(frame, pattern)
            lower = pattern.expected_min * (1 - pattern.tolerance)
            upper = pattern.expected_max * (1 + pattern.tolerance)
            anomalous_periods: Dict[Any, Dict[str, Any]] = {}
            for period, value in metric.items():
                if lower <= value <= upper:
                    continue
                deviation = _deviation(value, pattern.expected_min, pattern.expected_max)
                severity = Severity.ERROR if deviation > SEVERE_DEVIATION else Severity.WARNING
                if severity == Severity.ERROR:
                    anomalies += 1
                else:
                    warnings += 1
                anomalous_periods[period] = {
                    "period": str(period),
                    "value": round(float(value), 2),
                    "deviation": round(deviation * 100, 1),
                    "severity": severity,
                }

            for item_id, row_number, period in zip(frame["item_id"], frame["row_number"], periods):
                detail = anomalous_periods.get(period)
                if detail is None:
                    continue
                outcomes.append(ValidationOutcome(
                    item_id=item_id,
                    is_valid=False,
                    kind=OutcomeKind.SEASONAL,
                    payload={"pattern_id": pattern.id, "period": detail["period"], "value": detail["value"],
                             "deviation": detail["deviation"]},
                    severity=detail["severity"],
                    message=(
                        f"Row {row_number}: {pattern.name} for {detail['period']} is {detail['value']} "
                        f"(expected {pattern.expected_min:g}-{pattern.expected_max:g})"
                    ),
                    field=pattern.date_field,
                ))

            out_of_bounds = self._check_bounds(frame, pattern)
            outcomes.extend(out_of_bounds)

            if not anomalous_periods and not out_of_bounds:
                passed += 1
            pattern_details.append({
                "pattern_id": pattern.id,
                "checked": True,
                "periods": len(metric),
                "anomalous_periods": [
                    {**detail, "severity": detail["severity"].value} for detail in anomalous_periods.values()
                ],
                "out_of_bounds": len(out_of_bounds),
            })

        trend_frame = next(iter(frames.values()), pd.DataFrame())
        if trend_frame.empty:
            trend_frame = build_frame(records, "order_date")
        trends = analyze_trends(trend_frame)

        anomalous_items = {outcome.item_id for outcome in outcomes}
        return ValidatorResult(
            kind=OutcomeKind.SEASONAL,
            outcomes=outcomes,
            summary={
                "total_patterns": len(self.patterns),
                "passed_patterns": passed,
                "anomalies": anomalies,
                "warnings": warnings,
                "records_checked": len(records),
                "records_flagged": len(anomalous_items),
                "patterns": pattern_details,
                "trends": trends,
            },
        )

    def _check_bounds(self, frame: pd.DataFrame, pattern: SeasonalPattern) -> List[ValidationOutcome]:
        earliest = parse_flexible_date(pattern.earliest_date) if pattern.earliest_date else None
        latest = parse_flexible_date(pattern.latest_date) if pattern.latest_date else None
        if earliest is None and latest is None:
            return []

        outcomes = []
        for item_id, row_number, timestamp in zip(frame["item_id"], frame["row_number"], frame["date"]):
            if earliest is not None and timestamp < earliest:
                problem = f"before {earliest.date().isoformat()}"
            elif latest is not None and timestamp > latest:
                problem = f"after {latest.date().isoformat()}"
            else:
                continue
            outcomes.append(ValidationOutcome(
                item_id=item_id,
                is_valid=False,
                kind=OutcomeKind.SEASONAL,
                payload={"pattern_id": pattern.id, "date": timestamp.date().isoformat(), "bound": problem},
                severity=Severity.WARNING,
                message=f"Row {row_number}: {pattern.date_field} {timestamp.date().isoformat()} is {problem}",
                field=pattern.date_field,
            ))
        return outcomes

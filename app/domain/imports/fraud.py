"""
Fraud pattern matching.

A pattern matches a record when at least 80% of its conditions hold. The
record takes the highest risk level among matched patterns and the
strictest action, which maps to an accept/review/block recommendation.
"""
import bisect
import logging
import re
from collections import Counter, defaultdict
from datetime import timedelta
from typing import Dict, List, Optional, Pattern, Sequence, Tuple

import pandas as pd

from app.api.schemas.rules import RISK_ORDER, FraudCondition, FraudPattern, RiskLevel
from app.domain.imports.models import CanonicalRecord, OutcomeKind, Severity, ValidationOutcome
from app.domain.imports.validators import parse_decimal
from app.utils.date import parse_flexible_date

logger = logging.getLogger(__name__)

PATTERN_MATCH_RATIO = 0.8
VELOCITY_TIME_FIELD = "order_date"

ACTION_WEIGHTS = {"allow": 0, "flag": 1, "review": 2, "block": 3}
RECOMMENDATIONS = {"allow": "accept", "flag": "review", "review": "review", "block": "block"}


def default_fraud_patterns() -> List[FraudPattern]:
    """Common patterns offered to new accounts."""
    return [
        FraudPattern(
            id="frequent-orders", name="Very frequent orders",
            description="Several orders from the same customer in a short period",
            conditions=[FraudCondition(field="customer_email", operator="velocity",
                                       threshold=3, time_window_minutes=30)],
            risk_level=RiskLevel.HIGH, action="review",
        ),
        FraudPattern(
            id="very-high-value", name="Very high order value",
            description="Orders with an exceptionally high value",
            conditions=[FraudCondition(field="order_value", operator="greater_than", value=5000)],
            risk_level=RiskLevel.MEDIUM, action="flag",
        ),
        FraudPattern(
            id="suspicious-postal-code", name="Suspicious postal code",
            description="Postal code prefixes with a high fraud rate",
            conditions=[FraudCondition(field="delivery_zipcode", operator="regex", value=r"^(01310|01311|04578)")],
            risk_level=RiskLevel.LOW, action="flag",
        ),
        FraudPattern(
            id="sequential-phone", name="Sequential phone number",
            description="Phone numbers made of sequential digits",
            conditions=[FraudCondition(field="customer_phone", operator="regex",
                                       value=r".*(0123456789|1234567890|9876543210).*")],
            risk_level=RiskLevel.HIGH, action="block",
        ),
        FraudPattern(
            id="disposable-email", name="Disposable email",
            description="Email from a temporary mailbox provider",
            conditions=[FraudCondition(field="customer_email", operator="regex",
                                       value=r"@(10minutemail|guerrillamail|mailinator|temp-mail)\.")],
            risk_level=RiskLevel.CRITICAL, action="block",
        ),
    ]


def _normalize(value: str) -> str:
    return (value or "").strip().lower()


def _number(value) -> Optional[float]:
    if isinstance(value, (int, float)):
        return float(value)
    parsed = parse_decimal(str(value)) if value not in (None, "") else None
    return float(parsed) if parsed is not None else None


class VelocityIndex:
    """Per field value, the sorted order timestamps of every record in the batch."""

    def __init__(self, records: Sequence[CanonicalRecord], fields: Sequence[str]):
        self._times: Dict[str, Dict[str, List[pd.Timestamp]]] = {}
        self._undated: Dict[str, Counter] = {}
        self._record_times: Dict[str, Optional[pd.Timestamp]] = {}
        for record in records:
            self._record_times[record.item_id] = parse_flexible_date(
                record.get(VELOCITY_TIME_FIELD), log_context="velocity"
            )
        for field_key in set(fields):
            times: Dict[str, List[pd.Timestamp]] = defaultdict(list)
            undated: Counter = Counter()
            for record in records:
                key = _normalize(record.get(field_key))
                if not key:
                    continue
                timestamp = self._record_times[record.item_id]
                if timestamp is None:
                    undated[key] += 1
                else:
                    times[key].append(timestamp)
            for values in times.values():
                values.sort()
            self._times[field_key] = dict(times)
            self._undated[field_key] = undated

    def count_recent(self, record: CanonicalRecord, field_key: str, window: timedelta) -> int:
        """Other records sharing the field value inside ``window`` before (and at) this record's time."""
        key = _normalize(record.get(field_key))
        if not key:
            return 0
        timestamp = self._record_times.get(record.item_id)
        if timestamp is None:
            # Undated records are treated as simultaneous with each other
            return max(self._undated.get(field_key, Counter())[key] - 1, 0)
        times = self._times.get(field_key, {}).get(key, [])
        lower = bisect.bisect_left(times, timestamp - window)
        upper = bisect.bisect_right(times, timestamp)
        return max(upper - lower - 1, 0)


class FraudDetector:
    def __init__(self, patterns: Sequence[FraudPattern], records: Sequence[CanonicalRecord]):
        self.patterns = [pattern for pattern in patterns if pattern.enabled]
        self._regexes: Dict[Tuple[str, int], Pattern] = {}
        velocity_fields = []
        for pattern in self.patterns:
            for index, condition in enumerate(pattern.conditions):
                if condition.operator == "regex":
                    self._regexes[(pattern.id, index)] = re.compile(str(condition.value), re.IGNORECASE)
                elif condition.operator == "velocity":
                    velocity_fields.append(condition.field)
        self._velocity = VelocityIndex(records, velocity_fields) if velocity_fields else None

    def _condition_matches(
        self, pattern: FraudPattern, index: int, condition: FraudCondition, record: CanonicalRecord
    ) -> Tuple[bool, str]:
        raw = record.get(condition.field)
        operator = condition.operator

        if operator == "velocity":
            window = timedelta(minutes=float(condition.time_window_minutes))
            count = self._velocity.count_recent(record, condition.field, window)
            matched = count >= condition.threshold
            return matched, f"{count} similar orders within {condition.time_window_minutes:g} minutes"

        if operator in ("greater_than", "less_than"):
            value, limit = _number(raw), _number(condition.value)
            if value is None or limit is None:
                return False, ""
            matched = value > limit if operator == "greater_than" else value < limit
            return matched, f"{condition.field} {value:g} {'>' if operator == 'greater_than' else '<'} {limit:g}"

        if operator == "regex":
            matched = bool(raw) and self._regexes[(pattern.id, index)].search(raw) is not None
            return matched, f"{condition.field} matches a suspicious pattern"

        expected = _normalize("" if condition.value is None else str(condition.value))
        actual = _normalize(raw)
        if operator == "equals":
            return actual == expected, f"{condition.field} is '{raw}'"
        if operator == "not_equals":
            return actual != expected, f"{condition.field} is not '{condition.value}'"
        if operator == "contains":
            return bool(expected) and expected in actual, f"{condition.field} contains '{condition.value}'"
        return False, ""

    def evaluate(self, record: CanonicalRecord) -> Optional[Dict[str, object]]:
        """Return the fraud assessment for one record, or None when no pattern matched."""
        risk = RiskLevel.NONE
        action = "allow"
        reasons: List[str] = []
        matched_patterns: List[str] = []
        confidence = 0.0

        for pattern in self.patterns:
            matches = []
            for index, condition in enumerate(pattern.conditions):
                matched, reason = self._condition_matches(pattern, index, condition, record)
                if matched:
                    matches.append(reason)
            ratio = len(matches) / len(pattern.conditions)
            if ratio < PATTERN_MATCH_RATIO:
                continue
            matched_patterns.append(pattern.id)
            reasons.append(f"{pattern.name}: {'; '.join(matches)}")
            confidence = max(confidence, ratio)
            if RISK_ORDER[pattern.risk_level] > RISK_ORDER[risk]:
                risk = pattern.risk_level
            if ACTION_WEIGHTS[pattern.action] > ACTION_WEIGHTS[action]:
                action = pattern.action

        if not matched_patterns:
            return None
        return {
            "risk_level": risk.value,
            "action": action,
            "recommendation": RECOMMENDATIONS[action],
            "confidence": confidence,
            "reasons": reasons,
            "patterns": matched_patterns,
        }

    def check_records(self, records: Sequence[CanonicalRecord]) -> List[ValidationOutcome]:
        """Per-chunk validator: one outcome per record flagged for review or block."""
        outcomes: List[ValidationOutcome] = []
        for record in records:
            assessment = self.evaluate(record)
            if assessment is None or assessment["recommendation"] == "accept":
                continue
            blocked = assessment["recommendation"] == "block"
            outcomes.append(ValidationOutcome(
                item_id=record.item_id,
                is_valid=False,
                kind=OutcomeKind.FRAUD,
                payload=assessment,
                severity=Severity.ERROR if blocked else Severity.WARNING,
                message=(
                    f"Row {record.row_number}: {str(assessment['risk_level']).upper()} fraud risk "
                    f"({'; '.join(assessment['reasons'])})"
                ),
                hard=blocked,
            ))
        return outcomes

    @staticmethod
    def summarize(outcomes: Sequence[ValidationOutcome], total_records: int) -> Dict[str, object]:
        recommendations = Counter(outcome.payload["recommendation"] for outcome in outcomes)
        risks = Counter(outcome.payload["risk_level"] for outcome in outcomes)
        flagged = len({outcome.item_id for outcome in outcomes})
        return {
            "total_records": total_records,
            "flagged_records": flagged,
            "blocked_records": recommendations.get("block", 0),
            "review_records": recommendations.get("review", 0),
            "flagged_ratio": flagged / total_records if total_records else 0.0,
            "risk_distribution": dict(risks),
        }

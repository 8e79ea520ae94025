"""
Configurable per-record business rules.
"""
import logging
import re
from collections import Counter
from typing import Dict, List, Optional, Pattern, Sequence

from app.api.schemas.rules import BusinessRule, RuleSeverity
from app.domain.imports.fields import field_label
from app.domain.imports.models import CanonicalRecord, OutcomeKind, Severity, ValidationOutcome
from app.domain.imports.validators import parse_decimal

logger = logging.getLogger(__name__)

_SEVERITY = {
    RuleSeverity.ERROR: Severity.ERROR,
    RuleSeverity.WARNING: Severity.WARNING,
    RuleSeverity.INFO: Severity.INFO,
}


def default_business_rules() -> List[BusinessRule]:
    """Common rules offered to new accounts."""
    return [
        BusinessRule(id="min-order-value", name="Minimum order value", field="order_value",
                     rule_type="min_value", value=10.0, severity=RuleSeverity.ERROR,
                     message="Order value is below the allowed minimum"),
        BusinessRule(id="email-required", name="Customer email required", field="customer_email",
                     rule_type="required", severity=RuleSeverity.ERROR,
                     message="Customer email is required"),
        BusinessRule(id="phone-format", name="Phone format", field="customer_phone",
                     rule_type="pattern", value=r"^\(\d{2}\)\s\d{4,5}-\d{4}$", severity=RuleSeverity.WARNING,
                     message="Phone should look like (11) 99999-9999"),
        BusinessRule(id="max-order-value", name="Maximum order value", field="order_value",
                     rule_type="max_value", value=5000.0, severity=RuleSeverity.WARNING,
                     message="Order value is unusually high, check that it is correct"),
    ]


class BusinessRuleChecker:
    def __init__(self, rules: Sequence[BusinessRule]):
        self.rules = [rule for rule in rules if rule.enabled]
        self._patterns: Dict[str, Pattern] = {}
        for rule in self.rules:
            if rule.rule_type == "pattern":
                self._patterns[rule.id] = re.compile(str(rule.value))

    def _violation(self, rule: BusinessRule, raw: str) -> Optional[str]:
        """Return a reason when ``raw`` violates ``rule``, otherwise None."""
        if rule.rule_type == "required":
            return "value is empty" if not raw else None
        if not raw:
            return None

        if rule.rule_type == "pattern":
            if self._patterns[rule.id].search(raw) is None:
                return f"'{raw}' does not match the expected pattern"
            return None

        number = parse_decimal(raw)
        if number is None:
            return None
        value = float(number)
        if rule.rule_type == "min_value" and value < float(rule.value):
            return f"{value:g} is below the minimum of {float(rule.value):g}"
        if rule.rule_type == "max_value" and value > float(rule.value):
            return f"{value:g} is above the maximum of {float(rule.value):g}"
        if rule.rule_type == "range" and not (rule.min <= value <= rule.max):
            return f"{value:g} is outside {rule.min:g}-{rule.max:g}"
        return None

    def check_records(self, records: Sequence[CanonicalRecord]) -> List[ValidationOutcome]:
        """Per-chunk validator: one outcome per violated rule per record."""
        outcomes: List[ValidationOutcome] = []
        for record in records:
            for rule in self.rules:
                if rule.field not in record.values and rule.rule_type != "required":
                    continue
                reason = self._violation(rule, record.get(rule.field))
                if reason is None:
                    continue
                severity = _SEVERITY[rule.severity]
                label = rule.message or rule.name
                outcomes.append(ValidationOutcome(
                    item_id=record.item_id,
                    is_valid=False,
                    kind=OutcomeKind.BUSINESS_RULE,
                    payload={"rule_id": rule.id, "rule_name": rule.name, "reason": reason},
                    severity=severity,
                    message=f"Row {record.row_number}: {label} ({field_label(rule.field)}: {reason})",
                    field=rule.field,
                    hard=severity == Severity.ERROR,
                ))
        return outcomes

    def summarize(self, outcomes: Sequence[ValidationOutcome], total_records: int) -> Dict[str, object]:
        violated_records = {outcome.item_id for outcome in outcomes}
        by_severity = Counter(outcome.severity.value for outcome in outcomes)
        by_rule = Counter(outcome.payload.get("rule_id") for outcome in outcomes)
        return {
            "total_rules": len(self.rules),
            "records_checked": total_records,
            "records_passed": total_records - len(violated_records),
            "errors": by_severity.get(Severity.ERROR.value, 0),
            "warnings": by_severity.get(Severity.WARNING.value, 0),
            "infos": by_severity.get(Severity.INFO.value, 0),
            "violations_by_rule": dict(by_rule),
        }

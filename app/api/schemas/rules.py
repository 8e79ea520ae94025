"""
Rule sets consumed by the business-rule, seasonal and fraud validators.

Rules arrive as data (request bodies or stored presets) and are validated
here before any validator sees them.
"""
import re
from enum import Enum
from typing import Any, List, Optional, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


def _check_regex(value: Any, owner: str) -> None:
    try:
        re.compile(str(value))
    except re.error as exc:
        raise ValueError(f"{owner} has an invalid regex '{value}': {exc}") from exc


class RuleSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class BusinessRule(BaseModel):
    """A single per-record constraint on one canonical field."""
    id: str
    name: str
    field: str
    rule_type: Literal["min_value", "max_value", "range", "pattern", "required"]
    value: Optional[Any] = None  # threshold for min_value/max_value, regex for pattern
    min: Optional[float] = None  # range lower bound
    max: Optional[float] = None  # range upper bound
    severity: RuleSeverity = RuleSeverity.WARNING
    message: Optional[str] = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_parameters(self) -> "BusinessRule":
        if self.rule_type in ("min_value", "max_value") and self.value is None:
            raise ValueError(f"Rule '{self.id}' of type {self.rule_type} needs a numeric 'value'")
        if self.rule_type == "range" and (self.min is None or self.max is None):
            raise ValueError(f"Rule '{self.id}' of type range needs both 'min' and 'max'")
        if self.rule_type == "pattern" and not isinstance(self.value, str):
            raise ValueError(f"Rule '{self.id}' of type pattern needs a regex string 'value'")
        if self.rule_type == "pattern":
            _check_regex(self.value, f"Rule '{self.id}'")
        return self


class SeasonalPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class SeasonalPattern(BaseModel):
    """
    Learned historical bounds for one per-period metric.

    ``metric`` is "count" (orders per period) or the name of a numeric field
    whose per-period mean is checked.
    """
    id: str
    name: str
    date_field: str = "order_date"
    period: SeasonalPeriod = SeasonalPeriod.MONTHLY
    metric: str = "count"
    expected_min: float
    expected_max: float
    tolerance: float = Field(default=0.2, ge=0)
    earliest_date: Optional[str] = None
    latest_date: Optional[str] = None
    enabled: bool = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "SeasonalPattern":
        if self.expected_min > self.expected_max:
            raise ValueError(f"Seasonal pattern '{self.id}': expected_min exceeds expected_max")
        return self


class RiskLevel(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


RISK_ORDER = {
    RiskLevel.NONE: 0,
    RiskLevel.LOW: 1,
    RiskLevel.MEDIUM: 2,
    RiskLevel.HIGH: 3,
    RiskLevel.CRITICAL: 4,
}


class FraudCondition(BaseModel):
    field: str
    operator: Literal["equals", "not_equals", "greater_than", "less_than", "contains", "regex", "velocity"]
    value: Optional[Any] = None
    # velocity: at least ``threshold`` other orders with the same field value within the window
    threshold: Optional[int] = None
    time_window_minutes: Optional[float] = None

    @model_validator(mode="after")
    def _check_operator(self) -> "FraudCondition":
        if self.operator == "velocity" and (self.threshold is None or self.time_window_minutes is None):
            raise ValueError("velocity conditions need 'threshold' and 'time_window_minutes'")
        if self.operator == "regex":
            _check_regex(self.value, f"Condition on '{self.field}'")
        return self


class FraudPattern(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    conditions: List[FraudCondition]
    risk_level: RiskLevel = RiskLevel.MEDIUM
    action: Literal["allow", "flag", "review", "block"] = "review"
    enabled: bool = True

    @field_validator("conditions")
    @classmethod
    def _non_empty(cls, value: List[FraudCondition]) -> List[FraudCondition]:
        if not value:
            raise ValueError("a fraud pattern needs at least one condition")
        return value


class RuleSet(BaseModel):
    """All configurable rules for one validation run."""
    business_rules: List[BusinessRule] = Field(default_factory=list)
    seasonal_patterns: List[SeasonalPattern] = Field(default_factory=list)
    fraud_patterns: List[FraudPattern] = Field(default_factory=list)

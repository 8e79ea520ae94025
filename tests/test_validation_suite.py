"""
Tests for category isolation and record status folding in the validation suite.
"""
from app.api.schemas.rules import BusinessRule, RuleSet, RuleSeverity
from app.domain.imports.errors import ChunkValidationError, LookupUnavailableError
from app.domain.imports.models import (
    CanonicalRecord,
    OutcomeKind,
    RecordStatus,
    Severity,
    ValidationOutcome,
    ValidatorResult,
    to_raw_rows,
)
from app.domain.imports.pipeline import ValidationSuite, apply_outcomes, run_guarded
from app.domain.imports.quality import build_report


def _outcome(item_id, *, severity=Severity.WARNING, hard=False, is_valid=False, message="problem"):
    return ValidationOutcome(
        item_id=item_id, is_valid=is_valid, kind=OutcomeKind.FORMAT,
        payload={}, severity=severity, message=message, hard=hard,
    )


class TestRunGuarded:
    def test_exception_becomes_unavailable_result(self):
        def boom():
            raise RuntimeError("lookup table missing")

        result = run_guarded(OutcomeKind.DUPLICATE, boom)
        assert not result.available
        assert result.unavailable_reason == "lookup table missing"

    def test_chunk_failure_reports_the_cause(self):
        def failing_chunk():
            raise ChunkValidationError(2, LookupUnavailableError("Postal code", "timeout"))

        result = run_guarded(OutcomeKind.POSTAL_LOOKUP, failing_chunk)
        assert result.unavailable_reason == "Postal code lookup unavailable: timeout"

    def test_results_pass_through(self):
        expected = ValidatorResult(kind=OutcomeKind.FRAUD)
        assert run_guarded(OutcomeKind.FRAUD, lambda: expected) is expected
        assert run_guarded(OutcomeKind.FRAUD, lambda: None) is None


class TestApplyOutcomes:
    def test_hard_soft_and_info_outcomes(self):
        records = [CanonicalRecord(row_number=n, values={}) for n in (1, 2, 3, 4)]
        results = [ValidatorResult(kind=OutcomeKind.FORMAT, outcomes=[
            _outcome("row-1", severity=Severity.ERROR, hard=True, message="bad email"),
            _outcome("row-2", message="odd phone"),
            _outcome("row-3", severity=Severity.INFO),
            _outcome("row-4", is_valid=True),
            _outcome("row-99", hard=True),
        ])]

        apply_outcomes(records, results)

        assert [record.status for record in records] == [
            RecordStatus.INVALID, RecordStatus.WARNING, RecordStatus.VALID, RecordStatus.VALID,
        ]
        assert records[0].errors == ["bad email"]
        assert records[1].warnings == ["odd phone"]

    def test_error_wins_over_warning(self):
        record = CanonicalRecord(row_number=1, values={})
        apply_outcomes([record], [ValidatorResult(kind=OutcomeKind.FORMAT, outcomes=[
            _outcome("row-1", message="warn first"),
            _outcome("row-1", severity=Severity.ERROR, hard=True, message="then fail"),
            _outcome("row-1", message="warn again"),
        ])])
        assert record.status == RecordStatus.INVALID
        assert record.warnings == ["warn first", "warn again"]


class TestSuiteIsolation:
    def test_failing_duplicate_store_does_not_stop_other_categories(self, test_settings, make_rows, headers, full_mapping):
        class BrokenStore:
            def find_by_tracking_codes(self, codes):
                raise ConnectionError("database is down")

            def load_mapping_patterns(self):
                return []

        suite = ValidationSuite(store=BrokenStore(), config=test_settings)
        result = suite.run(to_raw_rows(make_rows(5)), headers, full_mapping)

        assert not result.results[OutcomeKind.DUPLICATE].available
        assert result.results[OutcomeKind.CARRIER_LOOKUP].available
        assert OutcomeKind.MAPPING_SUGGESTION in result.results
        assert not result.cancelled
        assert len(result.records) == 5

    def test_broken_business_rule_only_disables_its_category(self, test_settings, fake_store, make_rows, headers, full_mapping):
        # Bypasses model validation so the checker itself meets the bad pattern.
        broken = BusinessRule.model_construct(
            id="bad-pattern", name="Bad pattern", field="customer_name", rule_type="pattern",
            value="(unclosed", min=None, max=None, severity=RuleSeverity.WARNING, message=None, enabled=True,
        )
        suite = ValidationSuite(store=fake_store, rules=RuleSet(business_rules=[broken]), config=test_settings)
        result = suite.run(to_raw_rows(make_rows(4)), headers, full_mapping)

        assert not result.results[OutcomeKind.BUSINESS_RULE].available
        assert result.results[OutcomeKind.DUPLICATE].available
        assert OutcomeKind.MAPPING_SUGGESTION in result.results
        assert not result.cancelled
        assert len(result.records) == 4

        report = build_report(result, config=test_settings)
        titles = [alert.title for alert in report.alerts if alert.severity == Severity.INFO]
        assert "Business rule validation unavailable" in titles

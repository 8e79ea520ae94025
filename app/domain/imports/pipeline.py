"""
Runs every validator category for one mapping state.

Categories run sequentially on the caller's thread. Row-level categories go
through the chunked engine; lookups use smaller chunks with a pause between
them. A failure inside one category degrades to an "unavailable" result and
the remaining categories still run; cancellation stops the whole run.
"""
import logging
import time
from collections import Counter
from functools import partial
from typing import Callable, Dict, List, Optional, Sequence

from app.api.schemas.rules import RuleSet
from app.core.config import Settings, settings as default_settings
from app.domain.imports.business_rules import BusinessRuleChecker
from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.carriers import CarrierLookup
from app.domain.imports.chunking import validate_in_chunks
from app.domain.imports.duplicates import check_duplicates
from app.domain.imports.errors import ChunkValidationError, ImportPipelineError
from app.domain.imports.fraud import FraudDetector
from app.domain.imports.lookups import PostalCodeLookup, normalize_postal_code
from app.domain.imports.mapper import check_records, check_structure, format_pass_rates, map_rows
from app.domain.imports.models import (
    CanonicalRecord,
    FieldMapping,
    OutcomeKind,
    ProgressEvent,
    RawRow,
    Severity,
    ValidationOutcome,
    ValidationRunResult,
    ValidatorResult,
)
from app.domain.imports.seasonal import SeasonalChecker
from app.domain.imports.suggestions import MappingAdvisor

logger = logging.getLogger(__name__)

ProgressListener = Callable[[ProgressEvent], None]


class RunCancelled(Exception):
    """Internal signal used to unwind a cancelled run; never leaves this module."""


class ValidationSuite:
    def __init__(
        self,
        *,
        store=None,
        rules: Optional[RuleSet] = None,
        carrier_lookup: Optional[CarrierLookup] = None,
        postal_lookup: Optional[PostalCodeLookup] = None,
        advisor: Optional[MappingAdvisor] = None,
        config: Optional[Settings] = None,
    ):
        self.store = store
        self.rules = rules or RuleSet()
        self.config = config or default_settings
        self.carrier_lookup = carrier_lookup or CarrierLookup()
        if postal_lookup is None and self.config.postal_lookup_enabled:
            postal_lookup = PostalCodeLookup(
                self.config.postal_lookup_base_url,
                timeout_seconds=self.config.postal_lookup_timeout_seconds,
            )
        self.postal_lookup = postal_lookup
        self.advisor = advisor or MappingAdvisor(store)

    def run(
        self,
        rows: Sequence[RawRow],
        headers: Sequence[str],
        mapping: FieldMapping,
        *,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressListener] = None,
    ) -> ValidationRunResult:
        token = token or CancellationToken()
        started = time.perf_counter()
        result = ValidationRunResult(mapping=mapping, records=[], total_rows=len(rows))

        if not rows:
            logger.info("Validation skipped: dataset is empty")
            return result

        structural = check_structure(mapping, headers)
        result.results[OutcomeKind.STRUCTURAL] = structural
        if structural.summary["required_mapped"] == 0:
            logger.info("Validation stopped: no required field is mapped")
            result.elapsed_seconds = time.perf_counter() - started
            return result

        records = map_rows(rows, mapping)
        try:
            self._run_categories(result, records, rows, headers, mapping, token, on_progress)
        except RunCancelled:
            result.cancelled = True
            result.elapsed_seconds = time.perf_counter() - started
            logger.info("Validation run cancelled after %.2fs", result.elapsed_seconds)
            return result

        apply_outcomes(records, result.results.values())
        result.records = records
        result.elapsed_seconds = time.perf_counter() - started
        logger.info(
            "Validation finished: %d rows, %d categories, %.2fs",
            len(rows), len(result.results), result.elapsed_seconds,
        )
        return result

    def _run_categories(self, result, records, rows, headers, mapping, token, on_progress) -> None:
        field_map = mapping.as_field_map()

        def progress(stage: str):
            if on_progress is None:
                return None

            def _report(processed: int, total: int, percent: float) -> None:
                if not token.cancelled:
                    on_progress(ProgressEvent(stage=stage, processed=processed, total=total, percent=percent))
            return _report

        def guarded(kind: OutcomeKind, step: Callable[[], Optional[ValidatorResult]]) -> None:
            if token.cancelled:
                raise RunCancelled()
            category = run_guarded(kind, step)
            if category is None or token.cancelled:
                raise RunCancelled()
            result.results[kind] = category

        row_pass: Dict[str, ValidatorResult] = {}

        def rows_step() -> Optional[ValidatorResult]:
            run = validate_in_chunks(
                records,
                self.config.validation_chunk_size,
                check_records,
                token=token,
                delay_seconds=self.config.validation_chunk_delay_ms / 1000,
                on_progress=progress("rows"),
                label="row checks",
            )
            if run.cancelled:
                return None
            required = [outcome for outcome in run.outcomes if outcome.kind == OutcomeKind.REQUIRED]
            formats = [outcome for outcome in run.outcomes if outcome.kind == OutcomeKind.FORMAT]
            row_pass["required"] = ValidatorResult(
                kind=OutcomeKind.REQUIRED,
                outcomes=required,
                summary={"records_missing_required": len({outcome.item_id for outcome in required})},
            )
            return ValidatorResult(
                kind=OutcomeKind.FORMAT,
                outcomes=formats,
                summary={"fields": format_pass_rates(formats), "chunks": len(run.chunks)},
            )

        guarded(OutcomeKind.FORMAT, rows_step)
        if "required" in row_pass:
            result.results[OutcomeKind.REQUIRED] = row_pass["required"]

        if "tracking_code" in field_map:
            guarded(OutcomeKind.CARRIER_LOOKUP, lambda: self._carrier_step(records, token, progress("carriers")))

        if "delivery_zipcode" in field_map and self.postal_lookup is not None:
            guarded(OutcomeKind.POSTAL_LOOKUP, lambda: self._postal_step(records, token, progress("postal_codes")))

        guarded(OutcomeKind.DUPLICATE, lambda: check_duplicates(records, self.store))

        if self.rules.business_rules:
            def rules_step() -> Optional[ValidatorResult]:
                checker = BusinessRuleChecker(self.rules.business_rules)
                run = validate_in_chunks(
                    records, self.config.validation_chunk_size, checker.check_records,
                    token=token, label="business rules",
                )
                if run.cancelled:
                    return None
                return ValidatorResult(
                    kind=OutcomeKind.BUSINESS_RULE,
                    outcomes=run.outcomes,
                    summary=checker.summarize(run.outcomes, len(records)),
                )

            guarded(OutcomeKind.BUSINESS_RULE, rules_step)

        if self.rules.seasonal_patterns:
            guarded(OutcomeKind.SEASONAL, lambda: SeasonalChecker(self.rules.seasonal_patterns).check(records))

        if self.rules.fraud_patterns:
            def fraud_step() -> Optional[ValidatorResult]:
                detector = FraudDetector(self.rules.fraud_patterns, records)
                run = validate_in_chunks(
                    records, self.config.validation_chunk_size, detector.check_records,
                    token=token, label="fraud patterns",
                )
                if run.cancelled:
                    return None
                return ValidatorResult(
                    kind=OutcomeKind.FRAUD,
                    outcomes=run.outcomes,
                    summary=detector.summarize(run.outcomes, len(records)),
                )

            guarded(OutcomeKind.FRAUD, fraud_step)

        guarded(OutcomeKind.MAPPING_SUGGESTION, lambda: self.advisor.check(headers, rows, mapping))

    def _carrier_step(self, records, token, on_progress) -> Optional[ValidatorResult]:
        codes = _distinct(record.get("tracking_code") for record in records)
        run = validate_in_chunks(
            codes,
            self.config.carrier_lookup_chunk_size,
            self.carrier_lookup.validate_codes,
            token=token,
            delay_seconds=self.config.carrier_lookup_delay_ms / 1000,
            on_progress=on_progress,
            label="carrier lookup",
        )
        if run.cancelled:
            return None
        carriers = Counter(outcome.payload.get("carrier") for outcome in run.outcomes if outcome.is_valid)
        inconsistencies = self.carrier_lookup.check_consistency(records)
        return ValidatorResult(
            kind=OutcomeKind.CARRIER_LOOKUP,
            outcomes=inconsistencies,
            summary={
                "distinct_codes": len(codes),
                "recognized": run.total_valid,
                "recognized_ratio": run.total_valid / len(codes) if codes else None,
                "by_carrier": dict(carriers),
                "inconsistencies": len(inconsistencies),
                "code_outcomes": run.outcomes,
            },
        )

    def _postal_step(self, records, token, on_progress) -> Optional[ValidatorResult]:
        by_code: Dict[str, List[CanonicalRecord]] = {}
        for record in records:
            digits = normalize_postal_code(record.get("delivery_zipcode"))
            if digits is not None:
                by_code.setdefault(digits, []).append(record)
        codes = list(by_code)
        run = validate_in_chunks(
            codes,
            self.config.postal_lookup_chunk_size,
            partial(self.postal_lookup.validate_codes, token=token),
            token=token,
            delay_seconds=self.config.postal_lookup_delay_ms / 1000,
            on_progress=on_progress,
            label="postal code lookup",
        )
        if run.cancelled:
            return None

        outcomes: List[ValidationOutcome] = []
        for code_outcome in run.outcomes:
            if code_outcome.is_valid:
                continue
            for record in by_code.get(code_outcome.item_id, []):
                outcomes.append(ValidationOutcome(
                    item_id=record.item_id,
                    is_valid=False,
                    kind=OutcomeKind.POSTAL_LOOKUP,
                    payload={"postal_code": code_outcome.item_id},
                    severity=Severity.WARNING,
                    message=f"Row {record.row_number}: postal code '{record.get('delivery_zipcode')}' was not found",
                    field="delivery_zipcode",
                ))
        return ValidatorResult(
            kind=OutcomeKind.POSTAL_LOOKUP,
            outcomes=outcomes,
            summary={
                "distinct_codes": len(codes),
                "found": run.total_valid,
                "found_ratio": run.total_valid / len(codes) if codes else None,
                "code_outcomes": run.outcomes,
            },
        )


def _distinct(values) -> List[str]:
    seen = {}
    for value in values:
        value = (value or "").strip()
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def run_guarded(kind: OutcomeKind, step: Callable[[], Optional[ValidatorResult]]) -> Optional[ValidatorResult]:
    """
    Run one validator category. Exceptions become an unavailable result so
    the other categories keep running; ``None`` (cancellation) passes through.
    """
    try:
        return step()
    except RunCancelled:
        raise
    except ChunkValidationError as exc:
        cause = exc.cause
        reason = cause.message if isinstance(cause, ImportPipelineError) else str(cause)
        logger.warning("%s validation unavailable (chunk %d): %s", kind.value, exc.chunk_index, reason)
        return ValidatorResult(kind=kind, unavailable_reason=reason)
    except Exception as exc:
        logger.warning("%s validation unavailable: %s", kind.value, exc, exc_info=True)
        return ValidatorResult(kind=kind, unavailable_reason=str(exc) or exc.__class__.__name__)


def apply_outcomes(records: Sequence[CanonicalRecord], results) -> None:
    """Fold failed record-level outcomes into record status: hard ones invalidate, soft ones warn."""
    by_id = {record.item_id: record for record in records}
    for category in results:
        for outcome in category.outcomes:
            if outcome.is_valid or outcome.severity == Severity.INFO:
                continue
            record = by_id.get(outcome.item_id)
            if record is None:
                continue
            message = outcome.message or f"{outcome.kind.value} check failed"
            if outcome.hard:
                record.add_error(message)
            else:
                record.add_warning(message)

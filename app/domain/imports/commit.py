"""
Commit stage: writes accepted records to the order store in chunks.

Each chunk insert is retried with exponential backoff. A chunk that still
fails is counted as failed and the executor moves on to the next one, so a
single bad chunk never stops the rest of the import.
"""
import logging
import time
from typing import Callable, List, Optional, Sequence

from app.core.config import Settings, settings as default_settings
from app.domain.imports.models import (
    CanonicalRecord,
    CommitMetrics,
    FieldMapping,
    ImportDetail,
    ImportResult,
    RecordStatus,
)
from app.domain.imports.suggestions import MappingAdvisor
from app.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

AUDIT_FAILED = "audit_failed"


def error_code(exc: BaseException) -> str:
    """Driver error code when the exception carries one (``code``/``pgcode``), else its class name."""
    for attribute in ("code", "pgcode"):
        code = getattr(exc, attribute, None)
        if code:
            return str(code)
    orig = getattr(exc, "orig", None)
    if orig is not None and orig is not exc:
        code = getattr(orig, "pgcode", None)
        if code:
            return str(code)
    return exc.__class__.__name__


def _join(messages: Sequence[str]) -> str:
    return "; ".join(messages)


class CommitExecutor:
    def __init__(
        self,
        store,
        *,
        config: Optional[Settings] = None,
        advisor: Optional[MappingAdvisor] = None,
        sleep: Callable[[float], object] = time.sleep,
    ):
        self.store = store
        self.config = config or default_settings
        self.advisor = advisor
        self.sleep = sleep

    def execute(
        self,
        records: Sequence[CanonicalRecord],
        *,
        session_id: Optional[str] = None,
        mapping: Optional[FieldMapping] = None,
    ) -> ImportResult:
        accepted = [record for record in records if record.status != RecordStatus.INVALID]
        rejected = [record for record in records if record.status == RecordStatus.INVALID]
        metrics = CommitMetrics(total=len(accepted))
        details: List[ImportDetail] = []

        for record in rejected:
            details.append(ImportDetail(
                tracking_code=record.get("tracking_code"),
                status="error",
                message=_join(record.errors) or "Record failed validation",
                row_number=record.row_number,
            ))

        chunk_size = max(1, self.config.commit_chunk_size)
        chunk_total = (len(accepted) + chunk_size - 1) // chunk_size
        logger.info(
            "Committing %d record(s) in %d chunk(s) (%d excluded by validation)",
            len(accepted), chunk_total, len(rejected),
        )

        success = warnings = failed_records = 0
        for index, start in enumerate(range(0, len(accepted), chunk_size), start=1):
            chunk = accepted[start:start + chunk_size]
            started = time.perf_counter()
            try:
                inserted = retry_with_backoff(
                    lambda: self.store.insert_orders(chunk, session_id=session_id),
                    self.config.commit_max_attempts,
                    self.config.commit_initial_delay_ms / 1000,
                    self.config.commit_backoff_multiplier,
                    sleep=self.sleep,
                    description=f"Insert of chunk {index}/{chunk_total}",
                )
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - started) * 1000
                code = error_code(exc)
                metrics.record_chunk(len(chunk), False, elapsed_ms)
                metrics.record_error(code)
                failed_records += len(chunk)
                logger.error("Chunk %d/%d failed after retries [%s]: %s", index, chunk_total, code, exc)
                for record in chunk:
                    details.append(ImportDetail(
                        tracking_code=record.get("tracking_code"),
                        status="error",
                        message=f"Commit failed: {exc}",
                        row_number=record.row_number,
                    ))
                continue

            elapsed_ms = (time.perf_counter() - started) * 1000
            metrics.record_chunk(len(chunk), True, elapsed_ms)
            self._audit(inserted, chunk, session_id, metrics, index, chunk_total)

            for record in chunk:
                if record.warnings:
                    warnings += 1
                    details.append(ImportDetail(
                        tracking_code=record.get("tracking_code"),
                        status="warning",
                        message=_join(record.warnings),
                        row_number=record.row_number,
                    ))
                else:
                    success += 1
                    details.append(ImportDetail(
                        tracking_code=record.get("tracking_code"),
                        status="success",
                        message="Imported",
                        row_number=record.row_number,
                    ))
            logger.debug("Chunk %d/%d committed in %.1fms", index, chunk_total, elapsed_ms)

        details.sort(key=lambda detail: detail.row_number or 0)
        result = ImportResult(
            success=success,
            warnings=warnings,
            errors=len(rejected) + failed_records,
            details=details,
            metrics=metrics,
        )
        logger.info(
            "Commit finished: %d imported, %d with warnings, %d errors, avg chunk %.1fms",
            success, warnings, result.errors, metrics.average_chunk_ms,
        )

        if mapping is not None and self.advisor is not None and metrics.succeeded:
            try:
                self.advisor.learn_from_mapping(mapping)
            except Exception as exc:
                logger.warning("Could not store learned mapping patterns: %s", exc)
        return result

    def _audit(self, inserted, chunk, session_id, metrics: CommitMetrics, index: int, chunk_total: int) -> None:
        by_row = {record.row_number: record for record in chunk}
        entries = []
        for row in inserted:
            record = by_row.get(row.get("row_number"))
            entries.append({
                "order_id": row.get("id"),
                "tracking_code": row.get("tracking_code"),
                "action": "imported",
                "session_id": session_id,
                "details": {
                    "row_number": row.get("row_number"),
                    "status": record.status.value if record is not None else None,
                    "warnings": list(record.warnings) if record is not None else [],
                },
            })
        try:
            retry_with_backoff(
                lambda: self.store.append_audit_entries(entries),
                self.config.audit_max_attempts,
                self.config.audit_initial_delay_ms / 1000,
                self.config.commit_backoff_multiplier,
                sleep=self.sleep,
                description=f"Audit of chunk {index}/{chunk_total}",
            )
        except Exception as exc:
            metrics.record_error(AUDIT_FAILED)
            logger.error("Audit entries for chunk %d/%d were not written: %s", index, chunk_total, exc)

"""
Mapping session: owns the field mapping and the current quality report for
one uploaded file.

Every mapping change is debounced. When the debounce fires, the running
validation (if any) is cancelled and a new run starts on its own worker
thread with a fresh cancellation token and session version. A run only
publishes its report while its version is still the current one.
"""
import logging
import threading
import uuid
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from app.core.config import Settings, settings as default_settings
from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.commit import CommitExecutor
from app.domain.imports.errors import CommitBlockedError, ImportPipelineError, SessionClosedError
from app.domain.imports.models import (
    CanonicalRecord,
    FieldMapping,
    ImportResult,
    ProgressEvent,
    QualityReport,
    RawRow,
    to_raw_rows,
)
from app.domain.imports.pipeline import ValidationSuite
from app.domain.imports.quality import build_report
from app.domain.imports.suggestions import MappingSuggestion, apply_template
from app.utils.locks import SessionLockManager

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    PENDING = "pending"
    VALIDATING = "validating"
    READY = "ready"
    FAILED = "failed"
    COMMITTING = "committing"
    COMMITTED = "committed"
    CLOSED = "closed"


class MappingSession:
    def __init__(
        self,
        headers: Sequence[str],
        rows: Sequence[Mapping[str, Any]],
        *,
        suite: ValidationSuite,
        executor: CommitExecutor,
        mapping: Optional[FieldMapping] = None,
        suggestions: Optional[List[MappingSuggestion]] = None,
        config: Optional[Settings] = None,
        session_id: Optional[str] = None,
    ):
        self.id = session_id or str(uuid.uuid4())
        self.headers = list(headers)
        self.rows: List[RawRow] = to_raw_rows(rows)
        self.suite = suite
        self.executor = executor
        self.config = config or default_settings

        if mapping is None:
            mapping, initial = suite.advisor.initial_mapping(self.headers, self.rows)
            suggestions = suggestions if suggestions is not None else initial
        self.mapping = mapping
        self.suggestions: List[MappingSuggestion] = list(suggestions or [])

        self.report: Optional[QualityReport] = None
        self.report_mapping: Optional[FieldMapping] = None
        self.records: List[CanonicalRecord] = []
        self.status = SessionStatus.PENDING
        self.last_error: Optional[str] = None
        self.last_result: Optional[ImportResult] = None
        self.version = 0

        self._lock = threading.RLock()
        self._token = CancellationToken()
        self._timer: Optional[threading.Timer] = None
        self._worker: Optional[threading.Thread] = None
        self._idle = threading.Event()
        self._idle.set()
        self._listeners: List[Callable[[ProgressEvent], None]] = []

    @property
    def closed(self) -> bool:
        return self.status == SessionStatus.CLOSED

    def _ensure_open(self) -> None:
        if self.closed:
            raise SessionClosedError(f"Import session '{self.id}' is closed")

    def _ensure_editable(self) -> None:
        self._ensure_open()
        if self.status in (SessionStatus.COMMITTING, SessionStatus.COMMITTED):
            raise CommitBlockedError(f"Import session '{self.id}' is {self.status.value}; its mapping can no longer change")

    # Progress

    def add_progress_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_progress_listener(self, listener: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, version: int, token: CancellationToken, event: ProgressEvent) -> None:
        with self._lock:
            if not self._is_current(version, token):
                return
            listeners = list(self._listeners)
        event = replace(event, version=version)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Progress listener failed for session %s", self.id)

    # Runs

    def _is_current(self, version: int, token: CancellationToken) -> bool:
        return version == self.version and not token.cancelled and not self.closed

    def update_mapping(self, mapping: FieldMapping) -> None:
        """Replace the mapping and schedule revalidation after the debounce window."""
        with self._lock:
            self._ensure_editable()
            self.mapping = mapping
            self._idle.clear()
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.config.mapping_debounce_ms / 1000, self._debounce_fired)
            self._timer.daemon = True
            self._timer.start()
        logger.debug("Session %s: mapping changed, revalidation scheduled", self.id)

    def _debounce_fired(self) -> None:
        with self._lock:
            if self.closed or self.status in (SessionStatus.COMMITTING, SessionStatus.COMMITTED):
                return
            self._timer = None
            self._start_run()

    def _start_run(self) -> threading.Thread:
        with self._lock:
            self._token.cancel()
            self.version += 1
            self._token = CancellationToken()
            version, token, mapping = self.version, self._token, self.mapping
            self.status = SessionStatus.VALIDATING
            self._idle.clear()
            worker = threading.Thread(
                target=self._run,
                args=(version, token, mapping),
                name=f"validation-{self.id[:8]}-v{version}",
                daemon=True,
            )
            self._worker = worker
            worker.start()
        logger.info("Session %s: validation run v%d started", self.id, version)
        return worker

    def _run(self, version: int, token: CancellationToken, mapping: FieldMapping) -> None:
        try:
            result = self.suite.run(
                self.rows,
                self.headers,
                mapping,
                token=token,
                on_progress=lambda event: self._emit(version, token, event),
            )
            report = build_report(
                result,
                token=token,
                is_current=lambda: self._is_current(version, token),
                config=self.config,
            )
        except Exception as exc:
            logger.exception("Session %s: validation run v%d failed", self.id, version)
            with self._lock:
                if self._is_current(version, token):
                    self.last_error = str(exc)
                    self.status = SessionStatus.FAILED
                    if self._timer is None:
                        self._idle.set()
            return

        with self._lock:
            if report is None or not self._is_current(version, token) or mapping != self.mapping:
                logger.info("Session %s: discarded result of superseded run v%d", self.id, version)
                return
            self.report = report
            self.report_mapping = mapping
            self.records = result.records
            self.last_error = None
            self.status = SessionStatus.READY
            if self._timer is None:
                self._idle.set()
        logger.info("Session %s: report v%d published (score %d)", self.id, version, report.score)

    def validate_now(self, mapping: Optional[FieldMapping] = None) -> Optional[QualityReport]:
        """Validate immediately on a worker thread and wait for it; returns the published report."""
        with self._lock:
            self._ensure_editable()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            if mapping is not None:
                self.mapping = mapping
            worker = self._start_run()
        worker.join()
        return self.report

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no debounce is pending and the current run has finished."""
        return self._idle.wait(timeout)

    def cancel(self) -> None:
        """Cancel pending and running validation without closing the session."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._token.cancel()
            if self.status == SessionStatus.VALIDATING:
                self.status = SessionStatus.READY if self.report is not None else SessionStatus.PENDING
            self._idle.set()

    def close(self) -> None:
        with self._lock:
            if self.closed:
                return
            self.cancel()
            self.status = SessionStatus.CLOSED
        SessionLockManager.discard(self.id)
        logger.info("Session %s closed", self.id)

    # Templates

    def apply_template(self, template: Mapping[str, Any], *, immediate: bool = False) -> FieldMapping:
        mapping, suggestions = apply_template(template, self.headers)
        with self._lock:
            self._ensure_editable()
            self.suggestions = suggestions
        if immediate:
            self.validate_now(mapping)
        else:
            self.update_mapping(mapping)
        return mapping

    def save_template(self, name: str, description: Optional[str] = None) -> Dict[str, Any]:
        if self.suite.store is None:
            raise ImportPipelineError("No order store configured for mapping templates")
        return self.suite.store.save_mapping_template(name, self.mapping.assignments, description)

    # Commit

    def commit(self) -> ImportResult:
        """Commit accepted records. Raises CommitBlockedError when no error-free current report exists."""
        self._ensure_open()
        with SessionLockManager.acquire(self.id):
            with self._lock:
                if self.status == SessionStatus.COMMITTED:
                    raise CommitBlockedError("This import session has already been committed")
                if self.report is None or not self._idle.is_set() or self.status != SessionStatus.READY:
                    raise CommitBlockedError("No current quality report; wait for validation to finish")
                if self.report.has_errors():
                    raise CommitBlockedError("The quality report has blocking errors")
                if self.report_mapping != self.mapping:
                    raise CommitBlockedError("The mapping changed after the last validation; revalidate before committing")
                records, mapping = list(self.records), self.mapping
                self.status = SessionStatus.COMMITTING

            try:
                result = self.executor.execute(records, session_id=self.id, mapping=mapping)
            except Exception:
                with self._lock:
                    self.status = SessionStatus.READY
                raise

            with self._lock:
                self.last_result = result
                self.status = SessionStatus.COMMITTED
        return result

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "id": self.id,
                "status": self.status.value,
                "version": self.version,
                "headers": list(self.headers),
                "total_rows": len(self.rows),
                "mapping": self.mapping.assignments,
                "suggestions": [suggestion.to_dict() for suggestion in self.suggestions],
                "report": self.report.to_dict() if self.report is not None else None,
                "last_error": self.last_error,
            }

"""
Exceptions raised by the import validation and commit pipeline.

Cancellation is intentionally absent: a cancelled run is reported through its
result object, never raised.
"""
from typing import Optional


class ImportPipelineError(Exception):
    """Base class for pipeline failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class ChunkValidationError(ImportPipelineError):
    """A per-chunk validator raised; the whole run is aborted."""

    def __init__(self, chunk_index: int, cause: BaseException, message: Optional[str] = None):
        self.chunk_index = chunk_index
        self.cause = cause
        super().__init__(message or f"Validation failed in chunk {chunk_index}: {cause}")


class LookupUnavailableError(ImportPipelineError):
    """An external lookup service could not be reached or answered with a server error."""

    def __init__(self, service: str, reason: str):
        self.service = service
        self.reason = reason
        super().__init__(f"{service} lookup unavailable: {reason}")


class CommitBlockedError(ImportPipelineError):
    """Commit refused because the session has no publishable, error-free report."""


class CommitInProgressError(ImportPipelineError):
    """A commit for the same session is already running."""

    def __init__(self, session_id: str, message: Optional[str] = None):
        self.session_id = session_id
        super().__init__(message or f"A commit is already running for import session '{session_id}'.")


class SessionClosedError(ImportPipelineError):
    """The mapping session was torn down."""

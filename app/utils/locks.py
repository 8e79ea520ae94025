import threading
from typing import Dict
from contextlib import contextmanager
import logging

from app.domain.imports.errors import CommitInProgressError

logger = logging.getLogger(__name__)


class SessionLockManager:
    """
    Serializes commits per import session.

    Unlike a blocking table lock, a second commit for the same session fails
    fast with CommitInProgressError instead of queueing behind the first.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, session_id: str) -> threading.Lock:
        """Get or create a lock for a specific session."""
        with cls._global_lock:
            if session_id not in cls._locks:
                cls._locks[session_id] = threading.Lock()
            return cls._locks[session_id]

    @classmethod
    def discard(cls, session_id: str) -> None:
        with cls._global_lock:
            cls._locks.pop(session_id, None)

    @classmethod
    @contextmanager
    def acquire(cls, session_id: str):
        """Context manager that acquires the session's commit lock without waiting."""
        lock = cls.get_lock(session_id)
        if not lock.acquire(blocking=False):
            logger.warning("Commit already in progress for session '%s'", session_id)
            raise CommitInProgressError(session_id)
        logger.debug("Acquired commit lock for session '%s'", session_id)
        try:
            yield
        finally:
            lock.release()
            logger.debug("Released commit lock for session '%s'", session_id)

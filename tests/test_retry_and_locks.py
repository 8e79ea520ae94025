"""
Tests for the backoff helper and per-session commit locks.
"""
import threading

import pytest

from app.domain.imports.errors import CommitInProgressError
from app.utils.locks import SessionLockManager
from app.utils.retry import retry_with_backoff


class TestRetryWithBackoff:
    def test_returns_first_success(self):
        sleeps = []
        assert retry_with_backoff(lambda: "ok", 3, 1.0, sleep=sleeps.append) == "ok"
        assert sleeps == []

    def test_delays_grow_geometrically(self):
        sleeps = []
        attempts = iter([ValueError("a"), ValueError("b"), ValueError("c")])

        def flaky():
            error = next(attempts, None)
            if error is not None:
                raise error
            return 42

        assert retry_with_backoff(flaky, 4, 0.5, 3.0, sleep=sleeps.append) == 42
        assert sleeps == [0.5, 1.5, 4.5]

    def test_last_error_is_raised_when_attempts_run_out(self):
        sleeps = []
        calls = []

        def always_fails():
            calls.append(1)
            raise RuntimeError(f"attempt {len(calls)}")

        with pytest.raises(RuntimeError, match="attempt 3"):
            retry_with_backoff(always_fails, 3, 0.1, sleep=sleeps.append)
        assert len(calls) == 3
        assert len(sleeps) == 2

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            retry_with_backoff(lambda: None, 0, 0.1)


class TestSessionLockManager:
    def test_same_lock_per_session(self):
        assert SessionLockManager.get_lock("lock-a") is SessionLockManager.get_lock("lock-a")
        assert SessionLockManager.get_lock("lock-a") is not SessionLockManager.get_lock("lock-b")
        SessionLockManager.discard("lock-a")
        SessionLockManager.discard("lock-b")

    def test_second_holder_fails_fast(self):
        with SessionLockManager.acquire("lock-c"):
            with pytest.raises(CommitInProgressError) as excinfo:
                with SessionLockManager.acquire("lock-c"):
                    pass
        assert excinfo.value.session_id == "lock-c"
        SessionLockManager.discard("lock-c")

    def test_lock_released_after_error(self):
        with pytest.raises(KeyError):
            with SessionLockManager.acquire("lock-d"):
                raise KeyError("boom")
        with SessionLockManager.acquire("lock-d"):
            pass
        SessionLockManager.discard("lock-d")

    def test_other_thread_is_rejected_while_held(self):
        entered = threading.Event()
        release = threading.Event()
        errors = []

        def holder():
            with SessionLockManager.acquire("lock-e"):
                entered.set()
                release.wait(5)

        thread = threading.Thread(target=holder)
        thread.start()
        assert entered.wait(5)
        try:
            with SessionLockManager.acquire("lock-e"):
                pass
        except CommitInProgressError as exc:
            errors.append(exc)
        release.set()
        thread.join(5)

        assert len(errors) == 1
        SessionLockManager.discard("lock-e")

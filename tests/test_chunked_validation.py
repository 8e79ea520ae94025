"""
Tests for the chunked validation driver.
"""
import math
import time

import pytest

from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.chunking import chunk_count, validate_in_chunks
from app.domain.imports.errors import ChunkValidationError
from app.domain.imports.models import OutcomeKind, ValidationOutcome


def _accept_all(chunk):
    return []


def _reject_odd(chunk):
    return [
        ValidationOutcome(item_id=str(item), is_valid=False, kind=OutcomeKind.FORMAT)
        for item in chunk if item % 2
    ]


class TestChunkSlicing:
    def test_250_items_in_chunks_of_100(self):
        progress = []
        result = validate_in_chunks(
            list(range(250)), 100, _accept_all,
            on_progress=lambda processed, total, percent: progress.append((processed, total, percent)),
        )

        assert [chunk.processed for chunk in result.chunks] == [100, 100, 50]
        assert result.total_processed == 250
        assert result.total_valid == 250
        assert not result.cancelled
        assert progress == [(100, 250, 40.0), (200, 250, 80.0), (250, 250, 100.0)]

    @pytest.mark.parametrize("total,size", [(1, 1), (99, 100), (100, 100), (101, 100), (1000, 7), (5, 500)])
    def test_visits_ceil_chunks_and_processes_everything(self, total, size):
        calls = []

        def validator(chunk):
            calls.append(len(chunk))
            return []

        result = validate_in_chunks(list(range(total)), size, validator)

        assert len(calls) == math.ceil(total / size)
        assert sum(calls) == total
        assert sum(chunk.processed for chunk in result.chunks) == total

    def test_empty_input_never_calls_validator(self):
        called = []
        result = validate_in_chunks([], 10, lambda chunk: called.append(chunk) or [])
        assert called == []
        assert result.total == 0
        assert result.chunks == []

    def test_chunk_count_rejects_zero_size(self):
        with pytest.raises(ValueError):
            chunk_count(10, 0)

    def test_valid_count_excludes_items_with_failed_outcomes(self):
        result = validate_in_chunks(list(range(10)), 4, _reject_odd)
        assert result.total_valid == 5
        assert [chunk.valid for chunk in result.chunks] == [2, 2, 1]
        assert len(result.outcomes) == 5


class TestChunkDelay:
    @pytest.mark.parametrize("with_token", [False, True])
    def test_pause_between_chunks_but_not_after_the_last(self, with_token):
        token = CancellationToken() if with_token else None
        delay = 0.05

        started = time.perf_counter()
        result = validate_in_chunks(list(range(30)), 10, _accept_all, token=token, delay_seconds=delay)
        elapsed = time.perf_counter() - started

        assert len(result.chunks) == 3
        assert not result.cancelled
        assert elapsed >= 2 * delay


class TestCancellation:
    def test_cancel_during_second_chunk_discards_it(self):
        token = CancellationToken()
        seen = []

        def validator(chunk):
            seen.append(chunk[0])
            if len(seen) == 2:
                token.cancel()
            return _reject_odd(chunk)

        result = validate_in_chunks(list(range(500)), 100, validator, token=token)

        assert result.cancelled
        assert result.total_processed == 100
        assert result.total_processed < 500
        assert len(result.chunks) == 1
        assert all(int(outcome.item_id) < 100 for outcome in result.outcomes)

    def test_cancelled_before_start_processes_nothing(self):
        token = CancellationToken()
        token.cancel()
        result = validate_in_chunks(list(range(10)), 5, _accept_all, token=token)
        assert result.cancelled
        assert result.total_processed == 0

    def test_pause_between_chunks_is_interruptible(self):
        token = CancellationToken()

        def cancel_after_first(processed, total, percent):
            token.cancel()

        started = time.perf_counter()
        result = validate_in_chunks(
            list(range(300)), 100, _accept_all,
            token=token, delay_seconds=5.0, on_progress=cancel_after_first,
        )

        assert result.cancelled
        assert result.total_processed == 100
        assert time.perf_counter() - started < 2.0

    def test_no_progress_reported_after_cancel(self):
        token = CancellationToken()
        progress = []

        def validator(chunk):
            if chunk[0] == 100:
                token.cancel()
            return []

        validate_in_chunks(
            list(range(300)), 100, validator, token=token,
            on_progress=lambda processed, total, percent: progress.append(processed),
        )
        assert progress == [100]


class TestValidatorFailure:
    def test_validator_exception_aborts_with_chunk_index(self):
        def validator(chunk):
            if chunk[0] >= 20:
                raise RuntimeError("lookup exploded")
            return []

        with pytest.raises(ChunkValidationError) as excinfo:
            validate_in_chunks(list(range(50)), 10, validator)

        assert excinfo.value.chunk_index == 2
        assert isinstance(excinfo.value.cause, RuntimeError)

"""
Generic chunked validation driver.

Splits a dataset into order-preserving slices, hands each slice to a
validator, and accumulates outcomes while honoring cancellation and an
optional pause between slices (used to rate-limit external lookups).
"""
import logging
import math
import time
from typing import Callable, List, Optional, Sequence, TypeVar

from app.domain.imports.cancellation import CancellationToken
from app.domain.imports.errors import ChunkValidationError
from app.domain.imports.models import ChunkResult, ChunkRunResult, ValidationOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")

ChunkValidator = Callable[[Sequence[T]], List[ValidationOutcome]]
ProgressCallback = Callable[[int, int, float], None]


def chunk_count(total: int, chunk_size: int) -> int:
    if chunk_size < 1:
        raise ValueError("chunk_size must be at least 1")
    return math.ceil(total / chunk_size) if total else 0


def _count_valid(chunk: Sequence, outcomes: List[ValidationOutcome]) -> int:
    invalid_items = {outcome.item_id for outcome in outcomes if not outcome.is_valid}
    return max(len(chunk) - len(invalid_items), 0)


def validate_in_chunks(
    items: Sequence[T],
    chunk_size: int,
    validator: ChunkValidator,
    *,
    token: Optional[CancellationToken] = None,
    delay_seconds: float = 0.0,
    on_progress: Optional[ProgressCallback] = None,
    label: str = "validation",
) -> ChunkRunResult:
    """
    Run ``validator`` over ``items`` in slices of ``chunk_size``.

    Cancellation is checked before each slice, after the validator returns
    and during the pause between slices. A cancelled run returns with
    ``cancelled=True`` and no progress is reported for the interrupted slice.
    Any exception from the validator aborts the run as ChunkValidationError.
    """
    total = len(items)
    chunks_total = chunk_count(total, chunk_size)
    result = ChunkRunResult(total=total)
    started = time.perf_counter()

    def _is_cancelled() -> bool:
        return token is not None and token.cancelled

    for index in range(chunks_total):
        if _is_cancelled():
            result.cancelled = True
            break

        chunk = items[index * chunk_size:(index + 1) * chunk_size]
        chunk_started = time.perf_counter()
        try:
            outcomes = validator(chunk)
        except Exception as exc:
            logger.error("%s chunk %d/%d failed: %s", label, index + 1, chunks_total, exc)
            raise ChunkValidationError(index, exc) from exc

        if _is_cancelled():
            result.cancelled = True
            break

        chunk_elapsed = time.perf_counter() - chunk_started
        valid = _count_valid(chunk, outcomes)
        result.outcomes.extend(outcomes)
        result.total_processed += len(chunk)
        result.total_valid += valid
        result.chunks.append(ChunkResult(index=index, processed=len(chunk), valid=valid, elapsed_seconds=chunk_elapsed))
        logger.debug(
            "%s chunk %d/%d: %d items, %d valid, %.3fs",
            label, index + 1, chunks_total, len(chunk), valid, chunk_elapsed,
        )

        if on_progress is not None:
            percent = round(result.total_processed / total * 100, 2)
            on_progress(result.total_processed, total, percent)

        is_last = index == chunks_total - 1
        if delay_seconds > 0 and not is_last:
            if token is not None:
                if token.wait(delay_seconds):
                    result.cancelled = True
                    break
            else:
                time.sleep(delay_seconds)

    result.elapsed_seconds = time.perf_counter() - started
    if result.cancelled:
        logger.info("%s cancelled after %d/%d items", label, result.total_processed, total)
    return result

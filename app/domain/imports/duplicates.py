"""
Duplicate detection within the batch and against already-stored orders.
"""
import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from app.domain.imports.models import (
    CanonicalRecord,
    ConfidenceTier,
    DuplicateCandidate,
    DuplicateGroup,
    OutcomeKind,
    Severity,
    ValidationOutcome,
    ValidatorResult,
)

logger = logging.getLogger(__name__)

DUPLICATE_KEYS: Tuple[str, ...] = ("tracking_code", "customer_email", "order_number")
KEY_LABELS = {
    "tracking_code": "tracking code",
    "customer_email": "email",
    "order_number": "order number",
}
HIGH_CONFIDENCE_MATCHES = 2


def normalize_key(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def _matched_keys(left: Mapping[str, Optional[str]], right: Mapping[str, Optional[str]]) -> Tuple[str, ...]:
    matched = []
    for key in DUPLICATE_KEYS:
        left_value = normalize_key(left.get(key))
        if left_value and left_value == normalize_key(right.get(key)):
            matched.append(key)
    return tuple(matched)


def _confidence(matched: Sequence[str]) -> ConfidenceTier:
    return ConfidenceTier.HIGH if len(matched) >= HIGH_CONFIDENCE_MATCHES else ConfidenceTier.LOW


def find_batch_duplicates(records: Sequence[CanonicalRecord]) -> List[DuplicateGroup]:
    """
    Group records by each duplicate key. Every key value shared by more than
    one record becomes a group listing all of its members.
    """
    groups: List[DuplicateGroup] = []
    for key_type in DUPLICATE_KEYS:
        members: Dict[str, List[CanonicalRecord]] = defaultdict(list)
        for record in records:
            normalized = normalize_key(record.get(key_type))
            if normalized:
                members[normalized].append(record)
        for normalized, group in members.items():
            if len(group) > 1:
                groups.append(DuplicateGroup(
                    key_type=key_type,
                    key=group[0].get(key_type).strip(),
                    count=len(group),
                    item_ids=tuple(record.item_id for record in group),
                ))
    return groups


def batch_candidates(records: Sequence[CanonicalRecord], groups: Iterable[DuplicateGroup]) -> List[DuplicateCandidate]:
    """Pair every group member with the next member of its group (wrapping), so each member is reported."""
    by_id = {record.item_id: record for record in records}
    seen = set()
    candidates: List[DuplicateCandidate] = []
    for group in groups:
        ids = group.item_ids
        for position, item_id in enumerate(ids):
            other_id = ids[(position + 1) % len(ids)]
            pair = (item_id, other_id)
            if pair in seen:
                continue
            seen.add(pair)
            matched = _matched_keys(by_id[item_id].values, by_id[other_id].values)
            candidates.append(DuplicateCandidate(
                item_id=item_id,
                existing_id=other_id,
                confidence=_confidence(matched),
                matched_keys=matched,
                source="batch",
            ))
    return candidates


def find_store_duplicates(records: Sequence[CanonicalRecord], store) -> List[DuplicateCandidate]:
    """
    One bulk lookup of all distinct tracking codes, then pair each record
    with the stored order that shares its code.
    """
    codes = sorted({record.get("tracking_code").strip() for record in records if record.get("tracking_code").strip()})
    if not codes:
        return []
    existing = store.find_by_tracking_codes(codes)
    by_code: Dict[str, dict] = {}
    for row in existing:
        by_code.setdefault(normalize_key(row.get("tracking_code")), row)

    candidates: List[DuplicateCandidate] = []
    for record in records:
        stored = by_code.get(normalize_key(record.get("tracking_code")))
        if stored is None:
            continue
        matched = _matched_keys(record.values, stored)
        candidates.append(DuplicateCandidate(
            item_id=record.item_id,
            existing_id=str(stored.get("id")),
            confidence=_confidence(matched),
            matched_keys=matched,
            source="store",
        ))
    logger.debug("Store lookup for %d tracking codes found %d existing orders", len(codes), len(existing))
    return candidates


def check_duplicates(records: Sequence[CanonicalRecord], store=None) -> ValidatorResult:
    """
    Batch duplicates warn every member. Records whose tracking code already
    exists in the store are excluded so re-imports stay idempotent.
    """
    groups = find_batch_duplicates(records)
    candidates = batch_candidates(records, groups)
    rows = {record.item_id: record.row_number for record in records}
    outcomes: List[ValidationOutcome] = []

    for group in groups:
        label = KEY_LABELS[group.key_type]
        for item_id in group.item_ids:
            outcomes.append(ValidationOutcome(
                item_id=item_id,
                is_valid=False,
                kind=OutcomeKind.DUPLICATE,
                payload={"source": "batch", "key_type": group.key_type, "key": group.key, "count": group.count},
                severity=Severity.WARNING,
                message=f"Row {rows[item_id]}: {label} '{group.key}' appears {group.count} times in this file",
                field=group.key_type,
            ))

    store_candidates: List[DuplicateCandidate] = []
    if store is not None:
        store_candidates = find_store_duplicates(records, store)
        for candidate in store_candidates:
            outcomes.append(ValidationOutcome(
                item_id=candidate.item_id,
                is_valid=False,
                kind=OutcomeKind.DUPLICATE,
                payload={
                    "source": "store",
                    "existing_id": candidate.existing_id,
                    "confidence": candidate.confidence.value,
                    "matched_keys": list(candidate.matched_keys),
                },
                severity=Severity.ERROR,
                message=(
                    f"Row {rows[candidate.item_id]}: order already imported "
                    f"({candidate.confidence.value} confidence, matched {', '.join(candidate.matched_keys)})"
                ),
                field="tracking_code",
                hard=True,
            ))

    all_candidates = candidates + store_candidates
    by_type: Dict[str, int] = defaultdict(int)
    for group in groups:
        by_type[group.key_type] += group.count
    return ValidatorResult(
        kind=OutcomeKind.DUPLICATE,
        outcomes=outcomes,
        summary={
            "groups": groups,
            "candidates": all_candidates,
            "batch_duplicates": len({item for group in groups for item in group.item_ids}),
            "store_duplicates": len(store_candidates),
            "high_confidence": sum(1 for c in all_candidates if c.confidence == ConfidenceTier.HIGH),
            "by_type": dict(by_type),
        },
    )
